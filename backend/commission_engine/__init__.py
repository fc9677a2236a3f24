"""Commission settlement engine."""
