"""
Inngest Functions Registry.

This module exports all Inngest functions for registration with the serve endpoint.
"""

from .settlement import attribute_commission_fn

# All functions to register with Inngest
all_functions = [
    attribute_commission_fn,
]

__all__ = [
    "all_functions",
    "attribute_commission_fn",
]
