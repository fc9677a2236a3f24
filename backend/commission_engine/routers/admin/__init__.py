"""
Admin Routers
=============

Operator endpoints for the commission engine. Authentication is handled
in front of this service.

Routers:
- settlements: manual scheduler runs, payout retry, scheduler status,
  affiliate program config and affiliate stats
- withdrawals: PIX withdrawal requests against the available balance and
  the approve / mark-paid / reject queue
"""

from fastapi import APIRouter

from .settlements import router as settlements_router
from .withdrawals import router as withdrawals_router

# Create main admin router
router = APIRouter(prefix="/admin", tags=["admin"])

router.include_router(settlements_router)
router.include_router(withdrawals_router)

__all__ = ["router"]
