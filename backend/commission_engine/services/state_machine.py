"""Settlement state machine with transition validation."""

from typing import Dict, List, Optional

from commission_engine.models.settlement import SettlementStatus


class InvalidTransitionError(Exception):
    """Raised when a settlement status change is not allowed."""

    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SettlementStateMachine:
    """State machine for affiliate settlement status.

    Allowed transitions:
    - pending → available (manual split, after hold + verification)
    - pending → pending_payout (automated row healed by the payout pass)
    - pending → refunded
    - approved → pending_payout / refunded (legacy rows)
    - pending_payout → paid / refunded / payout_failed
    - payout_failed → pending_payout (manual retry only)
    - refunded, paid, available: no exits
    """

    VALID_TRANSITIONS: Dict[SettlementStatus, List[SettlementStatus]] = {
        SettlementStatus.PENDING: [
            SettlementStatus.AVAILABLE,
            SettlementStatus.PENDING_PAYOUT,
            SettlementStatus.REFUNDED,
        ],
        SettlementStatus.APPROVED: [
            SettlementStatus.PENDING_PAYOUT,
            SettlementStatus.REFUNDED,
        ],
        SettlementStatus.PENDING_PAYOUT: [
            SettlementStatus.PAID,
            SettlementStatus.REFUNDED,
            SettlementStatus.PAYOUT_FAILED,
        ],
        SettlementStatus.PAYOUT_FAILED: [SettlementStatus.PENDING_PAYOUT],
        SettlementStatus.AVAILABLE: [],
        SettlementStatus.PAID: [],
        SettlementStatus.REFUNDED: [],  # Terminal
    }

    # Statuses a payout pass may heal into pending_payout
    HEALABLE = {SettlementStatus.PENDING, SettlementStatus.APPROVED}

    @classmethod
    def can_transition(cls, from_status: SettlementStatus, to_status: SettlementStatus) -> bool:
        """Check if a transition is valid."""
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: SettlementStatus, to_status: SettlementStatus) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status.value, to_status.value)

    @classmethod
    def is_terminal(cls, status: SettlementStatus) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)

    @classmethod
    def is_manual_retry(cls, from_status: SettlementStatus, to_status: SettlementStatus) -> bool:
        """The one backward edge: payout_failed → pending_payout."""
        return (
            from_status == SettlementStatus.PAYOUT_FAILED
            and to_status == SettlementStatus.PENDING_PAYOUT
        )
