"""Gateway credential lookup. Secrets are read from storage on every run, never cached."""

import logging
from typing import Optional

from commission_engine.services.storage import SettlementStore

logger = logging.getLogger(__name__)


class CredentialResolver:
    def __init__(self, store: SettlementStore):
        self.store = store

    async def resolve(self, key: str) -> Optional[str]:
        """Return the secret for key, or None when missing or blank."""
        value = await self.store.get_secret(key)
        if not value or not value.strip():
            logger.warning(f"Gateway credential {key} is not configured")
            return None
        return value.strip()
