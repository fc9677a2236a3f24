"""
Inngest client for the commission engine.
"""

import logging

import inngest

from commission_engine.config import INNGEST_APP_ID, INNGEST_IS_PRODUCTION

logger = logging.getLogger(__name__)

inngest_client = inngest.Inngest(
    app_id=INNGEST_APP_ID,
    is_production=INNGEST_IS_PRODUCTION,
    logger=logger,
)
