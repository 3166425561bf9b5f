"""
Ledger Service Factory

Factory for creating LedgerService with real dependencies.
This is the ONLY module that imports concrete implementations.
"""

import logging
from typing import Optional

from core.config import LedgerConfig, get_settings

from .ledger_repository import LedgerRepository
from .ledger_service import LedgerService

logger = logging.getLogger(__name__)


def create_ledger_service(
    config: Optional[LedgerConfig] = None,
    event_bus=None,
    repository: Optional[LedgerRepository] = None,
) -> LedgerService:
    """
    Create LedgerService with all real dependencies

    Args:
        config: Optional ledger config (uses global settings if not provided)
        event_bus: Optional event bus for event publishing
        repository: Optional repository (creates a PostgreSQL one if not provided)

    Returns:
        LedgerService instance; call ``repository.initialize()`` before use
    """
    if config is None:
        config = get_settings()

    if repository is None:
        repository = LedgerRepository(config=config.infrastructure)

    if event_bus is None:
        logger.info("Ledger service created without event bus, events will not be published")

    return LedgerService(
        repository=repository,
        event_bus=event_bus,
        free_credit_expire_days=config.free_credit_expire_days,
        invite_reward_amount=config.invite_reward_amount,
    )


__all__ = ["create_ledger_service"]
