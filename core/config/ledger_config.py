#!/usr/bin/env python3
"""Ledger service main configuration

Combines the infrastructure and logging sub-configs with the ledger's own
settings (service port, free credit and invite reward policy, sweeper schedule).
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class SweeperConfig:
    """Lifecycle sweeper schedule

    Only one deployment instance should run with ``enabled=True``.
    """
    enabled: bool = False
    hour: int = 0
    minute: int = 0
    timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> 'SweeperConfig':
        return cls(
            enabled=_bool(os.getenv("LEDGER_SWEEPER_ENABLED", "false")),
            hour=_int(os.getenv("LEDGER_SWEEP_HOUR", "0"), 0),
            minute=_int(os.getenv("LEDGER_SWEEP_MINUTE", "0"), 0),
            timezone=os.getenv("LEDGER_SWEEP_TIMEZONE", "UTC"),
        )


@dataclass
class LedgerConfig:
    """Main ledger service configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Service settings
    service_name: str = "ledger_service"
    service_host: str = "0.0.0.0"
    service_port: int = 8230

    # Credit policy
    free_credit_expire_days: int = 180
    invite_reward_amount: int = 500

    # Event subscriptions (payment.completed, subscription.canceled)
    event_subscriptions_enabled: bool = True

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)

    @classmethod
    def from_env(cls) -> 'LedgerConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            # Environment
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            # Service settings
            service_name=os.getenv("SERVICE_NAME", "ledger_service"),
            service_host=os.getenv("HOST", "0.0.0.0"),
            service_port=_int(os.getenv("LEDGER_SERVICE_PORT") or os.getenv("PORT", "8230"), 8230),

            # Credit policy
            free_credit_expire_days=_int(os.getenv("LEDGER_FREE_CREDIT_EXPIRE_DAYS", "180"), 180),
            invite_reward_amount=_int(os.getenv("LEDGER_INVITE_REWARD_AMOUNT", "500"), 500),

            event_subscriptions_enabled=_bool(os.getenv("LEDGER_EVENT_SUBSCRIPTIONS", "true")),

            # Load sub-configs
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            sweeper=SweeperConfig.from_env(),
        )
