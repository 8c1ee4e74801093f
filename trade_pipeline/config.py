"""
Trade Pipeline - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the trade pipeline.

Values come from the environment (loaded through
python-dotenv) with production defaults for Base mainnet.

CRITICAL CONSTRAINTS:
- Bounded batches
- Explicit retry ceiling
- Trigger auth fails closed

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from dotenv import load_dotenv

from .retry import RetryPolicy


# ============================================================
# SCHEDULER CONFIGURATION
# ============================================================

@dataclass
class SchedulerConfig:
    """Per-tick scheduling."""

    batch_size: int = 20
    """Maximum records per phase per tick."""

    cron_secret: Optional[str] = None
    """Bearer token for the trigger endpoint. Unset rejects all calls."""

    claim_lease_seconds: int = 300
    """How long a claimed record is hidden from other ticks before a venue call."""

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            batch_size=int(os.environ.get("TRADE_BATCH_SIZE", "20")),
            cron_secret=os.environ.get("CRON_SECRET") or None,
            claim_lease_seconds=int(os.environ.get("TRADE_CLAIM_LEASE_SECONDS", "300")),
        )


# ============================================================
# VENUE CONFIGURATION
# ============================================================

@dataclass
class OnChainConfig:
    """
    Batch-auction venue on Base.

    Addresses are the canonical GPv2 deployments.
    """

    api_base: str = "https://api.cow.fi/base/api/v1"
    """Order-book REST base URL."""

    rpc_url: str = "https://mainnet.base.org"
    """JSON-RPC endpoint for allowance reads and approvals."""

    chain_id: int = 8453

    settlement_contract: str = "0x9008D19f58AAbD9eD0D60971565AA8510560ab41"
    """EIP-712 verifying contract."""

    vault_relayer: str = "0xC92E8bdf79f0507f65a392b0ab4667716BFE0110"
    """Spender that must hold the ERC-20 allowance."""

    app_data: str = "0x" + "00" * 32

    slippage_bps: int = 50

    approval_gas_limit: int = 60000

    approval_timeout_seconds: float = 120.0
    """Upper bound on the approval confirmation wait."""

    request_timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "OnChainConfig":
        return cls(
            api_base=os.environ.get("COW_API_BASE", cls.api_base),
            rpc_url=os.environ.get("BASE_RPC_URL", cls.rpc_url),
        )


@dataclass
class CentralizedConfig:
    """CEX REST endpoints."""

    request_timeout_seconds: float = 15.0

    base_urls: Dict[str, str] = field(default_factory=lambda: {
        "binance": "https://api.binance.com",
        "coinbase": "https://api.coinbase.com",
        "bybit": "https://api.bybit.com",
        "okx": "https://www.okx.com",
    })

    bybit_recv_window: str = "5000"


# ============================================================
# SECRETS / NOTIFICATIONS / RISK
# ============================================================

@dataclass
class SecretsConfig:
    """Encryption-at-rest key for agent keys and exchange credentials."""

    encryption_key: Optional[str] = None
    """32 bytes, hex (64 chars) or base64."""

    @classmethod
    def from_env(cls) -> "SecretsConfig":
        return cls(encryption_key=os.environ.get("AGENT_ENCRYPTION_KEY"))


@dataclass
class NotificationConfig:
    """Trade alert delivery."""

    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    timeout_seconds: float = 10.0

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        return cls(
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID"),
        )


@dataclass
class RiskConfig:
    """Risk gate defaults."""

    default_max_drawdown_pct: Decimal = Decimal("15")
    """Used when an agent has no configured limit."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class PipelineConfig:
    """Master configuration for the trade pipeline."""

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    onchain: OnChainConfig = field(default_factory=OnChainConfig)
    centralized: CentralizedConfig = field(default_factory=CentralizedConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)

    recurrence_interval_seconds: int = 86400
    """Delay before a recurring trade is re-queued after a fill."""

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from the environment (and .env)."""
        load_dotenv()
        return cls(
            scheduler=SchedulerConfig.from_env(),
            retry=RetryPolicy.from_env(),
            onchain=OnChainConfig.from_env(),
            secrets=SecretsConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            recurrence_interval_seconds=int(
                os.environ.get("TRADE_RECURRENCE_SECONDS", "86400")
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "text"),
        )

    @classmethod
    def for_testing(cls) -> "PipelineConfig":
        """Configuration for tests. No network endpoints are contacted."""
        return cls(
            scheduler=SchedulerConfig(batch_size=20, cron_secret="test-secret"),
            retry=RetryPolicy(base_delay_seconds=300, max_attempts=3),
            onchain=OnChainConfig(
                api_base="http://cow.test/api/v1",
                rpc_url="http://rpc.test",
                approval_timeout_seconds=1.0,
            ),
            secrets=SecretsConfig(encryption_key="11" * 32),
            log_level="DEBUG",
        )
