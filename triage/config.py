"""
Configuration - Resolved once at process start

Tenet #3: Explicit Over Clever - Constructors receive config, business
logic never reads the environment.

Usage:
    config = AppConfig.from_env()
    orchestrator = build_orchestrator(config)
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional
import os

from dotenv import load_dotenv


STORE_MODES = ("local", "fhir-service")
LEDGER_MODES = ("memory", "web3")
OWNER_MODES = ("subject", "wallet")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff with jitter.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay_s: Delay before the second attempt
        max_delay_s: Upper bound on any single delay
        jitter: Add up to 50% random delay on top of the backoff
    """
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("Retry delays must be non-negative")
        if self.base_delay_s > self.max_delay_s:
            raise ValueError(
                f"base_delay_s ({self.base_delay_s}) must be <= max_delay_s ({self.max_delay_s})"
            )


@dataclass(frozen=True)
class EngineConfig:
    """Reasoning engine (assistant threads/runs) settings."""
    api_key: Optional[str] = None
    assistant_id: Optional[str] = None
    base_url: Optional[str] = None
    call_timeout_s: float = 30.0
    poll_interval_s: float = 1.0
    max_wait_s: float = 120.0
    append_protocol_instructions: bool = True

    def __post_init__(self):
        if self.call_timeout_s <= 0:
            raise ValueError("call_timeout_s must be > 0")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self.max_wait_s < self.poll_interval_s:
            raise ValueError(
                f"max_wait_s ({self.max_wait_s}) must be >= poll_interval_s ({self.poll_interval_s})"
            )


@dataclass(frozen=True)
class StoreConfig:
    """Clinical record store settings."""
    mode: str = "local"
    database_url: str = "sqlite:///./triage_records.db"
    fhir_base_url: Optional[str] = None
    fhir_bearer_token: Optional[str] = None
    timeout_s: float = 15.0
    page_size: int = 100

    def __post_init__(self):
        if self.mode not in STORE_MODES:
            raise ValueError(f"Store mode must be one of {STORE_MODES}, got {self.mode!r}")
        if self.mode == "fhir-service" and not self.fhir_base_url:
            raise ValueError("fhir-service mode requires fhir_base_url (FHIR_SERVER_URL)")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")


@dataclass(frozen=True)
class LedgerConfig:
    """Audit ledger settings."""
    enabled: bool = False
    mode: str = "memory"
    rpc_url: str = "http://localhost:8545"
    network: str = "localhost"
    private_key: Optional[str] = None
    contract_address: Optional[str] = None
    owner_mode: str = "subject"
    timeout_s: float = 60.0
    from_block: int = 0

    def __post_init__(self):
        if self.mode not in LEDGER_MODES:
            raise ValueError(f"Ledger mode must be one of {LEDGER_MODES}, got {self.mode!r}")
        if self.owner_mode not in OWNER_MODES:
            raise ValueError(f"Owner mode must be one of {OWNER_MODES}, got {self.owner_mode!r}")
        if self.enabled and self.mode == "web3":
            if not self.private_key:
                raise ValueError("web3 ledger requires BLOCKCHAIN_PRIVATE_KEY")
            if not self.contract_address:
                raise ValueError("web3 ledger requires LEDGER_CONTRACT_ADDRESS")
            if self.owner_mode != "wallet":
                raise ValueError(
                    "web3 ledger updates records keyed by the signing wallet; set LEDGER_OWNER_MODE=wallet"
                )
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Top-level configuration passed to every constructor."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AppConfig":
        """
        Build configuration from environment variables.

        Args:
            env: Mapping to read instead of os.environ (tests).
                 When omitted, a local .env file is loaded first.

        Raises:
            ValueError: If any value is missing or out of range
        """
        if env is None:
            load_dotenv()
            env = os.environ

        def _get(name: str, default: Optional[str] = None) -> Optional[str]:
            value = env.get(name)
            return value if value not in (None, "") else default

        def _float(name: str, default: float) -> float:
            raw = _get(name)
            try:
                return float(raw) if raw is not None else default
            except ValueError:
                raise ValueError(f"{name} must be a number, got {raw!r}") from None

        def _int(name: str, default: int) -> int:
            raw = _get(name)
            try:
                return int(raw) if raw is not None else default
            except ValueError:
                raise ValueError(f"{name} must be an integer, got {raw!r}") from None

        def _bool(name: str, default: bool) -> bool:
            raw = _get(name)
            if raw is None:
                return default
            return raw.strip().lower() in ("1", "true", "yes", "on")

        ledger_mode = _get("LEDGER_MODE", "memory")
        # Deployed contracts key updates by the signing wallet
        default_owner_mode = "wallet" if ledger_mode == "web3" else "subject"

        return cls(
            engine=EngineConfig(
                api_key=_get("OPENAI_API_KEY"),
                assistant_id=_get("OPENAI_CONVERSATION_ASSISTANT_ID"),
                base_url=_get("OPENAI_BASE_URL"),
                call_timeout_s=_float("ENGINE_CALL_TIMEOUT_S", 30.0),
                poll_interval_s=_float("ENGINE_POLL_INTERVAL_S", 1.0),
                max_wait_s=_float("ENGINE_MAX_WAIT_S", 120.0),
                append_protocol_instructions=_bool("ENGINE_APPEND_PROTOCOL", True),
            ),
            store=StoreConfig(
                mode=_get("RECORD_STORE_MODE", "local"),
                database_url=_get("DATABASE_URL", "sqlite:///./triage_records.db"),
                fhir_base_url=_get("FHIR_SERVER_URL"),
                fhir_bearer_token=_get("FHIR_SERVER_BEARER_TOKEN"),
                timeout_s=_float("STORE_TIMEOUT_S", 15.0),
                page_size=_int("STORE_PAGE_SIZE", 100),
            ),
            ledger=LedgerConfig(
                enabled=_bool("ENABLE_BLOCKCHAIN_LOGGING", False),
                mode=ledger_mode,
                rpc_url=_get("BLOCKCHAIN_RPC_URL", "http://localhost:8545"),
                network=_get("BLOCKCHAIN_NETWORK", "localhost"),
                private_key=_get("BLOCKCHAIN_PRIVATE_KEY"),
                contract_address=_get("LEDGER_CONTRACT_ADDRESS"),
                owner_mode=_get("LEDGER_OWNER_MODE", default_owner_mode),
                timeout_s=_float("LEDGER_TIMEOUT_S", 60.0),
                from_block=_int("LEDGER_FROM_BLOCK", 0),
            ),
            retry=RetryPolicy(
                max_attempts=_int("RETRY_MAX_ATTEMPTS", 3),
                base_delay_s=_float("RETRY_BASE_DELAY_S", 0.5),
                max_delay_s=_float("RETRY_MAX_DELAY_S", 8.0),
            ),
            log_level=_get("LOG_LEVEL", "INFO").upper(),
            log_format=_get("LOG_FORMAT", "json").lower(),
        )
