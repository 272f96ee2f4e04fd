import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number") from exc


@dataclass
class Settings:
    database_url: str | None = None
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_sslmode: str = "require"

    algod_address: str | None = None
    algod_token: str = ""
    app_id: int = 0
    indexer_address: str | None = None
    indexer_token: str = ""
    service_mnemonic: str | None = None
    genesis_id: str | None = None
    tx_timeout_rounds: int | None = None
    ledger_read_timeout: float = 10.0

    session_secret: str | None = None
    session_ttl_seconds: int = 3600

    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        timeout_rounds = os.getenv("ALGORAND_TX_TIMEOUT_ROUNDS")
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            db_pool_min=_int_env("DB_POOL_MIN", 1),
            db_pool_max=_int_env("DB_POOL_MAX", 10),
            db_sslmode=os.getenv("DB_SSLMODE", "require"),
            algod_address=os.getenv("ALGORAND_ALGOD_ADDRESS"),
            algod_token=os.getenv("ALGORAND_ALGOD_TOKEN", ""),
            app_id=_int_env("ALGORAND_APP_ID", 0),
            indexer_address=os.getenv("ALGORAND_INDEXER_ADDRESS") or None,
            indexer_token=os.getenv("ALGORAND_INDEXER_TOKEN", ""),
            service_mnemonic=os.getenv("ALGORAND_SERVICE_MNEMONIC"),
            genesis_id=os.getenv("ALGORAND_GENESIS_ID") or None,
            tx_timeout_rounds=int(timeout_rounds) if timeout_rounds else None,
            ledger_read_timeout=_float_env("LEDGER_READ_TIMEOUT_SECONDS", 10.0),
            session_secret=os.getenv("SESSION_SECRET"),
            session_ttl_seconds=_int_env("SESSION_TTL_SECONDS", 3600),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )

    @property
    def ledger_configured(self) -> bool:
        return bool(self.algod_address and self.service_mnemonic and self.app_id > 0)
