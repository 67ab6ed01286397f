import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./campus_tokens.db") or "sqlite:///./campus_tokens.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()

        self.jwt_secret = _getenv("JWT_SECRET") or _getenv("SESSION_SECRET") or "dev-insecure-secret"
        self.jwt_ttl_minutes = _getenv_int("JWT_TTL_MINUTES", 60 * 24)

        self.bsc_provider_url = (
            _getenv("BSC_PROVIDER_URL", "https://data-seed-prebsc-1-s1.binance.org:8545/")
            or "https://data-seed-prebsc-1-s1.binance.org:8545/"
        )
        self.token_contract_address = _getenv("TOKEN_CONTRACT_ADDRESS") or _getenv("OMSUCOIN_CONTRACT_ADDRESS")
        self.token_contract_abi_path = _getenv("TOKEN_CONTRACT_ABI_PATH")
        self.admin_private_key = _getenv("ADMIN_PRIVATE_KEY")
        self.token_decimals = _getenv_int("TOKEN_DECIMALS", 18)
        self.chain_receipt_timeout_s = _getenv_int("CHAIN_RECEIPT_TIMEOUT_S", 120)

        self.ledger_max_retries = max(1, _getenv_int("LEDGER_MAX_RETRIES", 3))
        self.mint_require_confirmed_registration = _getenv_bool("MINT_REQUIRE_CONFIRMED_REGISTRATION", default=True)
        self.leaderboard_cache_ttl_s = _getenv_int("LEADERBOARD_CACHE_TTL_S", 30)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def chain_configured(self) -> bool:
        return bool(self.token_contract_address and self.admin_private_key)

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:5173", "http://localhost:5000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
