"""Configuration management service with Pydantic Settings.

This module provides centralized configuration for the reserve flow tracker,
loading and validating environment variables (and an optional ``.env`` file)
at startup.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _validate_http_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must be an HTTP(S) endpoint")
    return v.rstrip("/")


class TokenSpec(BaseModel):
    """A tracked token: display symbol plus contract address / mint."""

    model_config = {"frozen": True}

    symbol: str
    address: str

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("token symbol must not be empty")
        return v


def parse_token_list(v: object) -> tuple[TokenSpec, ...]:
    """Parse ``"SYM:address,SYM:address"`` or a list of mappings/specs."""
    if v is None:
        return ()
    if isinstance(v, str) and v.lstrip().startswith("["):
        v = json.loads(v)
    if isinstance(v, str):
        tokens: list[TokenSpec] = []
        for part in (p.strip() for p in v.split(",")):
            if not part:
                continue
            symbol, sep, address = part.partition(":")
            if not sep or not address.strip():
                raise ValueError(f"Invalid token entry {part!r} (expected SYMBOL:address)")
            tokens.append(TokenSpec(symbol=symbol, address=address.strip()))
        return tuple(tokens)
    if isinstance(v, (list, tuple)):
        return tuple(t if isinstance(t, TokenSpec) else TokenSpec.model_validate(t) for t in v)
    raise TypeError("Invalid token list type")


def _parse_csv(v: object) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(p.strip() for p in v.split(",") if p.strip())
    if isinstance(v, (list, tuple)):
        return tuple(str(x).strip() for x in v if str(x).strip())
    raise TypeError("Expected a comma-separated string or a list")


class HttpSettings(BaseSettings):
    """Outbound HTTP settings shared by every chain adapter."""

    model_config = SettingsConfigDict(env_prefix="HTTP_", extra="ignore")

    timeout_seconds: float = Field(
        default=30.0,
        alias="HTTP_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="Per-request timeout applied to every outbound call",
    )
    user_agent: str = Field(
        default="por-collector",
        alias="HTTP_USER_AGENT",
        description="User-Agent header sent to public endpoints",
    )


class RedisSettings(BaseSettings):
    """Optional Redis cache for immutable chain data (block timestamps)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (caching disabled when unset)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class BitcoinSettings(BaseSettings):
    """Esplora-compatible Bitcoin providers and pagination ceilings."""

    model_config = SettingsConfigDict(env_prefix="BITCOIN_", extra="ignore")

    esplora_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("https://blockstream.info/api", "https://mempool.space/api"),
        alias="BITCOIN_ESPLORA_URLS",
        description="Esplora base URLs in failover order (comma-separated)",
    )
    initial_backoff_seconds: float = Field(
        default=0.3,
        alias="BITCOIN_INITIAL_BACKOFF_SECONDS",
        ge=0.0,
        le=60.0,
    )
    max_backoff_seconds: float = Field(
        default=5.0,
        alias="BITCOIN_MAX_BACKOFF_SECONDS",
        ge=0.0,
        le=600.0,
    )
    page_delay_seconds: float = Field(
        default=0.25,
        alias="BITCOIN_PAGE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause between history pages to stay under public rate limits",
    )
    max_consecutive_errors: int = Field(default=40, alias="BITCOIN_MAX_CONSECUTIVE_ERRORS", ge=1)
    max_no_progress: int = Field(default=3, alias="BITCOIN_MAX_NO_PROGRESS", ge=1)
    max_pages: int = Field(default=10_000, alias="BITCOIN_MAX_PAGES", ge=1)

    @field_validator("esplora_urls", mode="before")
    @classmethod
    def _parse_urls(cls, v: object) -> tuple[str, ...]:
        return tuple(_validate_http_url(u) for u in _parse_csv(v))

    @property
    def enabled(self) -> bool:
        return bool(self.esplora_urls)


class EvmChainConfig(BaseModel):
    """One account-based EVM chain."""

    name: str = "ethereum"
    rpc_url: str = "https://ethereum-rpc.publicnode.com"
    native_symbol: str = "ETH"
    native_decimals: int = Field(default=18, ge=0, le=36)
    erc20: tuple[TokenSpec, ...] = (
        TokenSpec(symbol="USDT", address="0xdAC17F958D2ee523a2206206994597C13D831ec7"),
        TokenSpec(symbol="USDC", address="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
    )
    explorer_url: str = "https://api.etherscan.io/v2/api"
    explorer_chain_id: int | None = 1
    explorer_api_key: SecretStr | None = None

    @field_validator("rpc_url", "explorer_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _validate_http_url(v)

    @field_validator("erc20", mode="before")
    @classmethod
    def _parse_erc20(cls, v: object) -> tuple[TokenSpec, ...]:
        return parse_token_list(v)

    @field_validator("name")
    @classmethod
    def _lower_name(cls, v: str) -> str:
        return v.strip().lower()


class EvmSettings(BaseSettings):
    """EVM chains (JSON list in ``EVM_CHAINS``) and shared RPC tuning."""

    model_config = SettingsConfigDict(env_prefix="EVM_", extra="ignore")

    chains: tuple[EvmChainConfig, ...] = Field(
        default=(EvmChainConfig(),),
        alias="EVM_CHAINS",
        description="JSON list of EVM chain objects",
    )
    logs_chunk_size_blocks: int = Field(
        default=50_000,
        alias="EVM_LOGS_CHUNK_SIZE_BLOCKS",
        ge=100,
        le=5_000_000,
        description="Block chunk size for eth_getLogs scans",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="EVM_MAX_REQUESTS_PER_SECOND",
        gt=0,
    )
    default_token_decimals: int = Field(
        default=6,
        alias="EVM_DEFAULT_TOKEN_DECIMALS",
        ge=0,
        le=36,
        description="Used when a token's decimals() cannot be read",
    )
    block_cache_ttl_seconds: int = Field(
        default=86_400,
        alias="EVM_BLOCK_CACHE_TTL_SECONDS",
        ge=60,
    )
    explorer_page_size: int = Field(
        default=1000,
        alias="EVM_EXPLORER_PAGE_SIZE",
        ge=1,
        le=10_000,
        description="Rows per explorer txlist request",
    )


class SolanaSettings(BaseSettings):
    """Solana JSON-RPC endpoint and tracked SPL mints."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str | None = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
    )
    spl_tokens: Annotated[tuple[TokenSpec, ...], NoDecode] = Field(
        default=(
            TokenSpec(symbol="USDT", address="Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"),
            TokenSpec(symbol="USDC", address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"),
        ),
        alias="SOLANA_SPL_TOKENS",
        description="Tracked SPL mints as SYMBOL:mint (comma-separated)",
    )
    signatures_page_limit: int = Field(
        default=1000,
        alias="SOLANA_SIGNATURES_PAGE_LIMIT",
        ge=1,
        le=1000,
    )
    default_token_decimals: int = Field(default=6, alias="SOLANA_DEFAULT_TOKEN_DECIMALS", ge=0, le=36)

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return _validate_http_url(v) if v else None

    @field_validator("spl_tokens", mode="before")
    @classmethod
    def _parse_tokens(cls, v: object) -> tuple[TokenSpec, ...]:
        return parse_token_list(v)


class TronSettings(BaseSettings):
    """Tron indexer (Tronscan-compatible REST API) settings."""

    model_config = SettingsConfigDict(env_prefix="TRON_", extra="ignore")

    api_url: str | None = Field(
        default="https://apilist.tronscanapi.com",
        alias="TRON_API_URL",
    )
    api_key: SecretStr | None = Field(default=None, alias="TRON_API_KEY")
    trc20_tokens: Annotated[tuple[TokenSpec, ...], NoDecode] = Field(
        default=(
            TokenSpec(symbol="USDT", address="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"),
            TokenSpec(symbol="USDC", address="TEkxiTehnzSmSe2XqrBj4w32RUN966rdz8"),
        ),
        alias="TRON_TRC20_TOKENS",
        description="Tracked TRC20 contracts as SYMBOL:contract (comma-separated)",
    )
    page_size: int = Field(default=50, alias="TRON_PAGE_SIZE", ge=1, le=200)
    max_pages: int = Field(default=2_000, alias="TRON_MAX_PAGES", ge=1)
    default_token_decimals: int = Field(default=6, alias="TRON_DEFAULT_TOKEN_DECIMALS", ge=0, le=36)

    @field_validator("api_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        return _validate_http_url(v) if v else None

    @field_validator("trc20_tokens", mode="before")
    @classmethod
    def _parse_tokens(cls, v: object) -> tuple[TokenSpec, ...]:
        return parse_token_list(v)


class ReportSettings(BaseSettings):
    """Bucketing and run-scope settings."""

    model_config = SettingsConfigDict(env_prefix="REPORT_", extra="ignore")

    timezone: str = Field(
        default="Asia/Taipei",
        alias="REPORT_TIMEZONE",
        description="IANA timezone used for daily bucket keys",
    )
    only_symbols: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="REPORT_ONLY_SYMBOLS",
        description="Symbol allow-list (comma-separated, empty = all)",
    )
    call_timeout_seconds: float | None = Field(
        default=900.0,
        alias="REPORT_CALL_TIMEOUT_SECONDS",
        gt=0,
        description="Deadline for one adapter call (balance or flows of one asset)",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {v!r}") from e
        return v

    @field_validator("only_symbols", mode="before")
    @classmethod
    def _parse_symbols(cls, v: object) -> tuple[str, ...]:
        return tuple(s.upper() for s in _parse_csv(v))

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from reserve_flow_tracker.config import get_settings

        settings = get_settings()
        print(settings.bitcoin.esplora_urls)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    http: HttpSettings = Field(
        default_factory=lambda: HttpSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    bitcoin: BitcoinSettings = Field(
        default_factory=lambda: BitcoinSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    evm: EvmSettings = Field(
        default_factory=lambda: EvmSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tron: TronSettings = Field(
        default_factory=lambda: TronSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    report: ReportSettings = Field(
        default_factory=lambda: ReportSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, object]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "bitcoin": {
                "esplora_urls": ",".join(self.bitcoin.esplora_urls) or "(not set)",
                "max_pages": str(self.bitcoin.max_pages),
            },
            "evm": [
                {
                    "name": chain.name,
                    "rpc_url": chain.rpc_url,
                    "erc20": ",".join(t.symbol for t in chain.erc20),
                    "explorer_api_key": "(set)" if chain.explorer_api_key else "(not set)",
                }
                for chain in self.evm.chains
            ],
            "solana": {
                "rpc_url": self.solana.rpc_url or "(not set)",
                "spl": ",".join(t.symbol for t in self.solana.spl_tokens),
            },
            "tron": {
                "api_url": self.tron.api_url or "(not set)",
                "api_key": "(set)" if self.tron.api_key else "(not set)",
                "trc20": ",".join(t.symbol for t in self.tron.trc20_tokens),
            },
            "report": {
                "timezone": self.report.timezone,
                "only_symbols": ",".join(self.report.only_symbols) or "(all)",
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
