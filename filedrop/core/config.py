"""Application configuration."""

import json
import math
import re
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from filedrop import __version__

SIZE_UNITS: dict[str, int] = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|TB)$", re.IGNORECASE)

DEFAULT_RELAYS = [
    "wss://auth.nostr1.com",
    "wss://bostr.bitcointxoko.com",
    "wss://eden.nostr.land",
    "wss://groups.0xchat.com",
    "wss://inbox.nostr.wine",
    "wss://no.str.cr",
    "wss://nos.lol",
    "wss://nostr-01.yakihonne.com",
    "wss://nostr.band",
    "wss://nostr.data.haus",
    "wss://nostr.mom",
    "wss://nostr.oxtr.dev",
    "wss://nostr.swiss-enigma.ch",
    "wss://nostrue.com",
    "wss://offchain.pub",
    "wss://orangepiller.org",
    "wss://purplepag.es",
    "wss://pyramid.fiatjaf.com",
    "wss://relay.0xchat.com",
    "wss://relay.coinos.io",
    "wss://relay.current.fyi",
    "wss://relay.damus.io",
    "wss://relay.fountain.fm",
    "wss://relay.lumina.rocks",
    "wss://relay.nostr.band",
    "wss://relay.nostr.bg",
    "wss://relay.nostr.wirednet.jp",
    "wss://relay.primal.net",
    "wss://relay.siamstr.com",
    "wss://wheat.happytavern.co",
]

DEFAULT_GATEWAYS = [
    "https://dweb.link",
    "https://ipfs.io",
    "https://w3s.link",
    "https://4everland.io",
    "https://gateway.pinata.cloud",
    "https://nftstorage.link",
]


def parse_size(size: str) -> int:
    """Parse a human readable size such as ``5GB`` or ``50 MB`` into bytes.

    Args:
        size: Size string with a B/KB/MB/GB/TB suffix

    Returns:
        Size in bytes

    Raises:
        ValueError: If the string is not a recognised size
    """
    match = _SIZE_PATTERN.match(size.strip())
    if not match:
        raise ValueError(f"Invalid size format: {size}")
    value = float(match.group(1))
    unit = match.group(2).upper()
    return math.floor(value * SIZE_UNITS[unit])


def format_bytes(num_bytes: int) -> str:
    """Format a byte count for humans (``1.50 GB``)."""
    sizes = ["Bytes", "KB", "MB", "GB", "TB"]
    if num_bytes <= 0:
        return "0 Bytes"
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(sizes) - 1)
    return f"{num_bytes / math.pow(1024, i):.2f} {sizes[i]}"


def _split_list(value: object) -> object:
    """Accept comma separated strings as well as JSON lists from the environment."""
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            return json.loads(stripped)
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return value


class Settings(BaseSettings):
    """
    Application settings.

    Environment variables will be loaded and validated using Pydantic.
    """

    app_name: str = "filedrop"
    version: str = __version__

    # CORS Settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]
    cors_allow_credentials: bool = False

    # Server
    HOST: str = "0.0.0.0"  # nosec B104
    PORT: int = 3232

    # IPFS daemon
    IPFS_API: str = "http://127.0.0.1:5001"
    DAEMON_TIMEOUT: float = Field(default=10.0, gt=0)
    TRANSFER_READ_TIMEOUT: float = Field(default=300.0, gt=0)

    # Storage limits (human readable, e.g. "200GB")
    STORAGE_MAX: str = "200GB"
    FILE_LIMIT: str | None = None
    REMOTE_FILE_LIMIT: str | None = None
    UPLOAD_TEMP_DIR: str = "/tmp/filedrop"  # nosec B108

    # Remote upload backpressure
    MAX_CONCURRENT_DOWNLOADS: int = Field(default=3, ge=1)
    DOWNLOAD_TIMEOUT: float = Field(default=1800.0, gt=0)

    # Nostr discovery
    NPUBS: Annotated[list[str], NoDecode] = []
    NOSTR_CHECK_INTERVAL: float = Field(default=420.0, gt=0)  # 7 minutes
    NOSTR_CHECK_JITTER: float = Field(default=60.0, ge=0)
    FOLLOW_CACHE_ENABLED: bool = True
    RELAYS: Annotated[list[str], NoDecode] = DEFAULT_RELAYS
    RELAY_COUNT: int = Field(default=8, ge=1)
    RELAY_CONNECT_TIMEOUT: float = Field(default=7.0, gt=0)
    RELAY_MAX_WAIT: float = Field(default=15.0, gt=0)
    KIND_WHITELIST: Annotated[list[int], NoDecode] = [1, 6, 30023, 30024, 9802]
    PAGE_SIZE: int = Field(default=250, ge=1)
    MAX_PAGES: int = Field(default=100, ge=1)
    FOLLOW_MAX_PAGES: int = Field(default=10, ge=1)
    FOLLOW_AUTHOR_CHUNK: int = Field(default=100, ge=1)

    # Replication scheduler
    PIN_CONCURRENCY: int = Field(default=2, ge=1)
    CACHE_CONCURRENCY: int = Field(default=6, ge=1)
    STALE_THRESHOLD: float = Field(default=1200.0, gt=0)  # 20 minutes
    STALE_SWEEP_INTERVAL: float = Field(default=60.0, gt=0)
    PASS_DELAY_MIN: float = Field(default=5.0, ge=0)
    PASS_DELAY_MAX: float = Field(default=15.0, ge=0)
    IDLE_DELAY_MIN: float = Field(default=30.0, ge=0)
    IDLE_DELAY_MAX: float = Field(default=200.0, ge=0)

    # Gateways
    GATEWAYS: Annotated[list[str], NoDecode] = DEFAULT_GATEWAYS
    DEFAULT_GATEWAY: str = "https://dweb.link"
    GATEWAY_TEST_CID: str = "QmV2ZAJVPafPNhKjorD2v9ZnfENYDC5Be5gTKiymaCMmeN"
    GATEWAY_PROBE_TIMEOUT: float = Field(default=6.0, gt=0)
    GATEWAY_REFRESH_INTERVAL: float = Field(default=600.0, gt=0)  # 10 minutes

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    @field_validator(
        "cors_origins", "NPUBS", "RELAYS", "KIND_WHITELIST", "GATEWAYS", mode="before"
    )
    @classmethod
    def split_lists(cls, value: object) -> object:
        """Allow list settings to be given as comma separated values."""
        return _split_list(value)

    @field_validator("STORAGE_MAX")
    @classmethod
    def validate_storage_max(cls, value: str) -> str:
        """Reject storage limits that cannot be parsed."""
        parse_size(value)
        return value

    @field_validator("FILE_LIMIT", "REMOTE_FILE_LIMIT")
    @classmethod
    def validate_file_limits(cls, value: str | None) -> str | None:
        """Reject upload limits that cannot be parsed; blank means unset."""
        if not value:
            return None
        parse_size(value)
        return value

    @field_validator("GATEWAYS")
    @classmethod
    def validate_gateways(cls, value: list[str]) -> list[str]:
        """Keep only http(s) gateway entries, without trailing slashes."""
        return [
            entry.strip().rstrip("/")
            for entry in value
            if entry.strip().startswith("http")
        ]

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "Settings":
        """Swap inverted delay bounds instead of failing at runtime."""
        if self.PASS_DELAY_MIN > self.PASS_DELAY_MAX:
            self.PASS_DELAY_MIN, self.PASS_DELAY_MAX = (
                self.PASS_DELAY_MAX,
                self.PASS_DELAY_MIN,
            )
        if self.IDLE_DELAY_MIN > self.IDLE_DELAY_MAX:
            self.IDLE_DELAY_MIN, self.IDLE_DELAY_MAX = (
                self.IDLE_DELAY_MAX,
                self.IDLE_DELAY_MIN,
            )
        return self

    @property
    def storage_max_bytes(self) -> int:
        """Configured repository ceiling in bytes."""
        return parse_size(self.STORAGE_MAX)

    @property
    def file_limit_bytes(self) -> int:
        """Upload size limit; defaults to 1% of the storage ceiling."""
        if self.FILE_LIMIT:
            return parse_size(self.FILE_LIMIT)
        return self.storage_max_bytes // 100

    @property
    def remote_file_limit_bytes(self) -> int:
        """Remote upload size limit; defaults to 1% of the storage ceiling."""
        if self.REMOTE_FILE_LIMIT:
            return parse_size(self.REMOTE_FILE_LIMIT)
        return self.storage_max_bytes // 100


# Create settings instance
settings = Settings()
