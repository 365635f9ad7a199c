import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional

BASE_DIR = Path(__file__).resolve().parent

BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * BYTES_PER_MB
DEFAULT_MAX_FILE_SIZE = 10 * BYTES_PER_GB
DEFAULT_MAX_EXPIRATION_HOURS = 168
DEFAULT_EXPIRATION_HOURS = 24
DEFAULT_CLEANUP_INTERVAL_MINUTES = 10
DEFAULT_MAX_FORM_PARTS = 1000
DEFAULT_BASE_URL = "http://localhost:8000"

DEFAULT_ALLOWED_EXTENSIONS = frozenset(
    {
        ".pdf",
        ".doc",
        ".docx",
        ".txt",
        ".rtf",
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".bmp",
        ".webp",
        ".svg",
        ".zip",
        ".rar",
        ".7z",
        ".tar",
        ".gz",
        ".mp4",
        ".avi",
        ".mov",
        ".wmv",
        ".flv",
        ".mp3",
        ".wav",
        ".ogg",
        ".flac",
        ".xls",
        ".xlsx",
        ".csv",
        ".ppt",
        ".pptx",
        ".odt",
        ".ods",
        ".odp",
    }
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

config_logger = logging.getLogger("quickdrop.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""

    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        config_logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default
    if value < min_value:
        config_logger.warning(
            "Value for %s below minimum %d: %s. Using default: %d",
            key,
            min_value,
            raw_value,
            default,
        )
        return default
    return value


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


def normalize_extension(value: str) -> str:
    cleaned = value.strip().lower()
    if not cleaned:
        return ""
    if not cleaned.startswith("."):
        cleaned = f".{cleaned}"
    return cleaned


def _parse_extensions(raw_value: Optional[str]) -> FrozenSet[str]:
    if not raw_value:
        return DEFAULT_ALLOWED_EXTENSIONS
    extensions = {normalize_extension(part) for part in raw_value.split(",")}
    extensions.discard("")
    if not extensions:
        config_logger.warning(
            "QUICKDROP_ALLOWED_EXTENSIONS is empty after parsing; using defaults"
        )
        return DEFAULT_ALLOWED_EXTENSIONS
    return frozenset(extensions)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved from the environment."""

    upload_dir: Path
    data_dir: Path
    logs_dir: Path
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_expiration_hours: int = DEFAULT_MAX_EXPIRATION_HOURS
    default_expiration_hours: int = DEFAULT_EXPIRATION_HOURS
    max_form_parts: int = DEFAULT_MAX_FORM_PARTS
    base_url: str = DEFAULT_BASE_URL
    allowed_extensions: FrozenSet[str] = field(default=DEFAULT_ALLOWED_EXTENSIONS)
    cleanup_interval_minutes: int = DEFAULT_CLEANUP_INTERVAL_MINUTES
    cleanup_enabled: bool = True
    environment: str = "production"
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "files.db"

    @property
    def is_production(self) -> bool:
        return self.environment != "development"

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "Settings":
        storage_root = _resolve_env_path("QUICKDROP_STORAGE_ROOT", BASE_DIR)
        max_expiration = _safe_int_env(
            "MAX_EXPIRATION_HOURS", DEFAULT_MAX_EXPIRATION_HOURS
        )
        default_expiration = min(
            _safe_int_env("DEFAULT_EXPIRATION_HOURS", DEFAULT_EXPIRATION_HOURS),
            max_expiration,
        )
        environment = os.environ.get("QUICKDROP_ENV", "production").strip().lower()
        if environment not in {"production", "development"}:
            config_logger.warning(
                "Unknown QUICKDROP_ENV %r; treating as production", environment
            )
            environment = "production"
        cleanup_enabled = _get_optional_bool_env("QUICKDROP_CLEANUP_ENABLED")

        return cls(
            upload_dir=_resolve_env_path(
                "QUICKDROP_UPLOAD_DIR", storage_root / "uploads"
            ),
            data_dir=_resolve_env_path("QUICKDROP_DATA_DIR", storage_root / "data"),
            logs_dir=_resolve_env_path("QUICKDROP_LOGS_DIR", storage_root / "logs"),
            max_file_size=_safe_int_env("MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
            max_expiration_hours=max_expiration,
            default_expiration_hours=default_expiration,
            max_form_parts=_safe_int_env("QUICKDROP_MAX_FORM_PARTS", DEFAULT_MAX_FORM_PARTS),
            base_url=(os.environ.get("BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            allowed_extensions=_parse_extensions(
                os.environ.get("QUICKDROP_ALLOWED_EXTENSIONS")
            ),
            cleanup_interval_minutes=_safe_int_env(
                "QUICKDROP_CLEANUP_INTERVAL_MINUTES", DEFAULT_CLEANUP_INTERVAL_MINUTES
            ),
            cleanup_enabled=True if cleanup_enabled is None else cleanup_enabled,
            environment=environment,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
