import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


DEFAULT_CORS_ORIGIN = "http://localhost:3000"
DEFAULT_PRESIGN_EXPIRY_SECONDS = 60 * 30
# SigV4 pre-signed URLs cannot outlive seven days.
MAX_PRESIGN_EXPIRY_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_UPLOAD_SIZE_MB = 500
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = 100

REQUIRED_VARIABLES = (
    ("bucket_name", "IMAGEBUCKET_BUCKET_NAME"),
    ("access_key", "IMAGEBUCKET_ACCESS_KEY"),
    ("secret_key", "IMAGEBUCKET_SECRET_KEY"),
    ("region", "IMAGEBUCKET_AWS_REGION"),
)


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing from the environment."""

    def __init__(self, missing) -> None:
        self.missing = list(missing)
        super().__init__(
            "Missing required environment variables: " + ", ".join(self.missing)
        )


@dataclass(frozen=True)
class Settings:
    bucket_name: str
    access_key: str
    secret_key: str
    region: str
    endpoint_url: Optional[str] = None
    cors_origin: str = DEFAULT_CORS_ORIGIN
    presign_expiry_seconds: int = DEFAULT_PRESIGN_EXPIRY_SECONDS
    max_upload_size_mb: int = DEFAULT_MAX_UPLOAD_SIZE_MB
    upload_rate_limit_per_hour: int = DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR
    logs_dir: Optional[Path] = None

    def upload_rate_limit_string(self) -> str:
        return f"{self.upload_rate_limit_per_hour} per hour"


def _safe_int_env(
    environ: Mapping[str, str],
    key: str,
    default: int,
    min_value: int = 1,
    max_value: Optional[int] = None,
) -> int:
    """Safely parse integer environment variable with error handling."""
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = max(min_value, int(raw))
    except (TypeError, ValueError):
        logger = logging.getLogger("imagebucket.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw, default
        )
        return default
    if max_value is not None:
        value = min(max_value, value)
    return value


def _resolve_env_path(environ: Mapping[str, str], key: str) -> Optional[Path]:
    value = environ.get(key)
    if value:
        return Path(value).expanduser().resolve()
    return None


def load_settings(
    environ: Optional[Mapping[str, str]] = None, *, use_dotenv: bool = True
) -> Settings:
    """Build :class:`Settings` from the process environment.

    A ``.env`` file in the working directory is merged into ``os.environ``
    first unless *use_dotenv* is false or an explicit *environ* is given.
    Every missing required variable is reported at once.
    """

    if environ is None:
        if use_dotenv:
            load_dotenv()
        environ = os.environ

    values = {}
    missing = []
    for field_name, env_key in REQUIRED_VARIABLES:
        value = (environ.get(env_key) or "").strip()
        if not value:
            missing.append(env_key)
        values[field_name] = value
    if missing:
        raise ConfigurationError(missing)

    return Settings(
        endpoint_url=(environ.get("IMAGEBUCKET_ENDPOINT_URL") or "").strip() or None,
        cors_origin=(environ.get("IMAGEBUCKET_CORS_ORIGIN") or "").strip()
        or DEFAULT_CORS_ORIGIN,
        presign_expiry_seconds=_safe_int_env(
            environ,
            "IMAGEBUCKET_PRESIGN_EXPIRY_SECONDS",
            DEFAULT_PRESIGN_EXPIRY_SECONDS,
            max_value=MAX_PRESIGN_EXPIRY_SECONDS,
        ),
        max_upload_size_mb=_safe_int_env(
            environ, "MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB
        ),
        upload_rate_limit_per_hour=_safe_int_env(
            environ,
            "IMAGEBUCKET_RATE_LIMIT_UPLOADS_PER_HOUR",
            DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
        ),
        logs_dir=_resolve_env_path(environ, "IMAGEBUCKET_LOGS_DIR"),
        **values,
    )
