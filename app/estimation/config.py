import os
from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class Settings:
    """Environment-backed settings. Field names upper-cased are the Flask config keys."""

    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    # attempts at claiming a document number before giving up
    sequence_retry_limit: int
    # percent, as a decimal string
    default_vat_rate: str


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None


def load_settings() -> Settings:
    return Settings(
        secret_key=_env("SECRET_KEY", "change-me"),
        env=_env("ENV", "development"),
        database_url=_env("DATABASE_URL", "sqlite:///estimation.db"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
        storage_backend=_env("STORAGE_BACKEND", "local").lower(),
        storage_root=_env("STORAGE_ROOT"),
        s3_endpoint=_env("S3_ENDPOINT"),
        s3_region=_env("S3_REGION", "nyc3"),
        s3_bucket=_env("S3_BUCKET"),
        s3_access_key_id=_env("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=_env("S3_SECRET_ACCESS_KEY"),
        sequence_retry_limit=max(1, _env_int("SEQUENCE_RETRY_LIMIT", 3)),
        default_vat_rate=_env("DEFAULT_VAT_RATE", "5"),
    )


def load_config() -> dict:
    return {k.upper(): v for k, v in asdict(load_settings()).items()}
