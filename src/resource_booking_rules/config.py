from __future__ import annotations

from dataclasses import dataclass
import os

from dotenv import load_dotenv


DEFAULT_API_VERSION = "v9.2"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@dataclass(frozen=True)
class Settings:
    dataverse_base_url: str
    dataverse_tenant_id: str
    dataverse_client_id: str
    dataverse_client_secret: str
    dataverse_api_version: str
    allow_writes: bool
    exclude_self: bool
    queries_path: str | None
    host: str
    port: int
    auth_token: str | None
    log_file: str | None


def _require(name: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    return value.strip() if isinstance(value, str) and value.strip() else None


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def load_settings() -> Settings:
    # Values from a local .env win over the shell so a checkout can be
    # pointed at a sandbox org without touching the environment.
    load_dotenv(override=True)

    base_url = _require("DATAVERSE_BASE_URL").rstrip("/")
    tenant_id = _require("DATAVERSE_TENANT_ID")
    client_id = _require("DATAVERSE_CLIENT_ID")
    client_secret = _require("DATAVERSE_CLIENT_SECRET")
    api_version = os.getenv("DATAVERSE_API_VERSION", DEFAULT_API_VERSION).strip() or DEFAULT_API_VERSION

    port_raw = os.getenv("BOOKING_RULES_PORT", str(DEFAULT_PORT)).strip() or str(DEFAULT_PORT)
    try:
        port = int(port_raw)
    except ValueError as e:
        raise RuntimeError(f"BOOKING_RULES_PORT must be an integer, got: {port_raw}") from e

    return Settings(
        dataverse_base_url=base_url,
        dataverse_tenant_id=tenant_id,
        dataverse_client_id=client_id,
        dataverse_client_secret=client_secret,
        dataverse_api_version=api_version,
        allow_writes=_flag("DATAVERSE_ALLOW_WRITES"),
        exclude_self=_flag("BOOKING_RULES_EXCLUDE_SELF"),
        queries_path=_optional("BOOKING_RULES_QUERIES_PATH"),
        host=os.getenv("BOOKING_RULES_HOST", DEFAULT_HOST).strip() or DEFAULT_HOST,
        port=port,
        auth_token=_optional("BOOKING_RULES_AUTH_TOKEN"),
        log_file=_optional("BOOKING_RULES_LOG_FILE"),
    )
