from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return float(v)


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)


def _get_optional_str(name: str) -> str | None:
    v = os.getenv(name)
    if v is None:
        return None
    vv = v.strip()
    return vv or None


def _clean_secret(name: str, default: str) -> str:
    # Hosted secret stores sometimes keep trailing "# comment" text.
    raw = os.getenv(name)
    if raw is None:
        return default
    cleaned = raw.split("#", 1)[0].strip()
    return cleaned or default


LogFormat = Literal["text", "json"]

DEFAULT_FORMS_FORM_ID = "JzfHFpyXgk2zp-tqL93-V1fdJne7SIlMnh7yZpkW8f5UQjc4M0wwWU9HRTJPRjMxWlc5QjRLOUhaMC4u"
DEFAULT_FORMS_TENANT_ID = "16c73727-979c-4d82-b3a7-eb6a2fddfe57"
DEFAULT_FORMS_USER_ID = "7726dd57-48bb-4c89-9e1e-f2669916f1fe"


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_format: LogFormat

    # Remote backend (hosted auth + database)
    backend_url: str
    backend_anon_key: str
    backend_access_token: str | None
    backend_timeout_s: float
    database_url: str | None

    # Local durable queue
    queue_db_path: str
    queue_journal_mode: str
    queue_synchronous: str
    queue_recover_corruption: bool
    queue_stale_syncing_s: int

    # Sync pipeline
    connectivity_timeout_s: float
    sync_pace_s: float
    sync_interval_s: float
    sync_notify_after_retries: int

    # Forms endpoint
    forms_form_id: str
    forms_tenant_id: str
    forms_user_id: str
    forms_response_page_url: str
    forms_timeout_s: float


def load_settings() -> Settings:
    app_env = (os.getenv("FIELDSYNC_ENV", "dev").strip() or "dev").lower()

    log_format_raw = os.getenv("LOG_FORMAT", "text").strip().lower() or "text"
    if log_format_raw not in {"text", "json"}:
        raise RuntimeError("LOG_FORMAT must be one of: text, json")
    log_format: LogFormat = log_format_raw  # type: ignore[assignment]

    database_url = _get_optional_str("DATABASE_URL")

    # --- Required secrets in non-dev ---
    backend_url = _get_optional_str("BACKEND_URL")
    backend_anon_key = _get_optional_str("BACKEND_ANON_KEY")
    if database_url is None:
        if not backend_url:
            if app_env == "dev":
                backend_url = "http://localhost:54321"
            else:
                raise RuntimeError("BACKEND_URL must be set when FIELDSYNC_ENV is not 'dev'")
        if not backend_anon_key:
            if app_env == "dev":
                backend_anon_key = "dev-anon-key"
            else:
                raise RuntimeError("BACKEND_ANON_KEY must be set when FIELDSYNC_ENV is not 'dev'")

    queue_journal_mode = os.getenv("QUEUE_SQLITE_JOURNAL_MODE", "WAL").strip().upper() or "WAL"
    queue_synchronous = os.getenv("QUEUE_SQLITE_SYNCHRONOUS", "NORMAL").strip().upper() or "NORMAL"

    connectivity_timeout_s = _get_float("CONNECTIVITY_TIMEOUT_S", 2.0)
    if connectivity_timeout_s <= 0:
        raise RuntimeError("CONNECTIVITY_TIMEOUT_S must be > 0")

    sync_interval_s = _get_float("SYNC_INTERVAL_S", 30.0)
    if sync_interval_s <= 0:
        raise RuntimeError("SYNC_INTERVAL_S must be > 0")

    forms_timeout_s = _get_float("FORMS_TIMEOUT_S", 20.0)
    if forms_timeout_s <= 0:
        raise RuntimeError("FORMS_TIMEOUT_S must be > 0")

    forms_form_id = _clean_secret("FORMS_FORM_ID", DEFAULT_FORMS_FORM_ID)
    forms_response_page_url = _clean_secret(
        "FORMS_RESPONSE_PAGE_URL",
        f"https://forms.office.com/pages/responsepage.aspx?id={forms_form_id}&route=shorturl",
    )

    return Settings(
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_format=log_format,
        backend_url=(backend_url or "").rstrip("/"),
        backend_anon_key=backend_anon_key or "",
        backend_access_token=_get_optional_str("BACKEND_ACCESS_TOKEN"),
        backend_timeout_s=_get_float("BACKEND_TIMEOUT_S", 10.0),
        database_url=database_url,
        queue_db_path=os.getenv("QUEUE_DB_PATH", "./fieldsync_queue.sqlite").strip()
        or "./fieldsync_queue.sqlite",
        queue_journal_mode=queue_journal_mode,
        queue_synchronous=queue_synchronous,
        queue_recover_corruption=_get_bool("QUEUE_RECOVER_CORRUPTION", True),
        queue_stale_syncing_s=_get_int("QUEUE_STALE_SYNCING_S", 300),
        connectivity_timeout_s=connectivity_timeout_s,
        sync_pace_s=max(0.0, _get_float("SYNC_PACE_S", 0.5)),
        sync_interval_s=sync_interval_s,
        sync_notify_after_retries=max(0, _get_int("SYNC_NOTIFY_AFTER_RETRIES", 2)),
        forms_form_id=forms_form_id,
        forms_tenant_id=_clean_secret("FORMS_TENANT_ID", DEFAULT_FORMS_TENANT_ID),
        forms_user_id=_clean_secret("FORMS_USER_ID", DEFAULT_FORMS_USER_ID),
        forms_response_page_url=forms_response_page_url,
        forms_timeout_s=forms_timeout_s,
    )
