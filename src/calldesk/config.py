"""Startup configuration.

Settings come from environment variables (a .env file is loaded by the app
entry point). validate_config() runs before the server accepts requests so
a bad value fails loudly at startup instead of mid-call.
"""

import logging
import os
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Required only when an auth token puts the desk in remote mode.
REMOTE_REQUIRED_VARS = [
    "CALLDESK_API_URL",
]

OPTIONAL_VARS = [
    "CALLDESK_AUTH_TOKEN",
    "CALLDESK_STORAGE_PATH",
    "CRM_BASE_URL",
    "CRM_API_KEY",
    "LOG_LEVEL",
]

NUMERIC_VARS = {
    "CALLDESK_AUTOSAVE_SECONDS": 5.0,
    "CALLDESK_REQUEST_TIMEOUT": 10.0,
}

DEFAULT_STORAGE_PATH = "~/.calldesk/storage.json"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    api_url: str = ""
    auth_token: str = ""
    storage_path: str = DEFAULT_STORAGE_PATH
    timer_auto_start: bool = False
    autosave_seconds: float = 5.0
    request_timeout: float = 10.0
    crm_base_url: str = ""
    crm_api_key: str = ""
    log_level: str = "INFO"

    @property
    def authenticated(self) -> bool:
        return bool(self.auth_token)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            api_url=os.getenv("CALLDESK_API_URL", ""),
            auth_token=os.getenv("CALLDESK_AUTH_TOKEN", ""),
            storage_path=os.path.expanduser(os.getenv("CALLDESK_STORAGE_PATH") or DEFAULT_STORAGE_PATH),
            timer_auto_start=os.getenv("CALLDESK_TIMER_AUTO_START", "").strip().lower() in _TRUE_VALUES,
            autosave_seconds=float(os.getenv("CALLDESK_AUTOSAVE_SECONDS") or NUMERIC_VARS["CALLDESK_AUTOSAVE_SECONDS"]),
            request_timeout=float(os.getenv("CALLDESK_REQUEST_TIMEOUT") or NUMERIC_VARS["CALLDESK_REQUEST_TIMEOUT"]),
            crm_base_url=os.getenv("CRM_BASE_URL", ""),
            crm_api_key=os.getenv("CRM_API_KEY", ""),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )


def _fail(message: str) -> None:
    print(
        f"\nFATAL: {message}\n"
        f"\nSet them in .env (local) or the deployment environment.\n",
        file=sys.stderr,
    )
    sys.exit(1)


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if a variable is malformed or if
    remote mode is requested without the remote store URL. Logs warnings
    for missing optional variables.
    """
    if os.getenv("CALLDESK_AUTH_TOKEN"):
        missing = [var for var in REMOTE_REQUIRED_VARS if not os.getenv(var)]
        if missing:
            _fail(
                "CALLDESK_AUTH_TOKEN is set but these variables are missing:\n"
                f"  {', '.join(missing)}"
            )

    bad = []
    for var in NUMERIC_VARS:
        raw = os.getenv(var)
        if not raw:
            continue
        try:
            if float(raw) <= 0:
                bad.append(var)
        except ValueError:
            bad.append(var)
    if bad:
        _fail(f"These variables must be positive numbers:\n  {', '.join(bad)}")

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)
