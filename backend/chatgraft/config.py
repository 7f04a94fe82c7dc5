"""Runtime settings, read from ``CHATGRAFT_*`` environment variables.

``backend/.env`` is loaded first so secrets (the session cookie, the
summary API key) stay out of the shell profile.
"""

import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from chatgraft.phantom.store import DEFAULT_TIMEOUT
from chatgraft.summarize.oracle import FAST_MODEL
from chatgraft.sync.service import EXPORT_THRESHOLD

ENV_PREFIX = "CHATGRAFT_"
ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseModel):
    host_url: str = "https://claude.ai"
    org_id: str = ""
    session_key: str = ""
    database_path: str = "chatgraft.db"
    default_model: str = "claude-sonnet-4-5-20250929"
    fast_model: str = FAST_MODEL
    # Dedicated key for direct summarization; summaries go through the host without it
    summary_api_key: str | None = None
    phantom_timeout: float = DEFAULT_TIMEOUT
    poll_attempts: int = 30
    poll_interval: float = 3.0
    uuid_markers: bool = False
    # Stale conversations at which sync switches to the bulk data export
    sync_export_threshold: int = EXPORT_THRESHOLD
    cors_origins: str = "http://localhost:5173"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the environment (after loading ``backend/.env``)."""
    if environ is None:
        load_dotenv(ENV_PATH)
        environ = os.environ

    values = {
        name: environ[ENV_PREFIX + name.upper()]
        for name in Settings.model_fields
        if ENV_PREFIX + name.upper() in environ
    }
    if "summary_api_key" not in values and environ.get("SUMMARY_API_KEY"):
        values["summary_api_key"] = environ["SUMMARY_API_KEY"]
    return Settings.model_validate(values)
