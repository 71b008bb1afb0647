"""Runtime configuration: API keys and completion-service settings."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .utils import (
    DEFAULT_BACKOFF_BASE_S,
    DEFAULT_BASE_URL,
    DEFAULT_BATCH_PAGES,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF_S,
    DEFAULT_MODEL,
)

log = logging.getLogger(__name__)

API_KEY_ENV_NAMES = ("GEMINI_API_KEY", "GOOGLE_API_KEY")
DEFAULT_API_CONFIG = Path("config") / "api_keys.json"


def _is_placeholder(value: str) -> bool:
    raw = (value or "").strip().lower()
    if not raw:
        return True
    return raw.startswith("paste-your-") or raw in {"your-api-key", "changeme", "replace-me"}


def load_api_keys(
    config_path: Optional[Union[str, Path]] = None,
    set_env: bool = True,
) -> Dict[str, str]:
    """Read ``{"api_keys": {ENV_NAME: value}}`` and export the usable keys.

    Existing environment variables win over the file. A missing file is
    not an error; an unreadable one is logged and ignored.
    """
    path = Path(config_path) if config_path else DEFAULT_API_CONFIG
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (json.JSONDecodeError, OSError) as exc:
        log.warning("Ignoring unreadable API key file %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        return {}
    api_keys = payload.get("api_keys", payload)
    applied: Dict[str, str] = {}
    for env_name, value in api_keys.items():
        if not value or _is_placeholder(str(value)):
            continue
        applied[env_name] = str(value)
        if set_env:
            os.environ.setdefault(env_name, str(value))
    return applied


def _pick_env(*names: str) -> str:
    for name in names:
        val = (os.getenv(name) or "").strip()
        if val and not _is_placeholder(val):
            return val
    return ""


@dataclass
class HarvestConfig:
    api_key: str = ""
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    temperature: float = 0.1
    max_output_tokens: int = 8192
    timeout_s: float = 120.0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_s: float = DEFAULT_BACKOFF_BASE_S
    max_backoff_s: float = DEFAULT_MAX_BACKOFF_S
    batch_size_pages: int = DEFAULT_BATCH_PAGES
    max_batch_bytes: Optional[int] = None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"

    @classmethod
    def from_env(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        **overrides: Any,
    ) -> "HarvestConfig":
        """Build a config from the key file, the environment, then *overrides*.

        ``None`` overrides are ignored so CLI defaults can be passed through.
        """
        load_api_keys(config_path, set_env=True)
        cfg = cls(
            api_key=_pick_env(*API_KEY_ENV_NAMES),
            model=(os.getenv("GEMINI_MODEL") or DEFAULT_MODEL).strip(),
            base_url=(os.getenv("GEMINI_BASE_URL") or DEFAULT_BASE_URL).strip(),
        )
        return replace(cfg, **{k: v for k, v in overrides.items() if v is not None})
