"""
Loader for per-host throttle and cache policies.

Policies live in a JSON document of the form::

    {
        "throttle": {"api.example.com": {"limit": 100, "duration_ms": 60000}},
        "cache": {"api.example.com": {"store_private": true}}
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .models import CachePolicy, ThrottleConfig
from shared.errors import ConfigurationError
from shared.logging import get_logger


class HostPolicyLoader:
    """
    Loads host policies from disk.

    A missing file is not an error: both maps are simply empty. A file that
    exists but cannot be parsed raises ConfigurationError.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self._path = Path(config_path) if config_path else None
        self.logger = get_logger("requestor.policy_loader")
        self._data = self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def refresh(self) -> None:
        """Reload policies from disk."""
        self._data = self._load()

    def throttle_configs(self) -> Dict[str, ThrottleConfig]:
        """Return the throttle map keyed by host."""
        return self._build("throttle", ThrottleConfig)

    def cache_policies(self) -> Dict[str, CachePolicy]:
        """Return the cache policy map keyed by host."""
        return self._build("cache", CachePolicy)

    def _build(self, section: str, model):
        payload = self._data.get(section) or {}
        try:
            return {host: model(**options) for host, options in payload.items()}
        except (TypeError, ValidationError) as e:
            raise ConfigurationError(
                f"Invalid {section} policy",
                details={"path": str(self._path), "error": str(e)}
            )

    def _load(self) -> Dict[str, Any]:
        if self._path is None or not self._path.exists():
            if self._path is not None:
                self.logger.info("No policy file found, using defaults", path=str(self._path))
            return {"throttle": {}, "cache": {}}

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (ValueError, OSError) as e:
            raise ConfigurationError("Failed to read policy file", details={"path": str(self._path), "error": str(e)})

        if not isinstance(data, dict):
            raise ConfigurationError("Policy file must contain a JSON object", details={"path": str(self._path)})

        self.logger.info(
            "Loaded host policies",
            path=str(self._path),
            throttle_hosts=len(data.get("throttle") or {}),
            cache_hosts=len(data.get("cache") or {})
        )
        return data
