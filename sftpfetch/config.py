"""Settings and host profiles for sftpfetch.

All settings are stored as JSON files under ``~/.sftpfetch/``.
Passwords are never written to disk — they are delegated to ``keyring``
(see :mod:`sftpfetch.credentials`).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "port": 22,
    "chunk_size": 4096,
    "eof_policy": "short_read",
    "timeout": None,
    "teardown_timeout": 5.0,
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages transfer settings and host profiles.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset — it never crashes the application.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.sftpfetch/`` if necessary."""
        self._base = base_dir or Path.home() / ".sftpfetch"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: list[dict[str, Any]] = self._load_profiles()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_profiles(self) -> list[dict[str, Any]]:
        """Load ``profiles.json``, returning an empty list on corruption."""
        if not self._profiles_path.exists():
            return []
        try:
            loaded = json.loads(self._profiles_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("Profiles root must be a JSON array")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt profiles.json (%s) — resetting to empty list", exc)
            self._atomic_write(self._profiles_path, [])
            return []

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def transfer_options(self) -> dict[str, Any]:
        """Keyword arguments for :func:`sftpfetch.transfer.fetch_file`."""
        return {
            "port": int(self.get("port", DEFAULT_CONFIG["port"])),
            "chunk_size": int(self.get("chunk_size", DEFAULT_CONFIG["chunk_size"])),
            "eof_policy": self.get("eof_policy", DEFAULT_CONFIG["eof_policy"]),
            "timeout": self.get("timeout"),
            "teardown_timeout": float(
                self.get("teardown_timeout", DEFAULT_CONFIG["teardown_timeout"])
            ),
        }

    # ------------------------------------------------------------------
    # Profile management
    # ------------------------------------------------------------------

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Upsert a profile by its ``name`` field.

        If a profile with the same ``name`` already exists it is replaced;
        otherwise the new profile is appended.  Passwords must NOT be in
        *profile* — store them via :func:`sftpfetch.credentials.store_password`.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")

        # Strip any accidental password keys
        profile = {k: v for k, v in profile.items() if k != "password"}

        for i, existing in enumerate(self._profiles):
            if existing.get("name") == name:
                self._profiles[i] = profile
                break
        else:
            self._profiles.append(profile)

        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s", name)

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return the profile dict for *name*, or ``None`` if not found."""
        for profile in self._profiles:
            if profile.get("name") == name:
                return dict(profile)
        return None
