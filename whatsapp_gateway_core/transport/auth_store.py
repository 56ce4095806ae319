"""Durable storage for the opaque transport credentials.

The bridge hands over an updated credential blob whenever the WhatsApp
session keys rotate; it is replayed on the next connect so pairing survives
restarts.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

_LOGGER = logging.getLogger(__name__)

CREDS_FILENAME = "creds.json"


class FileAuthStore:
    """Keeps the credential blob as JSON in a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._path = self._directory / CREDS_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> dict[str, Any] | None:
        """Return the stored credentials, or None when missing or unreadable."""
        if not self.exists():
            return None
        try:
            with self._path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as err:
            _LOGGER.warning("Ignoring unreadable credentials at %s: %s", self._path, err)
            return None
        if not isinstance(data, dict):
            _LOGGER.warning("Ignoring malformed credentials at %s", self._path)
            return None
        return data

    def save(self, creds: dict[str, Any]) -> None:
        """Atomically replace the stored credentials."""
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(creds, fh)
            os.replace(tmp_path, self._path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        _LOGGER.debug("Transport credentials saved to %s", self._path)

    def clear(self) -> None:
        """Forget the stored credentials; the next connect must pair again."""
        if self.exists():
            self._path.unlink()
            _LOGGER.info("Transport credentials cleared")
