"""Persisted broker identity (the session UUID reused across negotiations)."""

import json
import logging
import os
import sys
from uuid import UUID
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import APP_NAME

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"


def default_config_dir() -> Path:
    """Per-application config directory for the current platform"""
    if sys.platform == "win32" and os.environ.get("APPDATA"):
        base = Path(os.environ["APPDATA"])
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    return base / APP_NAME


@dataclass
class IdentityRecord:
    uuid: Optional[UUID] = None


class IdentityStore:
    def __init__(self, config_dir: Optional[str] = None):
        directory = Path(config_dir) if config_dir else default_config_dir()
        self.path = directory / CONFIG_FILE

    def load(self) -> IdentityRecord:
        """Load the stored identity. A missing file is a valid, empty record."""
        if not self.path.exists():
            logger.info(f"No stored identity at {self.path}")
            return IdentityRecord()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable identity file {self.path}: {e}")
            return IdentityRecord()
        if not isinstance(data, dict):
            logger.warning(f"Ignoring identity file {self.path}: not a JSON object")
            return IdentityRecord()

        raw = data.get("uuid")
        if not raw:
            return IdentityRecord()
        try:
            return IdentityRecord(uuid=UUID(raw))
        except ValueError:
            logger.warning(f"Ignoring malformed identity in {self.path}")
            return IdentityRecord()

    def store(self, record: IdentityRecord):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"uuid": record.uuid.hex if record.uuid else None}
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)
        logger.info(f"Saved broker identity to {self.path}")
