"""JSON file storage for conversations and settings."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from .models import Conversation, Settings

logger = logging.getLogger(__name__)

_conversation_list = TypeAdapter(list[Conversation])


def _atomic_write(path: Path, text: str):
    """Write via a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _dumps(data) -> str:
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


class ChatPersistence:
    """Stores the full conversation list as one pretty-printed JSON array.

    Loading never raises: a missing or unreadable file yields an empty list.
    Saving is best-effort; failures are logged and swallowed.
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> list[Conversation]:
        if not self.path.exists():
            return []
        try:
            raw = self.path.read_text(encoding="utf-8")
            return _conversation_list.validate_json(raw)
        except (OSError, ValueError, ValidationError):
            logger.warning("Could not read %s, starting with no chats", self.path, exc_info=True)
            return []

    def save(self, conversations: list[Conversation]):
        data = _conversation_list.dump_python(conversations, mode="json", by_alias=True)
        try:
            _atomic_write(self.path, _dumps(data))
        except OSError:
            logger.warning("Failed to save chats to %s", self.path, exc_info=True)


class SettingsPersistence:
    """Small key/value preferences file (last-used model)."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Settings:
        if not self.path.exists():
            return Settings()
        try:
            return Settings.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError):
            logger.warning("Could not read %s, using default settings", self.path, exc_info=True)
            return Settings()

    def save(self, settings: Settings):
        try:
            _atomic_write(self.path, _dumps(settings.model_dump(mode="json")))
        except OSError:
            logger.warning("Failed to save settings to %s", self.path, exc_info=True)
