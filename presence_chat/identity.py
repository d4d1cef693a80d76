import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

IDENTITY_KEY = "presence-chat:uuid"


class Storage(Protocol):
    """Session-scoped key/value storage (the sessionStorage surface)."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...


class MemoryStorage:
    def __init__(self):
        self._data: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStorage:
    """Storage backed by one JSON object on disk, written atomically."""

    def __init__(self, filepath: str | Path):
        self.filepath = Path(filepath).resolve()

    def _load(self) -> dict[str, str]:
        if not self.filepath.exists():
            return {}
        with open(self.filepath) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{self.filepath} does not hold a JSON object")
        return data

    def get_item(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.filepath.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


def new_identity() -> str:
    return str(uuid4())


class IdentityStore:
    """Per-session opaque identifier, generated once and reused.

    Any storage failure degrades to an ephemeral identifier for this process
    only; nothing is surfaced to the caller.
    """

    def __init__(self, storage: Storage | None, key: str = IDENTITY_KEY):
        self.storage = storage
        self.key = key

    def get_or_create(self) -> str:
        if self.storage is None:
            return new_identity()
        try:
            uuid = self.storage.get_item(self.key)
            if not uuid:
                uuid = new_identity()
                self.storage.set_item(self.key, uuid)
            return uuid
        except Exception:
            logger.debug("Session storage unavailable, using an ephemeral identity", exc_info=True)
            return new_identity()
