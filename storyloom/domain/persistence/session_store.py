from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from pathlib import Path
import asyncio
import errno
import json
import os
import re

from pydantic import ValidationError
import structlog

from storyloom.domain.errors import SessionStoreError, StorageQuotaError
from storyloom.domain.models.session import Session

logger = structlog.get_logger(__name__)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class SessionStore(ABC):
    """Durable key-value storage for session snapshots.

    Implementations raise SessionStoreError; `retryable` tells the caller
    whether trying again can help.
    """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        """Stored snapshot or None"""
        pass

    @abstractmethod
    async def set(self, session_id: str, session: Session) -> None:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a snapshot, returning whether one existed"""
        pass

    @abstractmethod
    async def list_ids(self) -> List[str]:
        pass


class InMemorySessionStore(SessionStore):
    """Process-local store holding serialized snapshots"""

    def __init__(self):
        self.snapshots: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            data = self.snapshots.get(session_id)

        return Session.from_json(data) if data is not None else None

    async def set(self, session_id: str, session: Session) -> None:
        # Serialized so later in-memory mutations never leak into the stored copy
        data = session.to_json()
        async with self._lock:
            self.snapshots[session_id] = data

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self.snapshots.pop(session_id, None) is not None

    async def list_ids(self) -> List[str]:
        async with self._lock:
            return list(self.snapshots.keys())


class JsonFileSessionStore(SessionStore):
    """One `<session_id>.json` file per session under a directory"""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        if not _SAFE_ID_RE.match(session_id):
            raise SessionStoreError(f"Invalid session id: {session_id!r}", retryable=False)
        return self.directory / f"{session_id}.json"

    @staticmethod
    def _translate(error: OSError, action: str, session_id: str) -> SessionStoreError:
        if error.errno == errno.ENOSPC:
            return StorageQuotaError(f"Storage full while trying to {action} {session_id}")
        return SessionStoreError(f"Failed to {action} {session_id}: {error}", retryable=True)

    def _read(self, path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write(self, path: Path, data: str) -> None:
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(data, encoding="utf-8")
        os.replace(tmp_path, path)

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def get(self, session_id: str) -> Optional[Session]:
        path = self._path(session_id)
        try:
            data = await asyncio.to_thread(self._read, path)
        except OSError as e:
            raise self._translate(e, "load", session_id) from e

        if data is None:
            return None

        try:
            return Session.from_json(data)
        except (ValidationError, json.JSONDecodeError) as e:
            logger.error("Corrupt session file", session_id=session_id, error=str(e))
            raise SessionStoreError(f"Corrupt session data for {session_id}", retryable=False) from e

    async def set(self, session_id: str, session: Session) -> None:
        path = self._path(session_id)
        data = session.to_json()
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise self._translate(e, "save", session_id) from e

    async def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        try:
            return await asyncio.to_thread(self._remove, path)
        except OSError as e:
            raise self._translate(e, "delete", session_id) from e

    async def list_ids(self) -> List[str]:
        try:
            paths = await asyncio.to_thread(lambda: sorted(self.directory.glob("*.json")))
        except OSError as e:
            raise SessionStoreError(f"Failed to list sessions: {e}", retryable=True) from e
        return [path.stem for path in paths]
