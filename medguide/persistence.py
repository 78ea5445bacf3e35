"""
Session snapshot persistence.

A flat, key-indexed collection of session snapshots. The orchestrator only
sees the PersistenceGateway interface; JsonFilePersistence is the bundled
backend (one JSON file holding a list of snapshots).

Concurrency: read-modify-write with no locking. Two processes writing the
same file means the last writer wins.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from medguide.utils.helpers import utc_now_iso

logger = logging.getLogger(__name__)


class PersistenceGateway(ABC):
    """Durable store of session snapshots keyed by snapshot['id']"""

    @abstractmethod
    def save(self, snapshot: Dict[str, Any]) -> None:
        """Insert a snapshot, replacing any existing one with the same id"""
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, session_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def update(self, session_id: str, fields: Dict[str, Any]) -> bool:
        """
        Merge fields into an existing snapshot and bump updatedAt.

        Returns:
            bool: False (with a warning logged) if the id is absent
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


class JsonFilePersistence(PersistenceGateway):
    """
    Single-file JSON store.

    Layout:
        data/sessions.json
            [ {snapshot}, {snapshot}, ... ]

    Design:
    - Whole collection rewritten on every mutation
    - Writes go to a temp file and are swapped in with os.replace
    - Missing or corrupt file reads as an empty collection
    """

    def __init__(self, path: str = "data/sessions.json"):
        """
        Args:
            path: JSON file holding the snapshot list (created on first write)
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonFilePersistence initialized: {self.path}")

    # ==================== PUBLIC API ====================

    def save(self, snapshot: Dict[str, Any]) -> None:
        if 'id' not in snapshot:
            raise ValueError("Snapshot has no 'id' field")

        snapshots = [s for s in self._read() if s.get('id') != snapshot['id']]
        snapshots.append(snapshot)
        self._write(snapshots)
        logger.info(f"Saved session {snapshot['id']}")

    def get_by_id(self, session_id: str) -> Optional[Dict[str, Any]]:
        for snapshot in self._read():
            if snapshot.get('id') == session_id:
                return snapshot
        return None

    def update(self, session_id: str, fields: Dict[str, Any]) -> bool:
        snapshots = self._read()

        for index, snapshot in enumerate(snapshots):
            if snapshot.get('id') == session_id:
                merged = {**snapshot, **fields}
                merged['id'] = session_id
                merged['updatedAt'] = utc_now_iso()
                snapshots[index] = merged
                self._write(snapshots)
                logger.debug(f"Updated session {session_id}: {sorted(fields)}")
                return True

        logger.warning(f"Session {session_id} not found for update")
        return False

    def delete(self, session_id: str) -> bool:
        snapshots = self._read()
        remaining = [s for s in snapshots if s.get('id') != session_id]

        if len(remaining) == len(snapshots):
            logger.warning(f"Session {session_id} not found for deletion")
            return False

        self._write(remaining)
        logger.info(f"Deleted session {session_id}")
        return True

    def list_all(self) -> List[Dict[str, Any]]:
        return self._read()

    # ==================== FILE I/O ====================

    def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read session store {self.path}: {e}")
            return []

        if not isinstance(data, list):
            logger.error(f"Session store {self.path} is not a list, ignoring contents")
            return []

        return [s for s in data if isinstance(s, dict)]

    def _write(self, snapshots: List[Dict[str, Any]]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp"
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(snapshots, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
