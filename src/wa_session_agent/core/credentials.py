"""
Session Credential Storage

Persists the material the transport needs to resume a session without
pairing again. Layout follows the multi-device library's multi-file store:

auth_info/
├── creds.json                 # Registration, identity keys, counters
├── pre-key-1.json             # One file per signal key
├── session-5511987654321.0.json
└── app-state-sync-key-AAAA.json

Damaged or discarded directories are never deleted. They are renamed to a
sibling backup (auth_info.backup-20261019T120000123456Z) and a fresh empty
directory takes their place.
"""

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"
KEY_ID_SAFE = "=+@"

# Longest first: "sender-key-memory-x" must not parse as sender-key "memory-x"
KNOWN_KEY_CATEGORIES = (
    "app-state-sync-version",
    "app-state-sync-key",
    "sender-key-memory",
    "sender-key",
    "pre-key",
    "session",
)


@dataclass
class Credentials:
    """Opaque session material: creds document plus signal keys by category"""
    creds: Dict[str, Any] = field(default_factory=dict)
    keys: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.creds

    def apply_key_updates(self, updates: Dict[str, Dict[str, Any]]) -> None:
        """Merge per-category key updates; a None value deletes the key"""
        for category, entries in updates.items():
            bucket = self.keys.setdefault(category, {})
            for key_id, value in entries.items():
                if value is None:
                    bucket.pop(key_id, None)
                else:
                    bucket[key_id] = value
            if not bucket:
                del self.keys[category]

    def to_dict(self) -> Dict[str, Any]:
        return {"creds": self.creds, "keys": self.keys}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credentials":
        return cls(creds=dict(data.get("creds") or {}), keys=dict(data.get("keys") or {}))


@dataclass
class SessionInfo:
    """Summary of the live session directory"""
    path: Path
    created: datetime
    modified: datetime
    files: int
    size: int


def key_file_name(category: str, key_id: str) -> str:
    """File name for one signal key, safe on every filesystem"""
    # Percent-encoding keeps ids such as "5511987654321:0" reversible
    return f"{category}-{quote(key_id, safe=KEY_ID_SAFE)}.json"


def format_bytes(size: int) -> str:
    """Human readable byte count"""
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


class CredentialStore:
    """
    Directory-backed credential store.

    The supervisor's credentials-changed callback and invalidate() are the
    only writers. Conversational handlers never touch this directory.
    """

    def __init__(self, session_dir: Union[str, Path]):
        self.session_dir = Path(session_dir)
        self._found_at_start = (self.session_dir / CREDS_FILE).is_file()
        if self._found_at_start:
            logger.info(f"Existing session found at {self.session_dir}")
        else:
            logger.info(f"No session at {self.session_dir}, first run")

    def exists(self) -> bool:
        """Whether a session was present when the store was created"""
        return self._found_at_start

    def load(self) -> Credentials:
        """
        Load persisted credentials.

        Returns an empty set when nothing is stored. Corrupt material is moved
        aside and also yields an empty set; this method never raises.
        """
        creds_path = self.session_dir / CREDS_FILE
        if not creds_path.is_file():
            return Credentials()

        try:
            credentials = self._read()
        except (OSError, ValueError) as e:
            logger.warning(f"Stored session at {self.session_dir} is unreadable: {e}")
            self._move_aside("corrupt session")
            return Credentials()

        logger.debug(
            f"Loaded credentials with {sum(len(v) for v in credentials.keys.values())} keys"
        )
        return credentials

    def save(self, credentials: Credentials) -> None:
        """Atomically persist credentials, replacing what is on disk"""
        self.session_dir.mkdir(parents=True, exist_ok=True)

        written = set()
        self._write_json(CREDS_FILE, credentials.creds)
        for category, entries in credentials.keys.items():
            for key_id, value in entries.items():
                name = key_file_name(category, key_id)
                self._write_json(name, value)
                written.add(name)

        for path in self.session_dir.glob("*.json"):
            if path.name != CREDS_FILE and path.name not in written:
                path.unlink()

        logger.debug(f"Saved credentials to {self.session_dir} ({len(written)} keys)")

    def invalidate(self) -> Optional[Path]:
        """
        Discard the live session by moving it to a new backup directory.

        Returns:
            Backup path, or None when there was no session directory
        """
        if not self.session_dir.exists():
            logger.debug(f"No session directory at {self.session_dir}, nothing to invalidate")
            return None
        return self._move_aside("invalidated session")

    def clear(self) -> Optional[Path]:
        """Operator-initiated reset; same rename-aside semantics as invalidate()"""
        return self.invalidate()

    def backup(self) -> Optional[Path]:
        """Copy the live session to a new backup directory, leaving it in place"""
        if not self.session_dir.exists():
            logger.warning("No session to back up")
            return None

        target = self._backup_path()
        shutil.copytree(self.session_dir, target)
        logger.info(f"Session backed up to {target}")
        return target

    def info(self) -> Optional[SessionInfo]:
        """Creation/modification times, file count and size of the live session"""
        if not self.session_dir.exists():
            return None

        stats = self.session_dir.stat()
        files = [p for p in self.session_dir.rglob("*") if p.is_file()]
        return SessionInfo(
            path=self.session_dir,
            created=datetime.fromtimestamp(stats.st_ctime, tz=timezone.utc),
            modified=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
            files=len(files),
            size=sum(p.stat().st_size for p in files),
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _read(self) -> Credentials:
        creds = self._read_json(self.session_dir / CREDS_FILE)
        if not isinstance(creds, dict):
            raise ValueError(f"{CREDS_FILE} does not contain an object")

        keys: Dict[str, Dict[str, Any]] = {}
        for path in sorted(self.session_dir.glob("*.json")):
            if path.name == CREDS_FILE:
                continue
            category, key_id = self._parse_key_file_name(path.name)
            keys.setdefault(category, {})[key_id] = self._read_json(path)

        return Credentials(creds=creds, keys=keys)

    def _read_json(self, path: Path) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _parse_key_file_name(self, name: str) -> Tuple[str, str]:
        # Categories themselves contain dashes (pre-key, app-state-sync-key),
        # so the id is whatever follows the longest known category prefix.
        stem = name[: -len(".json")]
        for category in KNOWN_KEY_CATEGORIES:
            if stem.startswith(category + "-"):
                return category, unquote(stem[len(category) + 1:])
        category, _, key_id = stem.rpartition("-")
        if not category:
            raise ValueError(f"Unrecognised key file: {name}")
        return category, unquote(key_id)

    def _write_json(self, name: str, value: Any) -> None:
        target = self.session_dir / name
        fd, tmp_path = tempfile.mkstemp(dir=self.session_dir, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _backup_path(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        base = self.session_dir.with_name(f"{self.session_dir.name}.backup-{stamp}")
        candidate = base
        suffix = 1
        while candidate.exists():
            candidate = base.with_name(f"{base.name}-{suffix}")
            suffix += 1
        return candidate

    def _move_aside(self, label: str) -> Optional[Path]:
        target = self._backup_path()
        try:
            self.session_dir.rename(target)
            self.session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not move {label} aside to {target}: {e}")
            return None

        logger.warning(f"Moved {label} to {target}")
        return target

