"""
Policy store: desired lifecycle policy per stack, persisted as JSON files.
"""

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional
import logging

from .errors import ConfigError, NotFound, StackkeeperError
from .ids import StackIdentity, parse_identity, validate_identity
from .policy import LifecyclePolicy

logger = logging.getLogger(__name__)


def get_stackkeeper_home() -> Path:
    """
    Get the stackkeeper home directory.

    Returns:
        Path: Home directory (STACKKEEPER_HOME, default .stackkeeper)
    """
    home = os.environ.get("STACKKEEPER_HOME", ".stackkeeper")
    return Path(home).resolve()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class StackRecord:
    """Stored state of one stack: its policy and which set-once fields were applied."""
    identity: StackIdentity
    policy: LifecyclePolicy
    applied: Dict[str, str] = field(default_factory=dict)  # field name -> applied_at
    updated_at: Optional[str] = None

    def is_applied(self, field_name: str) -> bool:
        return field_name in self.applied

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": str(self.identity),
            "policy": self.policy.to_dict(),
            "applied": dict(self.applied),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StackRecord":
        return cls(
            identity=parse_identity(data["identity"]),
            policy=LifecyclePolicy.from_dict(data.get("policy", {})),
            applied=dict(data.get("applied", {})),
            updated_at=data.get("updated_at"),
        )


class StoreCorrupted(StackkeeperError):
    """A stored record could not be read back."""


class PolicyStore:
    """
    File-based policy store.

    Storage path: ``<home>/stacks/<org>/<project>/<stack>.json``. One file per
    stack, so writes for different stacks never touch the same file. Writes for
    the same stack are serialized with a per-key lock.
    """

    def __init__(self, home: Optional[Path] = None):
        self.home = Path(home) if home is not None else get_stackkeeper_home()
        self.root = self.home / "stacks"
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, identity: StackIdentity) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(identity.key)
            if lock is None:
                lock = threading.RLock()
                self._locks[identity.key] = lock
            return lock

    def _path_for(self, identity: StackIdentity) -> Path:
        validate_identity(identity)
        return self.root / identity.organization / identity.project / f"{identity.stack}.json"

    def _read(self, identity: StackIdentity) -> StackRecord:
        path = self._path_for(identity)
        if not path.exists():
            raise NotFound(f"No policy stored for {identity}")
        try:
            with open(path, "r") as f:
                return StackRecord.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, IOError) as e:
            raise StoreCorrupted(f"Failed to read policy for {identity}: {e}")

    def _write(self, record: StackRecord) -> None:
        path = self._path_for(record.identity)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a temp file and swap it in so readers never see half a record
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, identity: StackIdentity) -> StackRecord:
        """
        Get the stored record for a stack.

        Raises:
            NotFound: If no policy is stored for the stack
        """
        with self._lock_for(identity):
            return self._read(identity)

    def upsert(self, identity: StackIdentity, policy: LifecyclePolicy) -> StackRecord:
        """Create or replace the policy of a stack, keeping its applied markers."""
        with self._lock_for(identity):
            try:
                record = self._read(identity)
                record.policy = policy
            except NotFound:
                record = StackRecord(identity=identity, policy=policy)
            record.updated_at = _now_iso()
            self._write(record)
            return record

    def update(
        self,
        identity: StackIdentity,
        mutate: Callable[[LifecyclePolicy], LifecyclePolicy],
        default: Optional[LifecyclePolicy] = None,
    ) -> StackRecord:
        """
        Read-modify-write the policy of a stack under its lock.

        ``mutate`` receives the policy as currently stored, so changes made by
        other writers since the caller last read the record are kept.

        Args:
            identity: Stack identity
            mutate: Returns the new policy given the stored one
            default: Policy to start from when nothing is stored yet

        Raises:
            NotFound: If nothing is stored and no default was given
        """
        with self._lock_for(identity):
            try:
                record = self._read(identity)
            except NotFound:
                if default is None:
                    raise
                record = StackRecord(identity=identity, policy=default)
            record.policy = mutate(record.policy)
            record.updated_at = _now_iso()
            self._write(record)
            return record

    def set_expiration(self, identity: StackIdentity, timestamp: Optional[str]) -> StackRecord:
        """Record (or clear) the TTL deadline without touching the other policy fields."""
        return self.update(identity, lambda policy: policy.with_expiration(timestamp))

    def mark_applied(self, identity: StackIdentity, field_name: str, applied_at: Optional[str] = None) -> None:
        with self._lock_for(identity):
            record = self._read(identity)
            record.applied[field_name] = applied_at or _now_iso()
            record.updated_at = _now_iso()
            self._write(record)

    def clear_applied(self, identity: StackIdentity, *field_names: str) -> None:
        """Forget that set-once fields were applied; they are written again on the next pass."""
        with self._lock_for(identity):
            try:
                record = self._read(identity)
            except NotFound:
                return
            for name in field_names:
                record.applied.pop(name, None)
            record.updated_at = _now_iso()
            self._write(record)

    def delete(self, identity: StackIdentity) -> bool:
        """Remove the record of a stack. Returns True if something was removed."""
        with self._lock_for(identity):
            path = self._path_for(identity)
            if path.exists():
                path.unlink()
                return True
            return False

    def list_identities(self) -> List[StackIdentity]:
        """List all stacks with a stored policy, sorted by identity."""
        if not self.root.exists():
            return []

        identities = []
        for path in self.root.glob("*/*/*.json"):
            org = path.parent.parent.name
            project = path.parent.name
            try:
                identities.append(StackIdentity(org, project, path.stem))
            except ConfigError as e:
                logger.warning(f"Skipping policy file with an invalid stack name {path}: {e}")

        return sorted(identities, key=lambda i: i.key)

    def list_records(self) -> List[StackRecord]:
        records = []
        for identity in self.list_identities():
            try:
                records.append(self.get(identity))
            except (NotFound, StoreCorrupted) as e:
                logger.warning(f"Skipping unreadable policy record: {e}")
        return records
