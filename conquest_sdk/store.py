"""
Conquest SDK - Reconciliation Store

Durable local record of in-flight fleets and exits. This file is the only
place a fleet secret survives between commit and reveal.

Layout:
  <data_dir>/<chain_id>/<contract_address>/conquest-data.json

  {
    "version": "1.0",
    "updated_ts": 1700000000,
    "fleets": {"0x<fleet id>": {...PendingFleet}},
    "exits":  {"<planet id>":  {...PendingExit}}
  }

Every mutation rewrites the file atomically (temp file + fsync + rename),
so a crash mid-write leaves the previous version intact.
"""

import functools
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

from .conquest_types import PendingExit, PendingFleet, same_address
from .errors import StorageError

log = logging.getLogger(__name__)

DEFAULT_CLEANUP_AGE = 7 * 24 * 3600


def serialized(method):
    """
    Hold the owner's store lock for a whole read, submit, save cycle.

    The lock is re-entrant, so serialized methods may call each other.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.store.lock:
            return method(self, *args, **kwargs)
    return wrapper


class ReconciliationStore:
    """
    JSON-file store for PendingFleet / PendingExit records.

    All mutations are serialized on a re-entrant lock; records handed out
    are fresh copies, so callers never mutate stored state by accident.

    Usage:
        store = ReconciliationStore.for_contract("data", 100, "0xContract...")
        store.save_fleet(fleet)
        ready = store.get_resolvable_fleets(now, resolve_window)
    """

    FILE_NAME = "conquest-data.json"
    VERSION = "1.0"

    def __init__(self, storage_path: Union[str, Path]):
        self.storage_path = Path(storage_path)
        self._lock = threading.RLock()
        self._fleets: Dict[str, dict] = {}
        self._exits: Dict[str, dict] = {}
        self._load()

    @classmethod
    def for_contract(cls, data_dir: Union[str, Path], chain_id: int,
                     contract_address: str) -> "ReconciliationStore":
        path = Path(data_dir) / str(chain_id) / contract_address.lower() / cls.FILE_NAME
        return cls(path)

    @property
    def lock(self):
        """Lock shared by every writer of this store."""
        return self._lock

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _load(self):
        if not self.storage_path.exists():
            return
        try:
            with open(self.storage_path, "r") as f:
                data = json.load(f)
            fleets = data.get("fleets", {})
            exits = data.get("exits", {})
            # validate every record up front
            for record in fleets.values():
                PendingFleet.from_dict(record)
            for record in exits.values():
                PendingExit.from_dict(record)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageError(f"Failed to load {self.storage_path}: {e}")
        self._fleets = fleets
        self._exits = exits
        log.debug(f"Loaded {len(fleets)} fleets, {len(exits)} exits from {self.storage_path}")

    def _save(self):
        """Persist to disk (atomic write via temp file + rename)."""
        data = {
            "version": self.VERSION,
            "updated_ts": int(time.time()),
            "fleets": self._fleets,
            "exits": self._exits,
        }
        tmp_file = self.storage_path.with_suffix(".tmp")
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, self.storage_path)
        except OSError as e:
            raise StorageError(f"Failed to save {self.storage_path}: {e}")

    def _commit(self, collection: Dict[str, dict], key: str, record: Optional[dict]):
        """Apply one change and persist; roll the change back if the write fails."""
        previous = collection.get(key)
        if record is None:
            collection.pop(key, None)
        else:
            collection[key] = record
        try:
            self._save()
        except StorageError:
            if previous is None:
                collection.pop(key, None)
            else:
                collection[key] = previous
            raise

    # =========================================================================
    # FLEETS
    # =========================================================================

    def save_fleet(self, fleet: PendingFleet):
        with self._lock:
            self._commit(self._fleets, fleet.fleet_id, fleet.to_dict())

    def get_fleet(self, fleet_id: str) -> Optional[PendingFleet]:
        with self._lock:
            record = self._fleets.get(fleet_id)
            return PendingFleet.from_dict(record) if record else None

    def get_fleets(self, sender: Optional[str] = None) -> List[PendingFleet]:
        """All fleets, optionally only those sent by `sender`, oldest first."""
        with self._lock:
            fleets = [PendingFleet.from_dict(r) for r in self._fleets.values()]
        if sender:
            fleets = [f for f in fleets if same_address(f.fleet_sender, sender)]
        return sorted(fleets, key=lambda f: f.committed_at)

    def get_pending_fleets(self, sender: Optional[str] = None) -> List[PendingFleet]:
        return [f for f in self.get_fleets(sender) if not f.resolved]

    def get_resolvable_fleets(self, now: int, resolve_window: int,
                              sender: Optional[str] = None) -> List[PendingFleet]:
        """Unresolved fleets whose resolve window has opened."""
        return [
            f for f in self.get_pending_fleets(sender)
            if now >= f.resolvable_at(resolve_window)
        ]

    def get_unsubmitted_fleets(self, sender: Optional[str] = None) -> List[PendingFleet]:
        """Fleets persisted before submission whose send never returned a handle."""
        return [f for f in self.get_pending_fleets(sender) if not f.tx_hash]

    def attach_fleet_handle(self, fleet_id: str, tx_hash: str) -> PendingFleet:
        with self._lock:
            fleet = self._require_fleet(fleet_id)
            fleet.tx_hash = tx_hash
            self._commit(self._fleets, fleet_id, fleet.to_dict())
            return fleet

    def mark_resolved(self, fleet_id: str, resolved_at: int,
                      tx_hash: Optional[str] = None) -> PendingFleet:
        with self._lock:
            fleet = self._require_fleet(fleet_id)
            fleet.resolved = True
            fleet.resolved_at = resolved_at
            if tx_hash:
                fleet.resolve_tx_hash = tx_hash
            self._commit(self._fleets, fleet_id, fleet.to_dict())
            return fleet

    def cleanup_fleets(self, now: int, older_than: int = DEFAULT_CLEANUP_AGE) -> int:
        """Delete resolved fleets resolved more than `older_than` seconds ago."""
        cutoff = now - older_than
        with self._lock:
            stale = [
                fleet_id for fleet_id, record in self._fleets.items()
                if record.get("resolved") and record.get("resolved_at") is not None
                and int(record["resolved_at"]) < cutoff
            ]
            if not stale:
                return 0
            backup = dict(self._fleets)
            for fleet_id in stale:
                del self._fleets[fleet_id]
            try:
                self._save()
            except StorageError:
                self._fleets = backup
                raise
        log.info(f"Cleaned up {len(stale)} resolved fleets")
        return len(stale)

    def _require_fleet(self, fleet_id: str) -> PendingFleet:
        record = self._fleets.get(fleet_id)
        if record is None:
            raise KeyError(fleet_id)
        return PendingFleet.from_dict(record)

    # =========================================================================
    # EXITS
    # =========================================================================

    def save_exit(self, exit_record: PendingExit):
        with self._lock:
            self._commit(self._exits, str(exit_record.planet_id), exit_record.to_dict())

    update_exit = save_exit

    def get_exit(self, planet_id: int) -> Optional[PendingExit]:
        with self._lock:
            record = self._exits.get(str(planet_id))
            return PendingExit.from_dict(record) if record else None

    def get_exits(self, player: Optional[str] = None) -> List[PendingExit]:
        with self._lock:
            exits = [PendingExit.from_dict(r) for r in self._exits.values()]
        if player:
            exits = [e for e in exits if same_address(e.player, player)]
        return sorted(exits, key=lambda e: e.exit_start_time)

    def get_open_exits(self, player: Optional[str] = None) -> List[PendingExit]:
        """Exits not yet withdrawn or interrupted."""
        return [e for e in self.get_exits(player) if not e.terminal]

    def get_withdrawable_exits(self, player: Optional[str] = None) -> List[PendingExit]:
        return [e for e in self.get_exits(player) if e.completed and not e.withdrawn and not e.interrupted]

    def mark_exit_completed(self, planet_id: int, checked_at: int) -> PendingExit:
        with self._lock:
            record = self._require_exit(planet_id)
            record.completed = True
            record.last_checked_at = checked_at
            self.save_exit(record)
            return record

    def mark_exit_interrupted(self, planet_id: int, new_owner: Optional[str],
                              checked_at: int) -> PendingExit:
        with self._lock:
            record = self._require_exit(planet_id)
            record.interrupted = True
            record.interrupted_by = new_owner
            if new_owner:
                record.owner = new_owner
            record.last_checked_at = checked_at
            self.save_exit(record)
            return record

    def mark_exit_withdrawn(self, planet_id: int, withdrawn_at: int,
                            tx_hash: Optional[str] = None) -> PendingExit:
        with self._lock:
            record = self._require_exit(planet_id)
            record.withdrawn = True
            record.withdrawn_at = withdrawn_at
            if tx_hash:
                record.withdraw_tx_hash = tx_hash
            self.save_exit(record)
            return record

    def cleanup_exits(self, now: int, older_than: int = DEFAULT_CLEANUP_AGE) -> int:
        """Delete withdrawn or interrupted exits last touched more than `older_than` ago."""
        cutoff = now - older_than
        with self._lock:
            stale = []
            for planet_id, record in self._exits.items():
                exit_record = PendingExit.from_dict(record)
                if not exit_record.terminal:
                    continue
                touched = exit_record.withdrawn_at or exit_record.last_checked_at
                if touched < cutoff:
                    stale.append(planet_id)
            if not stale:
                return 0
            backup = dict(self._exits)
            for planet_id in stale:
                del self._exits[planet_id]
            try:
                self._save()
            except StorageError:
                self._exits = backup
                raise
        log.info(f"Cleaned up {len(stale)} finished exits")
        return len(stale)

    def _require_exit(self, planet_id: int) -> PendingExit:
        record = self._exits.get(str(planet_id))
        if record is None:
            raise KeyError(planet_id)
        return PendingExit.from_dict(record)
