"""Reconciliation store: persistence, lookups, cleanup and failure modes."""

import json
import os

import pytest

from conquest_sdk.conquest_types import ZERO_ADDRESS, PendingExit, PendingFleet
from conquest_sdk.errors import StorageError
from conquest_sdk.store import DEFAULT_CLEANUP_AGE, ReconciliationStore

from conftest import ENEMY, PLAYER

DAY = 24 * 3600


def make_fleet(n: int = 1, sender: str = PLAYER, eta: int = 1000, **overrides) -> PendingFleet:
    values = dict(
        fleet_id="0x" + format(n, "064x"),
        from_planet_id=1,
        to_planet_id=(1 << 200) + n,
        quantity=100,
        secret="0x" + "ab" * 32,
        gift=False,
        specific=ZERO_ADDRESS,
        arrival_time_wanted=0,
        fleet_sender=sender,
        operator=sender,
        committed_at=n,
        estimated_arrival_time=eta,
        tx_hash="0xtx",
    )
    values.update(overrides)
    return PendingFleet(**values)


def make_exit(planet_id: int = 7, player: str = PLAYER, start: int = 0, **overrides) -> PendingExit:
    values = dict(
        planet_id=planet_id,
        player=player,
        exit_start_time=start,
        exit_duration=100,
        exit_complete_time=start + 100,
        num_spaceships=10,
        owner=player,
    )
    values.update(overrides)
    return PendingExit(**values)


# ── Persistence ────────────────────────────────────────────────────────────

class TestPersistence:
    def test_missing_file_is_empty(self, tmp_path):
        store = ReconciliationStore(tmp_path / "none" / "conquest-data.json")
        assert store.get_fleets() == []
        assert store.get_exits() == []

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "conquest-data.json"
        store = ReconciliationStore(path)
        fleet = make_fleet()
        store.save_fleet(fleet)
        store.save_exit(make_exit())

        reopened = ReconciliationStore(path)
        assert reopened.get_fleet(fleet.fleet_id) == fleet
        assert reopened.get_exit(7) == make_exit()

    def test_wide_ints_are_strings(self, tmp_path):
        path = tmp_path / "conquest-data.json"
        store = ReconciliationStore(path)
        store.save_fleet(make_fleet())
        data = json.loads(path.read_text())
        record = data["fleets"]["0x" + format(1, "064x")]
        assert record["to_planet_id"] == str((1 << 200) + 1)
        assert data["version"] == "1.0"

    def test_no_temp_file_left(self, tmp_path):
        store = ReconciliationStore(tmp_path / "conquest-data.json")
        store.save_fleet(make_fleet())
        assert os.listdir(tmp_path) == ["conquest-data.json"]

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "conquest-data.json"
        path.write_text("{not json")
        with pytest.raises(StorageError):
            ReconciliationStore(path)

    def test_invalid_record_raises(self, tmp_path):
        path = tmp_path / "conquest-data.json"
        path.write_text(json.dumps({"fleets": {"0x1": {"fleet_id": "0x1"}}, "exits": {}}))
        with pytest.raises(StorageError):
            ReconciliationStore(path)

    def test_failed_write_rolls_back(self, tmp_path, monkeypatch):
        store = ReconciliationStore(tmp_path / "conquest-data.json")
        store.save_fleet(make_fleet(1))

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(StorageError):
            store.save_fleet(make_fleet(2))
        assert store.get_fleet(make_fleet(2).fleet_id) is None
        assert store.get_fleet(make_fleet(1).fleet_id) is not None

    def test_for_contract_layout(self, tmp_path):
        store = ReconciliationStore.for_contract(tmp_path, 100, "0xABCdef")
        assert store.storage_path == tmp_path / "100" / "0xabcdef" / "conquest-data.json"

    def test_returned_records_are_copies(self, store):
        store.save_fleet(make_fleet())
        fleet = store.get_fleet(make_fleet().fleet_id)
        fleet.resolved = True
        assert not store.get_fleet(fleet.fleet_id).resolved


# ── Fleets ─────────────────────────────────────────────────────────────────

class TestFleets:
    def test_by_sender(self, store):
        store.save_fleet(make_fleet(1))
        store.save_fleet(make_fleet(2, sender=ENEMY))
        assert [f.fleet_id for f in store.get_fleets(PLAYER.upper().replace("0X", "0x"))] == [make_fleet(1).fleet_id]
        assert len(store.get_fleets()) == 2

    def test_resolvable_boundary(self, store):
        store.save_fleet(make_fleet(1, eta=1000))
        assert store.get_resolvable_fleets(1000 + 99, 100) == []
        assert len(store.get_resolvable_fleets(1000 + 100, 100)) == 1

    def test_unsubmitted(self, store):
        store.save_fleet(make_fleet(1))
        store.save_fleet(make_fleet(2, tx_hash=None))
        assert [f.fleet_id for f in store.get_unsubmitted_fleets()] == [make_fleet(2).fleet_id]

    def test_attach_and_resolve(self, store):
        fleet = make_fleet(1, tx_hash=None)
        store.save_fleet(fleet)
        store.attach_fleet_handle(fleet.fleet_id, "0xsend")
        resolved = store.mark_resolved(fleet.fleet_id, 5000, "0xresolve")
        assert resolved.tx_hash == "0xsend"
        assert resolved.resolve_tx_hash == "0xresolve"
        assert store.get_pending_fleets() == []

    def test_unknown_fleet(self, store):
        with pytest.raises(KeyError):
            store.mark_resolved("0x" + "00" * 32, 1)

    def test_cleanup_only_old_resolved(self, store):
        store.save_fleet(make_fleet(1))
        store.save_fleet(make_fleet(2))
        store.save_fleet(make_fleet(3))
        store.mark_resolved(make_fleet(1).fleet_id, 0)
        store.mark_resolved(make_fleet(2).fleet_id, 7 * DAY)
        assert store.cleanup_fleets(8 * DAY) == 1
        assert store.get_fleet(make_fleet(1).fleet_id) is None
        assert store.get_fleet(make_fleet(2).fleet_id) is not None
        assert store.get_fleet(make_fleet(3).fleet_id) is not None
        assert DEFAULT_CLEANUP_AGE == 7 * DAY


# ── Exits ──────────────────────────────────────────────────────────────────

class TestExits:
    def test_status_transitions(self, store):
        store.save_exit(make_exit())
        assert store.get_exit(7).status.value == "in_progress"
        assert store.mark_exit_completed(7, 200).status.value == "completed"
        assert [e.planet_id for e in store.get_withdrawable_exits()] == [7]
        withdrawn = store.mark_exit_withdrawn(7, 300, "0xw")
        assert withdrawn.status.value == "withdrawn"
        assert withdrawn.withdraw_tx_hash == "0xw"
        assert store.get_withdrawable_exits() == []
        assert store.get_open_exits() == []

    def test_interrupted_keeps_history(self, store):
        store.save_exit(make_exit())
        record = store.mark_exit_interrupted(7, ENEMY, 50)
        assert record.interrupted_by == ENEMY
        assert record.owner == ENEMY
        assert store.get_exit(7).status.value == "interrupted"
        assert store.get_withdrawable_exits() == []

    def test_by_player(self, store):
        store.save_exit(make_exit(1))
        store.save_exit(make_exit(2, player=ENEMY))
        assert [e.planet_id for e in store.get_exits(PLAYER)] == [1]

    def test_update_exit(self, store):
        store.save_exit(make_exit())
        record = store.get_exit(7)
        record.last_checked_at = 42
        store.update_exit(record)
        assert store.get_exit(7).last_checked_at == 42

    def test_cleanup_only_old_terminal(self, store):
        store.save_exit(make_exit(1))
        store.save_exit(make_exit(2))
        store.save_exit(make_exit(3))
        store.mark_exit_withdrawn(1, 0)
        store.mark_exit_interrupted(2, ENEMY, 0)
        assert store.cleanup_exits(8 * DAY) == 2
        assert [e.planet_id for e in store.get_exits()] == [3]
