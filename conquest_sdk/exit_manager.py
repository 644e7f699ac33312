"""
Conquest SDK - Exit Manager

Exit (unstake) lifecycle of owned planets:

  active --begin_exit--> exiting --+--> completed --withdraw--> withdrawn
                                   |
                                   +--> interrupted (captured while exiting)

The ledger decides; verify_exit_status() is where local records are
corrected against it.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from .conquest_types import (
    RECOVERED_HANDLE,
    ActionResult,
    ExitStatus,
    PendingExit,
    PlanetState,
    same_address,
)
from .errors import InputError, LedgerRejection, LedgerUnavailable
from .ledger_client import fetch_planet_states
from .location import parse_location
from .space_model import SpaceModel
from .store import ReconciliationStore, serialized

log = logging.getLogger(__name__)


class ExitManager:
    """
    Begins, verifies and withdraws exits for one player.

    Usage:
        exits = ExitManager(ledger, store, space, clock)
        exits.begin_exit([planet_id])
        ...
        exits.verify_exit_status(planet_id)
        exits.withdraw()
    """

    def __init__(self, ledger, store: ReconciliationStore, space: SpaceModel,
                 clock: Callable[[], int], player: Optional[str] = None):
        self.ledger = ledger
        self.store = store
        self.space = space
        self.clock = clock
        self.player = player or getattr(ledger, "address", None)

    @property
    def exit_duration(self) -> int:
        return self.space.config.exit_duration

    def _require_player(self) -> str:
        if not self.player:
            raise InputError("A signing account is required for this operation")
        return self.player

    @staticmethod
    def _parse_ids(planet_ids: Iterable) -> List[int]:
        try:
            ids = [parse_location(planet_id) for planet_id in planet_ids]
        except ValueError as e:
            raise InputError(str(e))
        # dedupe, keep order
        return list(dict.fromkeys(ids))

    def _states(self, planet_ids: List[int]) -> Dict[int, PlanetState]:
        return dict(zip(planet_ids, fetch_planet_states(self.ledger, planet_ids)))

    # =========================================================================
    # BEGIN EXIT
    # =========================================================================

    @serialized
    def begin_exit(self, planet_ids) -> ActionResult:
        """
        Start exiting every given planet the player owns.

        Planets owned by someone else are skipped, not rejected. Planets
        already exiting on the ledger get a local record but are not
        resubmitted.

        Returns:
            ActionResult with exits_initiated and skipped lists
        """
        player = self._require_player()
        ids = self._parse_ids(planet_ids)
        if not ids:
            raise InputError("No planet ids given")

        now = self.clock()
        states = self._states(ids)

        to_submit = []
        initiated = []
        skipped = []
        for planet_id in ids:
            state = states[planet_id]
            if not same_address(state.owner, player):
                skipped.append({"planet_id": str(planet_id), "reason": "not owned"})
                continue

            start = state.exit_start_time if state.exit_start_time else now
            record = PendingExit(
                planet_id=planet_id,
                player=player,
                exit_start_time=start,
                exit_duration=self.exit_duration,
                exit_complete_time=start + self.exit_duration,
                num_spaceships=state.num_spaceships,
                owner=player,
                last_checked_at=now,
            )
            if state.exit_start_time:
                # exit already in progress on the ledger
                existing = self.store.get_exit(planet_id)
                record.tx_hash = existing.tx_hash if existing and existing.tx_hash else RECOVERED_HANDLE
                self.store.save_exit(record)
                initiated.append(record)
                continue

            self.store.save_exit(record)
            to_submit.append(record)

        if to_submit:
            submitted = [r.planet_id for r in to_submit]
            try:
                tx_hash = self.ledger.simulate_and_send("exitMultipleFor", player, submitted)
            except LedgerRejection as e:
                log.warning(f"Exit of {len(submitted)} planets rejected: {e.reason}")
                return ActionResult.rejected(
                    e.reason,
                    function=e.function,
                    exits_initiated=[r.to_dict() for r in initiated],
                    skipped=skipped,
                )
            for record in to_submit:
                record.tx_hash = tx_hash
                self.store.save_exit(record)
                initiated.append(record)
            log.info(f"Exit started for {len(submitted)} planets: {tx_hash}")

        if not initiated:
            return ActionResult.rejected("None of the given planets are owned by the player",
                                         exits_initiated=[], skipped=skipped)

        return ActionResult.succeeded(
            f"{len(initiated)} exits in progress",
            exits_initiated=[r.to_dict() for r in initiated],
            skipped=skipped,
        )

    # =========================================================================
    # VERIFY
    # =========================================================================

    @serialized
    def verify_exit_status(self, planet_id) -> ActionResult:
        """
        Reconcile one exit record against the ledger.

        Returns:
            ActionResult with exit_status (in_progress / completed /
            interrupted / withdrawn) and the updated record
        """
        try:
            planet_id = parse_location(planet_id)
        except ValueError as e:
            raise InputError(str(e))

        record = self.store.get_exit(planet_id)
        if record is None:
            raise InputError(f"No exit recorded for planet {planet_id}")
        if record.terminal:
            return self._status_result(record)

        now = self.clock()
        state = fetch_planet_states(self.ledger, [planet_id])[0]
        record = self._reconcile(record, state, now)
        return self._status_result(record)

    def _reconcile(self, record: PendingExit, state: PlanetState, now: int) -> PendingExit:
        complete = record.exit_complete_time

        if not same_address(state.owner, record.owner):
            captured_after = state.owner is None or state.ownership_start_time >= complete
            if now >= complete and captured_after:
                # exit finished first; the stake is still ours to withdraw
                log.info(f"Exit of {record.planet_id} completed (planet since taken by {state.owner})")
                return self.store.mark_exit_completed(record.planet_id, now)
            log.warning(f"Exit of {record.planet_id} interrupted by {state.owner}")
            return self.store.mark_exit_interrupted(record.planet_id, state.owner, now)

        if state.exit_start_time and state.exit_start_time != record.exit_start_time:
            record.exit_start_time = state.exit_start_time
            record.exit_complete_time = state.exit_start_time + record.exit_duration

        record.last_checked_at = now
        # no exit on the ledger: a handle-less record stays open for retry_unsubmitted
        if state.exit_start_time and now >= record.exit_complete_time:
            record.completed = True
            log.info(f"Exit of {record.planet_id} completed")
        self.store.save_exit(record)
        return record

    @staticmethod
    def _status_result(record: PendingExit) -> ActionResult:
        data = {"exit_status": record.status.value, "exit": record.to_dict()}
        if record.status == ExitStatus.INTERRUPTED:
            data["new_owner"] = record.interrupted_by
            return ActionResult.succeeded(f"Exit interrupted by {record.interrupted_by}", **data)
        if record.status == ExitStatus.IN_PROGRESS:
            data["time_left"] = record.exit_complete_time - record.last_checked_at
        return ActionResult.succeeded(f"Exit {record.status.value}", **data)

    @serialized
    def verify_all(self) -> List[dict]:
        """verify_exit_status() over every open, submitted exit of the player."""
        results = []
        for record in self.store.get_open_exits(self.player):
            if record.completed or not record.tx_hash:
                continue
            try:
                result = self.verify_exit_status(record.planet_id)
            except LedgerUnavailable as e:
                log.warning(f"Exit check for {record.planet_id} deferred: {e.message}")
                results.append({"planet_id": str(record.planet_id), "status": "error", "message": e.message})
                continue
            results.append(dict(result.to_dict(), planet_id=str(record.planet_id)))
        return results

    # =========================================================================
    # WITHDRAW
    # =========================================================================

    @serialized
    def withdraw(self, planet_ids=None) -> ActionResult:
        """
        Withdraw the stake of completed exits.

        Args:
            planet_ids: Planets to withdraw; defaults to every completed,
                not yet withdrawn local exit

        Returns:
            SUCCEEDED with withdrawn / already_withdrawn lists,
            NOT_READY when nothing is withdrawable yet,
            REJECTED for interrupted exits or a ledger revert
        """
        player = self._require_player()
        if planet_ids is None:
            ids = [e.planet_id for e in self.store.get_withdrawable_exits(player)]
            if not ids:
                return ActionResult.not_ready("No completed exits to withdraw")
        else:
            ids = self._parse_ids(planet_ids)
            if not ids:
                raise InputError("No planet ids given")

        to_submit = []
        already = []
        interrupted = []
        pending = []
        for planet_id in ids:
            record = self.store.get_exit(planet_id)
            if record is None:
                # the ledger decides eligibility
                to_submit.append(planet_id)
                continue
            if record.withdrawn:
                already.append(str(planet_id))
                continue
            if not record.completed and not record.interrupted:
                record = self._reconcile(record, fetch_planet_states(self.ledger, [planet_id])[0],
                                         self.clock())
            if record.interrupted:
                interrupted.append({"planet_id": str(planet_id), "new_owner": record.interrupted_by})
            elif record.completed:
                to_submit.append(planet_id)
            else:
                pending.append({"planet_id": str(planet_id),
                                "exit_complete_time": str(record.exit_complete_time)})

        details = {"already_withdrawn": already, "interrupted": interrupted, "pending": pending}

        if not to_submit:
            if interrupted:
                return ActionResult.rejected("Exit was interrupted; nothing to withdraw",
                                             withdrawn=[], **details)
            if pending:
                return ActionResult.not_ready("Exit not completed yet", withdrawn=[], **details)
            return ActionResult.succeeded("Already withdrawn", withdrawn=[], **details)

        try:
            tx_hash = self.ledger.simulate_and_send("fetchAndWithdrawFor", player, to_submit)
        except LedgerRejection as e:
            log.warning(f"Withdraw of {len(to_submit)} planets rejected: {e.reason}")
            return ActionResult.rejected(e.reason, function=e.function, withdrawn=[], **details)

        now = self.clock()
        for planet_id in to_submit:
            if self.store.get_exit(planet_id) is not None:
                self.store.mark_exit_withdrawn(planet_id, now, tx_hash)
        log.info(f"Withdrew {len(to_submit)} planets: {tx_hash}")

        return ActionResult.succeeded(
            f"Withdrew {len(to_submit)} planets",
            withdrawn=[str(planet_id) for planet_id in to_submit],
            tx_hash=tx_hash,
            **details,
        )

    # =========================================================================
    # RECOVERY
    # =========================================================================

    def get_pending(self) -> List[PendingExit]:
        return self.store.get_open_exits(self.player)

    @serialized
    def retry_unsubmitted(self) -> List[dict]:
        """Resubmit exits that were persisted but never got a submission handle."""
        player = self.player
        records = [e for e in self.store.get_open_exits(player) if not e.tx_hash and not e.completed]
        if not records:
            return []

        ids = [r.planet_id for r in records]
        try:
            states = self._states(ids)
        except LedgerUnavailable as e:
            log.warning(f"Exit retry deferred: {e.message}")
            return [{"planet_id": str(i), "status": "error", "message": e.message} for i in ids]

        results = []
        resubmit = []
        now = self.clock()
        for record in records:
            state = states[record.planet_id]
            if not same_address(state.owner, record.owner):
                record = self._reconcile(record, state, now)
                results.append({"planet_id": str(record.planet_id), "status": record.status.value})
            elif state.exit_start_time:
                record.tx_hash = RECOVERED_HANDLE
                record.exit_start_time = state.exit_start_time
                record.exit_complete_time = state.exit_start_time + record.exit_duration
                self.store.save_exit(record)
                results.append({"planet_id": str(record.planet_id), "status": "recovered"})
            else:
                record.exit_start_time = now
                record.exit_complete_time = now + record.exit_duration
                self.store.save_exit(record)
                resubmit.append(record)

        if resubmit:
            ids = [r.planet_id for r in resubmit]
            try:
                tx_hash = self.ledger.simulate_and_send("exitMultipleFor", player, ids)
            except (LedgerRejection, LedgerUnavailable) as e:
                log.warning(f"Exit resubmission failed: {e.message}")
                results.extend({"planet_id": str(i), "status": "error", "message": e.message} for i in ids)
                return results
            for record in resubmit:
                record.tx_hash = tx_hash
                self.store.save_exit(record)
                results.append({"planet_id": str(record.planet_id), "status": "resubmitted",
                                "tx_hash": tx_hash})
            log.info(f"Resubmitted exit for {len(ids)} planets: {tx_hash}")
        return results
