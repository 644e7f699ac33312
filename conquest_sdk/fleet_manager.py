"""
Conquest SDK - Fleet Manager

Commit-reveal lifecycle of a fleet:

  committed  --(eta + resolve window)-->  resolvable  --(reveal)-->  resolved

The full record, secret included, is persisted before the send
transaction is submitted. A crash or timeout after the persist leaves a
record without a submission handle; retry_unsubmitted() picks those up and
resubmits the same commitment.
"""

import logging
from typing import Callable, Dict, List, Optional

from .commitment import (
    compute_fleet_id,
    compute_to_hash,
    fleet_id_to_int,
    generate_secret,
    mask_secret,
    normalize_fleet_id,
)
from .conquest_types import (
    RECOVERED_HANDLE,
    ZERO_ADDRESS,
    ActionResult,
    PendingFleet,
    PlanetInfo,
    ResultStatus,
)
from .errors import CommitmentUnrecoverable, InputError, LedgerRejection, LedgerUnavailable
from .ledger_client import fetch_fleet
from .location import parse_location
from .space_model import SpaceModel
from .store import ReconciliationStore, serialized

log = logging.getLogger(__name__)


def _short(fleet_id: str) -> str:
    return f"{fleet_id[:10]}...{fleet_id[-4:]}"


class FleetManager:
    """
    Sends and resolves fleets for one player.

    Usage:
        fleets = FleetManager(ledger, store, space, clock)
        result = fleets.send(home_id, target_id, 5000)
        ...
        for fleet in fleets.get_resolvable():
            fleets.resolve(fleet.fleet_id)
    """

    def __init__(self, ledger, store: ReconciliationStore, space: SpaceModel,
                 clock: Callable[[], int], player: Optional[str] = None):
        """
        Args:
            ledger: Object exposing read() / simulate_and_send() (and address)
            store: Reconciliation store holding the secrets
            space: Space model for the current contract config
            clock: Returns the current ledger time in seconds
            player: Acting address (defaults to ledger.address)
        """
        self.ledger = ledger
        self.store = store
        self.space = space
        self.clock = clock
        self.player = player or getattr(ledger, "address", None)

    @property
    def resolve_window(self) -> int:
        return self.space.config.resolve_window

    def _planet(self, planet_id: int) -> PlanetInfo:
        planet = self.space.planet_by_id(planet_id)
        if planet is None:
            raise InputError(f"No planet at location {planet_id}")
        return planet

    def _require_player(self) -> str:
        if not self.player:
            raise InputError("A signing account is required for this operation")
        return self.player

    def _estimate_arrival(self, fleet: PendingFleet, start_time: int) -> int:
        travel = self.space.time_to_arrive(self._planet(fleet.from_planet_id),
                                           self._planet(fleet.to_planet_id))
        return max(start_time + travel, fleet.arrival_time_wanted)

    # =========================================================================
    # SEND (COMMIT)
    # =========================================================================

    @serialized
    def send(self, from_planet_id, to_planet_id, quantity: int,
             gift: bool = False,
             specific: Optional[str] = None,
             arrival_time_wanted: int = 0,
             secret: Optional[str] = None) -> ActionResult:
        """
        Commit a fleet.

        Args:
            from_planet_id: Source location id
            to_planet_id: Destination location id (kept secret until resolve)
            quantity: Spaceships to send
            gift: Send as a gift (no combat)
            specific: Target qualifier address
            arrival_time_wanted: Requested arrival timestamp (0 for none)
            secret: Reuse a given 32-byte secret instead of generating one

        Returns:
            ActionResult carrying the public fleet record
        """
        sender = self._require_player()
        try:
            from_id = parse_location(from_planet_id)
            to_id = parse_location(to_planet_id)
        except ValueError as e:
            raise InputError(str(e))
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InputError(f"Quantity must be a positive integer, got {quantity!r}")
        if arrival_time_wanted < 0:
            raise InputError("arrival_time_wanted must not be negative")

        from_planet = self._planet(from_id)
        to_planet = self._planet(to_id)

        now = self.clock()
        distance = self.space.distance(from_planet, to_planet)
        travel = self.space.time_to_arrive(from_planet, to_planet)
        estimated_arrival = max(now + travel, arrival_time_wanted)

        secret = secret or generate_secret()
        specific = specific or ZERO_ADDRESS
        try:
            to_hash = compute_to_hash(to_id, secret, gift, specific, arrival_time_wanted)
        except ValueError as e:
            raise InputError(str(e))
        operator = sender
        fleet_id = compute_fleet_id(to_hash, from_id, sender, operator)

        existing = self.store.get_fleet(fleet_id)
        if existing and existing.tx_hash:
            return ActionResult.rejected(f"Fleet {_short(fleet_id)} was already committed",
                                         fleet=existing.to_public_dict())

        fleet = PendingFleet(
            fleet_id=fleet_id,
            from_planet_id=from_id,
            to_planet_id=to_id,
            quantity=quantity,
            secret=secret,
            gift=gift,
            specific=specific,
            arrival_time_wanted=arrival_time_wanted,
            fleet_sender=sender,
            operator=operator,
            committed_at=now,
            estimated_arrival_time=estimated_arrival,
            to_hash=to_hash,
            distance=distance,
        )

        # always persist first: the tx may be broadcast even if we crash before it returns
        self.store.save_fleet(fleet)
        log.info(f"Fleet {_short(fleet_id)} committed locally "
                 f"(secret {mask_secret(secret)}, eta {estimated_arrival})")

        return self._submit(fleet)

    def _submit(self, fleet: PendingFleet) -> ActionResult:
        try:
            tx_hash = self.ledger.simulate_and_send(
                "send", fleet.from_planet_id, fleet.quantity, bytes.fromhex(fleet.to_hash[2:])
            )
        except LedgerRejection as e:
            log.warning(f"Fleet {_short(fleet.fleet_id)} send rejected: {e.reason}")
            return ActionResult.rejected(e.reason, fleet_id=fleet.fleet_id, function=e.function)

        fleet = self.store.attach_fleet_handle(fleet.fleet_id, tx_hash)
        log.info(f"Fleet {_short(fleet.fleet_id)} sent: {tx_hash}")
        return ActionResult.succeeded("Fleet sent", fleet=fleet.to_public_dict())

    # =========================================================================
    # RESOLVE (REVEAL)
    # =========================================================================

    @serialized
    def resolve(self, fleet_id) -> ActionResult:
        """
        Reveal a fleet's destination.

        Returns NOT_READY before estimated arrival + resolve window, and a
        plain success (with no transaction) when the fleet is already
        resolved.

        Raises:
            CommitmentUnrecoverable: no local record holds the secret
        """
        try:
            fleet_id = normalize_fleet_id(fleet_id)
        except ValueError as e:
            raise InputError(str(e))

        fleet = self.store.get_fleet(fleet_id)
        if fleet is None:
            raise CommitmentUnrecoverable(fleet_id, "not found in local store")

        if fleet.resolved:
            return ActionResult.succeeded("Fleet already resolved", fleet=fleet.to_public_dict())

        if not fleet.tx_hash:
            recovery = self._reconcile_unsubmitted(fleet)
            fleet = self.store.get_fleet(fleet_id)
            if fleet.resolved or not fleet.tx_hash or not recovery.ok:
                return recovery

        now = self.clock()
        ready_at = fleet.resolvable_at(self.resolve_window)
        if now < ready_at:
            return ActionResult.not_ready(
                f"Fleet {_short(fleet_id)} can be resolved in {ready_at - now}s",
                fleet_id=fleet_id,
                resolvable_at=ready_at,
                seconds_left=ready_at - now,
            )

        if fleet.operator.lower() != self._require_player().lower():
            return ActionResult.rejected("Only the operator can resolve this fleet", fleet_id=fleet_id)

        distance = fleet.distance or self.space.distance(self._planet(fleet.from_planet_id),
                                                         self._planet(fleet.to_planet_id))
        resolution = (
            fleet.from_planet_id,
            fleet.to_planet_id,
            distance,
            fleet.arrival_time_wanted,
            fleet.gift,
            fleet.specific,
            bytes.fromhex(fleet.secret[2:]),
            fleet.fleet_sender,
            fleet.operator,
        )

        try:
            tx_hash = self.ledger.simulate_and_send("resolveFleet", fleet_id_to_int(fleet_id), resolution)
        except LedgerRejection as e:
            log.warning(f"Fleet {_short(fleet_id)} resolve rejected: {e.reason}")
            if self._resolved_on_ledger(fleet):
                fleet = self.store.mark_resolved(fleet_id, now)
                return ActionResult.succeeded("Fleet was already resolved on the ledger",
                                              fleet=fleet.to_public_dict())
            return ActionResult.rejected(e.reason, fleet_id=fleet_id, function=e.function)

        fleet = self.store.mark_resolved(fleet_id, now, tx_hash)
        log.info(f"Fleet {_short(fleet_id)} resolved: {tx_hash}")
        return ActionResult.succeeded("Fleet resolved", fleet=fleet.to_public_dict())

    def _resolved_on_ledger(self, fleet: PendingFleet) -> bool:
        owner, _launch_time, quantity = fetch_fleet(self.ledger, fleet_id_to_int(fleet.fleet_id),
                                                    fleet.from_planet_id)
        return owner is not None and quantity == 0

    # =========================================================================
    # QUERIES / SWEEP
    # =========================================================================

    def get_pending(self) -> List[PendingFleet]:
        return self.store.get_pending_fleets(self.player)

    def get_resolvable(self) -> List[PendingFleet]:
        """Unresolved fleets whose resolve window has opened."""
        return self.store.get_resolvable_fleets(self.clock(), self.resolve_window, self.player)

    @serialized
    def resolve_all_ready(self) -> Dict[str, list]:
        """
        Resolve every fleet that is ready.

        Returns:
            {"resolved": [fleet_id...], "failed": [{"fleet_id", "reason"}...]}
        """
        resolved = []
        failed = []
        for fleet in self.get_resolvable():
            try:
                result = self.resolve(fleet.fleet_id)
            except LedgerUnavailable as e:
                log.warning(f"Fleet {_short(fleet.fleet_id)} resolve deferred: {e.message}")
                failed.append({"fleet_id": fleet.fleet_id, "reason": e.message, "retryable": True})
                continue
            if result.ok:
                resolved.append(fleet.fleet_id)
            elif result.status != ResultStatus.NOT_READY:
                failed.append({"fleet_id": fleet.fleet_id, "reason": result.message, "retryable": False})
        if resolved or failed:
            log.info(f"Resolve sweep: {len(resolved)} resolved, {len(failed)} failed")
        return {"resolved": resolved, "failed": failed}

    @serialized
    def retry_unsubmitted(self) -> List[dict]:
        """Re-drive fleets that were persisted but never got a submission handle."""
        results = []
        for fleet in self.store.get_unsubmitted_fleets(self.player):
            try:
                result = self._reconcile_unsubmitted(fleet)
            except LedgerUnavailable as e:
                log.warning(f"Fleet {_short(fleet.fleet_id)} retry deferred: {e.message}")
                results.append({"fleet_id": fleet.fleet_id, "status": "error", "message": e.message})
                continue
            results.append(dict(result.to_dict(), fleet_id=fleet.fleet_id))
        return results

    def _reconcile_unsubmitted(self, fleet: PendingFleet) -> ActionResult:
        """Check the ledger for a handle-less commit; resubmit it if it never landed."""
        owner, launch_time, quantity = fetch_fleet(self.ledger, fleet_id_to_int(fleet.fleet_id),
                                                   fleet.from_planet_id)
        if owner is not None:
            fleet.tx_hash = RECOVERED_HANDLE
            fleet.committed_at = launch_time
            fleet.estimated_arrival_time = self._estimate_arrival(fleet, launch_time)
            self.store.save_fleet(fleet)
            log.info(f"Fleet {_short(fleet.fleet_id)} found on ledger (launched {launch_time})")
            if quantity == 0:
                fleet = self.store.mark_resolved(fleet.fleet_id, self.clock())
                return ActionResult.succeeded("Fleet was already resolved on the ledger",
                                              fleet=fleet.to_public_dict())
            return ActionResult.succeeded("Commit found on ledger", fleet=fleet.to_public_dict())

        # same secret, same commitment; only the timing is refreshed
        now = self.clock()
        fleet.committed_at = now
        fleet.estimated_arrival_time = self._estimate_arrival(fleet, now)
        self.store.save_fleet(fleet)
        log.info(f"Fleet {_short(fleet.fleet_id)} resubmitting stored commitment")
        return self._submit(fleet)
