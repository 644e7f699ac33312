"""
Shared pytest fixtures for the conquest SDK tests.

Provides:
  - A mutable ledger clock
  - FakeLedger: in-memory game contract behind the read/simulate_and_send
    capability, with call log and failure injection
  - StubSpace: SpaceModel with a fixed, hand-made planet map
  - Stores in tmp_path and a fully wired ConquestAgent
  - slow_ledger / run_concurrently for racing callers against one store
"""

import threading
import time
from typing import Callable, Dict, List, Optional

import pytest

from conquest_sdk.agent import ConquestAgent
from conquest_sdk.commitment import compute_fleet_id, compute_to_hash
from conquest_sdk.conquest_types import (
    ZERO_ADDRESS,
    ContractConfig,
    PlanetInfo,
    PlanetLocation,
    PlanetStats,
)
from conquest_sdk.errors import LedgerRejection, LedgerUnavailable
from conquest_sdk.exit_manager import ExitManager
from conquest_sdk.fleet_manager import FleetManager
from conquest_sdk.location import pack
from conquest_sdk.space_model import SpaceModel
from conquest_sdk.store import ReconciliationStore

GENESIS_TIME = 1_700_000_000
GENESIS = "0x" + "11" * 32

PLAYER = "0x" + "a1" * 20
ENEMY = "0x" + "e2" * 20


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Ledger time, advanced explicitly by tests."""

    def __init__(self, now: int = GENESIS_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


# ---------------------------------------------------------------------------
# Config / planets
# ---------------------------------------------------------------------------

def make_config(**overrides) -> ContractConfig:
    values = dict(
        genesis=GENESIS,
        resolve_window=7200,
        time_per_distance=40000,
        exit_duration=604800,
        acquire_num_spaceships=100000,
        production_speed_up=1,
        frontrunning_delay=1800,
        production_cap_as_duration=0,
        upkeep_production_decrease_rate_per_10000th=5000,
        fleet_size_factor6=500000,
        gift_tax_per_10000=2000,
        stake_range="0x" + "0010" * 16,
        stake_multiplier_10000th=10,
    )
    values.update(overrides)
    return ContractConfig(**values)


def make_planet(x: int, y: int, speed: int = 10000, production: int = 3600,
                attack: int = 10000, defense: int = 10000, natives: int = 20000,
                stake: int = 160) -> PlanetInfo:
    return PlanetInfo(
        location=PlanetLocation(id=pack(x, y), x=x, y=y, global_x=x, global_y=y),
        type=0,
        stats=PlanetStats(
            stake=stake,
            production=production,
            attack=attack,
            defense=defense,
            speed=speed,
            natives=natives,
            sub_x=0,
            sub_y=0,
            cap=100000,
            max_traveling_upkeep=100000,
        ),
    )


class StubSpace(SpaceModel):
    """SpaceModel whose planet map is given instead of derived from the genesis hash."""

    def __init__(self, config: ContractConfig, planets: List[PlanetInfo]):
        super().__init__(config)
        self.planets = {(p.location.x, p.location.y): p for p in planets}

    def planet_at(self, x: int, y: int) -> Optional[PlanetInfo]:
        return self.planets.get((x, y))


HOME = make_planet(0, 0)
TARGET = make_planet(5, 5)
OTHER = make_planet(-3, 4)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def _empty_state() -> dict:
    return {
        "owner": ZERO_ADDRESS,
        "ownershipStartTime": 0,
        "exitStartTime": 0,
        "numSpaceships": 0,
        "overflow": 0,
        "lastUpdated": 0,
        "active": False,
        "reward": 0,
    }


_CONFIG_ABI_NAMES = {
    "genesis": "genesis",
    "resolve_window": "resolveWindow",
    "time_per_distance": "timePerDistance",
    "exit_duration": "exitDuration",
    "acquire_num_spaceships": "acquireNumSpaceships",
    "production_speed_up": "productionSpeedUp",
    "frontrunning_delay": "frontrunningDelay",
    "production_cap_as_duration": "productionCapAsDuration",
    "upkeep_production_decrease_rate_per_10000th": "upkeepProductionDecreaseRatePer10000th",
    "fleet_size_factor6": "fleetSizeFactor6",
    "initial_space_expansion": "initialSpaceExpansion",
    "expansion_delta": "expansionDelta",
    "gift_tax_per_10000": "giftTaxPer10000",
    "stake_range": "stakeRange",
    "stake_multiplier_10000th": "stakeMultiplier10000th",
    "bootstrap_session_end_time": "bootstrapSessionEndTime",
    "infinity_start_time": "infinityStartTime",
}


class FakeLedger:
    """
    In-memory game contract.

    Keeps planet states and committed fleets, checks reveals against the
    commitment, and logs every submission in `calls`.
    """

    def __init__(self, clock: FakeClock, config: ContractConfig, address: Optional[str] = PLAYER):
        self.clock = clock
        self.config = config
        self.address = address
        self.states: Dict[int, dict] = {}
        self.fleets: Dict[int, tuple] = {}
        self.calls: List[tuple] = []
        self.reads: List[tuple] = []
        self.reject: Dict[str, str] = {}
        self.unavailable = set()
        self._tx_count = 0

    # -- test helpers -------------------------------------------------------

    def set_state(self, planet: PlanetInfo, owner: Optional[str] = None, num_spaceships: int = 0,
                  active: bool = True, exit_start_time: int = 0, ownership_start_time: int = 0):
        self.states[planet.location.id] = {
            "owner": owner or ZERO_ADDRESS,
            "ownershipStartTime": ownership_start_time,
            "exitStartTime": exit_start_time,
            "numSpaceships": num_spaceships,
            "overflow": 0,
            "lastUpdated": self.clock.now,
            "active": active,
            "reward": 0,
        }

    def capture(self, planet: PlanetInfo, new_owner: str, num_spaceships: int = 500):
        """Hostile capture: new owner, exit cancelled."""
        state = self.states.setdefault(planet.location.id, _empty_state())
        state.update({
            "owner": new_owner,
            "ownershipStartTime": self.clock.now,
            "exitStartTime": 0,
            "numSpaceships": num_spaceships,
            "lastUpdated": self.clock.now,
            "active": True,
        })

    def submissions(self, fn: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == fn]

    # -- capability ---------------------------------------------------------

    def read(self, fn: str, *args):
        self.reads.append((fn, args))
        if fn in self.unavailable:
            raise LedgerUnavailable(f"{fn}: connection failed")
        if fn == "getConfig":
            return {abi: getattr(self.config, name) for name, abi in _CONFIG_ABI_NAMES.items()}
        if fn == "getPlanetStates":
            ids = args[0]
            return [dict(self.states.get(i, _empty_state())) for i in ids], []
        if fn == "getFleet":
            fleet_id, _from = args
            return self.fleets.get(fleet_id, (ZERO_ADDRESS, 0, 0))
        raise LedgerRejection(fn, "unknown function")

    def simulate_and_send(self, fn: str, *args, value: int = 0) -> str:
        if fn in self.unavailable:
            raise LedgerUnavailable(f"{fn}: connection failed")
        if fn in self.reject:
            raise LedgerRejection(fn, self.reject[fn])

        handler = getattr(self, f"_do_{fn}", None)
        if handler is not None:
            handler(*args)
        self.calls.append((fn, args, value))
        self._tx_count += 1
        return "0x" + format(self._tx_count, "064x")

    def _do_send(self, from_id, quantity, to_hash: bytes):
        fleet_id = compute_fleet_id("0x" + to_hash.hex(), from_id, self.address, self.address)
        self.fleets[int(fleet_id, 16)] = (self.address, self.clock.now, quantity)

    def _do_resolveFleet(self, fleet_id: int, resolution: tuple):
        from_id, to_id, _distance, arrival_time_wanted, gift, specific, secret, sender, operator = resolution
        to_hash = compute_to_hash(to_id, "0x" + secret.hex(), gift, specific, arrival_time_wanted)
        if int(compute_fleet_id(to_hash, from_id, sender, operator), 16) != fleet_id:
            raise LedgerRejection("resolveFleet", "INVALID_SECRET")
        owner, launch_time, quantity = self.fleets.get(fleet_id, (ZERO_ADDRESS, 0, 0))
        if owner == ZERO_ADDRESS:
            raise LedgerRejection("resolveFleet", "FLEET_DOES_NOT_EXIST")
        if quantity == 0:
            raise LedgerRejection("resolveFleet", "FLEET_RESOLVED_ALREADY")
        self.fleets[fleet_id] = (owner, launch_time, 0)

    def _do_exitMultipleFor(self, owner: str, ids: list):
        for planet_id in ids:
            state = self.states.setdefault(planet_id, _empty_state())
            if state["owner"].lower() != owner.lower():
                raise LedgerRejection("exitMultipleFor", "NOT_OWNER")
            state["exitStartTime"] = self.clock.now


# ---------------------------------------------------------------------------
# Concurrency helpers
# ---------------------------------------------------------------------------

def slow_ledger(ledger: FakeLedger, monkeypatch, delay: float = 0.1) -> List[str]:
    """
    Delay every ledger read and submission so concurrent callers overlap.

    Returns the list of attempted submissions (function names), including
    ones the ledger goes on to reject.
    """
    attempts: List[str] = []
    real_read = ledger.read
    real_send = ledger.simulate_and_send

    def read(fn, *args):
        time.sleep(delay / 2)
        return real_read(fn, *args)

    def simulate_and_send(fn, *args, **kwargs):
        attempts.append(fn)
        time.sleep(delay)
        return real_send(fn, *args, **kwargs)

    monkeypatch.setattr(ledger, "read", read)
    monkeypatch.setattr(ledger, "simulate_and_send", simulate_and_send)
    return attempts


def run_concurrently(*calls: Callable) -> list:
    """Start every call on its own thread at the same moment; re-raise the first failure."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)
    errors = []

    def worker(index, call):
        barrier.wait()
        try:
            results[index] = call()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    if errors:
        raise errors[0]
    return results


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> ContractConfig:
    return make_config()


@pytest.fixture()
def space(config) -> StubSpace:
    return StubSpace(config, [HOME, TARGET, OTHER])


@pytest.fixture()
def ledger(clock, config) -> FakeLedger:
    ledger = FakeLedger(clock, config)
    ledger.set_state(HOME, owner=PLAYER, num_spaceships=10000)
    ledger.set_state(TARGET, owner=None, active=False)
    ledger.set_state(OTHER, owner=PLAYER, num_spaceships=3000)
    return ledger


@pytest.fixture()
def store(tmp_path) -> ReconciliationStore:
    return ReconciliationStore(tmp_path / "conquest-data.json")


@pytest.fixture()
def fleet_manager(ledger, store, space, clock) -> FleetManager:
    return FleetManager(ledger, store, space, clock)


@pytest.fixture()
def exit_manager(ledger, store, space, clock) -> ExitManager:
    return ExitManager(ledger, store, space, clock)


@pytest.fixture()
def agent(ledger, store, space, clock, config) -> ConquestAgent:
    return ConquestAgent(ledger, store, clock=clock, config=config, space=space)
