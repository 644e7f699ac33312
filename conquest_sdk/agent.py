"""
Conquest SDK - Agent

Session facade over the engine. One ConquestAgent holds the ledger client,
the reconciliation store, the cached contract config and the space model;
nothing is kept in module globals.

Every public operation returns a plain dict:

  {"status": "succeeded" | "not_ready" | "rejected", ...}

or, for typed failures, the ConquestError's to_dict() with
"status": "error". StorageError is the exception: it propagates, since a
store that cannot be written puts every secret at risk.
"""

import functools
import logging
from typing import Callable, List, Optional

from .config import AgentConfig
from .conquest_types import ContractConfig, PlanetInfo, PlanetState, Player, ZERO_ADDRESS
from .errors import ConquestError, InputError, LedgerRejection, StorageError
from .exit_manager import ExitManager
from .fleet_manager import FleetManager
from .ledger_client import LedgerClient, fetch_config, fetch_planet_states
from .location import parse_location
from .space_model import FleetInput, SpaceModel
from .store import DEFAULT_CLEANUP_AGE, ReconciliationStore

log = logging.getLogger(__name__)

# getPlanetStates batch size
STATE_BATCH = 100


def structured(method):
    """Turn ActionResults into dicts and typed errors into error dicts."""
    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            result = method(*args, **kwargs)
        except StorageError:
            raise
        except ConquestError as e:
            log.warning(f"{method.__name__} failed: {e.message}")
            return e.to_dict()
        return result.to_dict() if hasattr(result, "to_dict") else result
    return wrapper


class ConquestAgent:
    """
    Autonomous player session.

    Usage:
        agent = ConquestAgent.from_config(AgentConfig.from_env())
        agent.send(home_id, target_id, 5000)
        agent.sweep()
    """

    def __init__(self, ledger, store: ReconciliationStore,
                 clock: Optional[Callable[[], int]] = None,
                 config: Optional[ContractConfig] = None,
                 space: Optional[SpaceModel] = None):
        """
        Args:
            ledger: LedgerClient (or any object with the same read/send capability)
            store: Reconciliation store for this chain + contract
            clock: Ledger clock; defaults to the latest block timestamp
            config: Contract config; fetched lazily when omitted
            space: Space model; built from config when omitted
        """
        self.ledger = ledger
        self.store = store
        self.clock = clock or ledger.get_timestamp
        self._config = config
        self._space = space
        self._fleets: Optional[FleetManager] = None
        self._exits: Optional[ExitManager] = None

    @classmethod
    def from_config(cls, config: AgentConfig) -> "ConquestAgent":
        config.validate()
        ledger = LedgerClient(
            config.rpc_url,
            config.contract_address,
            private_key=config.private_key or None,
            chain_id=config.chain_id,
            timeout=config.request_timeout,
            receipt_timeout=config.receipt_timeout,
            wait_for_receipt=config.wait_for_receipt,
        )
        store = ReconciliationStore.for_contract(config.data_dir, ledger.chain_id, config.contract_address)
        return cls(ledger, store)

    # =========================================================================
    # SESSION STATE
    # =========================================================================

    @property
    def address(self) -> Optional[str]:
        return getattr(self.ledger, "address", None)

    @property
    def config(self) -> ContractConfig:
        if self._config is None:
            self._config = fetch_config(self.ledger)
            log.info(f"Contract config loaded (resolve window {self._config.resolve_window}s, "
                     f"exit duration {self._config.exit_duration}s)")
        return self._config

    @property
    def space(self) -> SpaceModel:
        if self._space is None:
            self._space = SpaceModel(self.config)
        return self._space

    @property
    def fleets(self) -> FleetManager:
        if self._fleets is None:
            self._fleets = FleetManager(self.ledger, self.store, self.space, self.clock, self.address)
        return self._fleets

    @property
    def exits(self) -> ExitManager:
        if self._exits is None:
            self._exits = ExitManager(self.ledger, self.store, self.space, self.clock, self.address)
        return self._exits

    def refresh_config(self) -> ContractConfig:
        """Drop the cached config (e.g. after a contract upgrade) and re-read it."""
        self._config = None
        self._space = None
        self._fleets = None
        self._exits = None
        return self.config

    def _planet(self, planet_id) -> PlanetInfo:
        try:
            location = parse_location(planet_id)
        except ValueError as e:
            raise InputError(str(e))
        planet = self.space.planet_by_id(location)
        if planet is None:
            raise InputError(f"No planet at location {location}")
        return planet

    def _states(self, planets: List[PlanetInfo]) -> List[PlanetState]:
        states = []
        ids = [p.location.id for p in planets]
        for i in range(0, len(ids), STATE_BATCH):
            states.extend(fetch_planet_states(self.ledger, ids[i:i + STATE_BATCH]))
        return states

    # =========================================================================
    # FLEETS
    # =========================================================================

    @structured
    def send(self, from_planet_id, to_planet_id, quantity: int, gift: bool = False,
             specific: Optional[str] = None, arrival_time_wanted: int = 0):
        return self.fleets.send(from_planet_id, to_planet_id, quantity, gift=gift,
                                specific=specific, arrival_time_wanted=arrival_time_wanted)

    @structured
    def resolve(self, fleet_id):
        return self.fleets.resolve(fleet_id)

    @structured
    def get_pending_fleets(self):
        now = self.clock()
        window = self.config.resolve_window
        fleets = []
        for fleet in self.fleets.get_pending():
            data = fleet.to_public_dict()
            data["fleet_status"] = fleet.status(now, window).value
            data["resolvable_at"] = str(fleet.resolvable_at(window))
            fleets.append(data)
        return {"status": "succeeded", "fleets": fleets, "count": len(fleets)}

    # =========================================================================
    # EXITS
    # =========================================================================

    @structured
    def begin_exit(self, planet_ids):
        return self.exits.begin_exit(planet_ids)

    @structured
    def verify_exit_status(self, planet_id):
        return self.exits.verify_exit_status(planet_id)

    @structured
    def withdraw(self, planet_ids=None):
        return self.exits.withdraw(planet_ids)

    @structured
    def get_pending_exits(self):
        exits = [e.to_dict() for e in self.exits.get_pending()]
        return {"status": "succeeded", "exits": exits, "count": len(exits)}

    # =========================================================================
    # SIMULATION
    # =========================================================================

    def _player(self, address: Optional[str]) -> Optional[Player]:
        return Player(address) if address else None

    @structured
    def simulate(self, from_planet_id, to_planet_id, quantity: int, gift: bool = False,
                 specific: Optional[str] = None, arrival_time_wanted: int = 0):
        """
        Predict the outcome of sending `quantity` spaceships, without sending.

        The destination state is projected to now; the outcome covers the
        whole resolve window after arrival.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise InputError(f"Quantity must be a non-negative integer, got {quantity!r}")
        from_planet = self._planet(from_planet_id)
        to_planet = self._planet(to_planet_id)
        from_state, to_state = self._states([from_planet, to_planet])

        now = self.clock()
        travel = self.space.time_to_arrive(from_planet, to_planet)
        arrival = max(now + travel, arrival_time_wanted)
        current = self.space.state_at(to_planet, to_state, now)

        outcome = self.space.outcome(
            from_planet,
            to_planet,
            current,
            quantity,
            arrival - now,
            sender=self._player(self.address),
            from_player=self._player(from_state.owner),
            to_player=self._player(current.owner),
            gift=gift,
            specific=specific,
        )
        return {
            "status": "succeeded",
            "distance": self.space.distance(from_planet, to_planet),
            "travel_time": travel,
            "arrival_time": str(arrival),
            "resolvable_until": str(arrival + self.config.resolve_window),
            "outcome": outcome.to_dict(),
        }

    @structured
    def simulate_multiple(self, to_planet_id, fleets: List[dict], arrival_time: Optional[int] = None):
        """
        Predict several fleets landing on one planet.

        Args:
            to_planet_id: Shared destination
            fleets: [{"from": id, "quantity": n, "gift"?: bool, "specific"?: addr}, ...]
            arrival_time: Seconds from now; defaults to the slowest fleet
        """
        if not fleets:
            raise InputError("At least one fleet is required")
        to_planet = self._planet(to_planet_id)
        try:
            from_planets = [self._planet(f["from"]) for f in fleets]
            quantities = [int(f["quantity"]) for f in fleets]
        except (KeyError, TypeError, ValueError) as e:
            raise InputError(f"Malformed fleet entry: {e}")

        states = self._states(from_planets + [to_planet])
        to_state = self.space.state_at(to_planet, states[-1], self.clock())
        sender = self._player(self.address)

        inputs = [
            FleetInput(
                from_planet=planet,
                quantity=quantity,
                sender=sender,
                from_player=self._player(state.owner),
                gift=bool(entry.get("gift", False)),
                specific=entry.get("specific"),
            )
            for planet, quantity, state, entry in zip(from_planets, quantities, states, fleets)
        ]
        result = self.space.outcome_multiple_fleets(inputs, to_planet, to_state, arrival_time,
                                                    to_player=self._player(to_state.owner))
        return dict(result.to_dict(), status="succeeded")

    # =========================================================================
    # PLANETS
    # =========================================================================

    @structured
    def get_planets_around(self, x: int, y: int, radius: int = 10, with_state: bool = True):
        if radius < 0:
            raise InputError("radius must not be negative")
        planets = self.space.planets_around(x, y, radius)
        entries = [{"planet": p.to_dict()} for p in planets]
        if with_state and planets:
            for entry, state in zip(entries, self._states(planets)):
                entry["state"] = state.to_dict()
        return {"status": "succeeded", "planets": entries, "count": len(entries)}

    @structured
    def get_my_planets(self, radius: int = 100):
        """Planets within `radius` of the origin owned by this session's player."""
        address = self.address
        if not address:
            raise InputError("A signing account is required for this operation")
        planets = self.space.planets_around(0, 0, radius)
        mine = []
        for planet, state in zip(planets, self._states(planets)):
            if state.owner and state.owner.lower() == address.lower():
                mine.append({"planet": planet.to_dict(), "state": state.to_dict()})
        return {"status": "succeeded", "planets": mine, "count": len(mine)}

    @structured
    def acquire_planets(self, planet_ids, amount_to_mint: Optional[int] = None,
                        token_amount: int = 0,
                        num_tokens_per_native_token: int = 10 ** 18):
        """
        Stake planets, paying in native token.

        Args:
            planet_ids: Planets to acquire
            amount_to_mint: Play tokens to mint (defaults to the total stake)
            token_amount: Staking tokens spent directly
            num_tokens_per_native_token: Play tokens (18 decimals) per native token
        """
        if not planet_ids:
            raise InputError("No planet ids given")
        if num_tokens_per_native_token <= 0:
            raise InputError("num_tokens_per_native_token must be positive")
        planets = [self._planet(planet_id) for planet_id in planet_ids]
        cost = self.space.acquisition_cost(planets)
        if amount_to_mint is None:
            amount_to_mint = max(cost - token_amount, 0)
        value = amount_to_mint * 10 ** 18 // num_tokens_per_native_token
        ids = [p.location.id for p in planets]

        try:
            tx_hash = self.ledger.simulate_and_send(
                "acquireMultipleViaNativeTokenAndStakingToken", ids, amount_to_mint, token_amount,
                value=value,
            )
        except LedgerRejection as e:
            return {"status": "rejected", "message": e.reason, "function": e.function}

        log.info(f"Acquiring {len(ids)} planets for {cost} tokens: {tx_hash}")
        return {
            "status": "succeeded",
            "tx_hash": tx_hash,
            "planets_acquired": [str(i) for i in ids],
            "cost": str(cost),
            "native_value": str(value),
        }

    # =========================================================================
    # SWEEP
    # =========================================================================

    @structured
    def sweep(self, cleanup_age: int = DEFAULT_CLEANUP_AGE):
        """
        One reconciliation pass: retry handle-less records, resolve ready
        fleets, re-check open exits, drop old terminal records.
        """
        fleets_retried = self.fleets.retry_unsubmitted()
        exits_retried = self.exits.retry_unsubmitted()
        resolved = self.fleets.resolve_all_ready()
        exits = self.exits.verify_all()
        now = self.clock()
        removed_fleets = self.store.cleanup_fleets(now, cleanup_age)
        removed_exits = self.store.cleanup_exits(now, cleanup_age)
        return {
            "status": "succeeded",
            "fleets_retried": fleets_retried,
            "exits_retried": exits_retried,
            "resolved": resolved["resolved"],
            "failed": resolved["failed"],
            "exits": exits,
            "cleaned_up": {"fleets": removed_fleets, "exits": removed_exits},
        }

    @structured
    def status(self):
        config = self.config
        return {
            "status": "succeeded",
            "player": self.address or ZERO_ADDRESS,
            "time": str(self.clock()),
            "pending_fleets": len(self.fleets.get_pending()),
            "open_exits": len(self.exits.get_pending()),
            "config": config.to_dict(),
        }
