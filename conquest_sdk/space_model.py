"""
Conquest SDK - Space Model

Off-chain replica of the ledger's planet generation, production and
combat arithmetic. Everything here is a pure function of coordinates,
ContractConfig and the PlanetState passed in; the only state kept is a
memo of planet lookups.

All arithmetic is integer and truncates in the same order as the ledger
(multiply first, then divide), so results agree to the unit.
"""

from dataclasses import dataclass, replace
from math import isqrt
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from web3 import Web3

from .conquest_types import (
    ALLIES_ONLY_ADDRESS,
    CaptureResult,
    CombatLoss,
    CombatResult,
    ContractConfig,
    Outcome,
    PlanetInfo,
    PlanetLocation,
    PlanetState,
    PlanetStats,
    Player,
    TaxInfo,
    same_address,
)
from .location import LocationPointer, pack, spiral_next, unpack

HOUR = 3600
ACTIVE_MASK = 2 ** 31
DECIMALS_14 = 10 ** 14

# normal distribution (mean 7.5) over 64 slots, one hex digit per slot
NORMAL_8_TABLE = "01223334444555555666666677777777888888889999999AAAAAABBBBCCCDDEF"

PRODUCTION_SELECTION = "0x0708083409600a8c0bb80ce40e100e100e100e101068151819c81e7823282ee0"


def value8_mod(data: int, lsb: int, mod: int) -> int:
    return (data >> lsb) % mod


def normal8(data: int, lsb: int) -> int:
    return int(NORMAL_8_TABLE[value8_mod(data, lsb, 64)], 16)


def normal16(data: int, lsb: int, selection: str) -> int:
    index = normal8(data, lsb)
    start = index * 4 + 2
    return int(selection[start:start + 4], 16)


def _grade(roll: int) -> int:
    if roll < 6:
        return 0
    if roll < 10:
        return 1
    return 2


def _common_alliance(a: Player, b: Player) -> bool:
    if not a.alliances or not b.alliances:
        return False
    others = {alliance.lower() for alliance in b.alliances}
    return any(alliance.lower() in others for alliance in a.alliances)


@dataclass
class FleetInput:
    """One fleet of a coordinated multi-fleet attack."""
    from_planet: PlanetInfo
    quantity: int
    sender: Optional[Player] = None
    from_player: Optional[Player] = None
    gift: bool = False
    specific: Optional[str] = None


@dataclass
class FleetOutcome:
    from_planet: PlanetInfo
    quantity: int
    outcome: Outcome


@dataclass
class MultipleFleetOutcome:
    fleets: List[FleetOutcome]
    min: CaptureResult
    max: CaptureResult
    min_owner: Optional[str]
    max_owner: Optional[str]
    arrival_time: int

    def to_dict(self) -> dict:
        return {
            "fleets": [
                {
                    "from_planet_id": str(f.from_planet.location.id),
                    "quantity": f.quantity,
                    "outcome": f.outcome.to_dict(),
                }
                for f in self.fleets
            ],
            "final": {
                "min": {"captured": self.min.captured,
                        "num_spaceships_left": self.min.num_spaceships_left,
                        "owner": self.min_owner},
                "max": {"captured": self.max.captured,
                        "num_spaceships_left": self.max.num_spaceships_left,
                        "owner": self.max_owner},
            },
            "arrival_time": self.arrival_time,
        }


class SpaceModel:
    """
    Planet generation and game arithmetic for one ContractConfig.

    Usage:
        space = SpaceModel(config)
        home = space.planet_at(3, -2)
        _, target = space.find_next_planet()
        travel = space.time_to_arrive(home, target)
        outcome = space.outcome(home, target, state, 5000, travel)
    """

    def __init__(self, config: ContractConfig):
        self.config = config
        self._genesis = bytes.fromhex(config.genesis[2:])
        self._stake_range = self._parse_stake_range(config.stake_range)
        self._cache: Dict[Tuple[int, int], Optional[PlanetInfo]] = {}

    @staticmethod
    def _parse_stake_range(stake_range: str) -> List[int]:
        return [int(stake_range[i:i + 4], 16) for i in range(2, len(stake_range), 4)]

    # =========================================================================
    # PLANET GENERATION
    # =========================================================================

    def _planet_data(self, location: int) -> int:
        digest = Web3.solidity_keccak(["bytes32", "uint256"], [self._genesis, location])
        return int.from_bytes(bytes(digest), "big")

    def planet_at(self, x: int, y: int) -> Optional[PlanetInfo]:
        """Planet at (x, y), or None for empty space."""
        key = (x, y)
        if key in self._cache:
            return self._cache[key]

        location = pack(x, y)
        data = self._planet_data(location)

        if value8_mod(data, 52, 16) != 1:
            self._cache[key] = None
            return None

        cfg = self.config
        sub_x = 1 - value8_mod(data, 0, 3)
        sub_y = 1 - value8_mod(data, 2, 3)

        production_index = normal8(data, 12)
        stake = self._stake_range[production_index] * cfg.stake_multiplier_10000th
        production = normal16(data, 12, PRODUCTION_SELECTION)
        attack_roll = normal8(data, 20)
        defense_roll = normal8(data, 28)
        speed_roll = normal8(data, 36)
        natives = 15000 + normal8(data, 44) * 3000

        cap = cfg.acquire_num_spaceships + production * cfg.production_cap_as_duration // HOUR

        planet = PlanetInfo(
            location=PlanetLocation(
                id=location,
                x=x,
                y=y,
                global_x=x * 4 + sub_x,
                global_y=y * 4 + sub_y,
            ),
            type=_grade(attack_roll) * 9 + _grade(defense_roll) * 3 + _grade(speed_roll),
            stats=PlanetStats(
                stake=stake,
                production=production,
                attack=4000 + attack_roll * 400,
                defense=4000 + defense_roll * 400,
                speed=5005 + speed_roll * 333,
                natives=natives,
                sub_x=sub_x,
                sub_y=sub_y,
                cap=cap,
                max_traveling_upkeep=cap,
            ),
        )
        self._cache[key] = planet
        return planet

    def stats_at(self, x: int, y: int) -> Optional[PlanetStats]:
        planet = self.planet_at(x, y)
        return planet.stats if planet else None

    def planet_by_id(self, location: int) -> Optional[PlanetInfo]:
        x, y = unpack(location)
        return self.planet_at(x, y)

    def planets_in_rect(self, x0: int, y0: int, x1: int, y1: int) -> Iterator[PlanetInfo]:
        """Planets inside the inclusive rectangle, column by column."""
        for x in range(x0, x1 + 1):
            for y in range(y0, y1 + 1):
                planet = self.planet_at(x, y)
                if planet:
                    yield planet

    def planets_around(self, center_x: int, center_y: int, radius: int) -> List[PlanetInfo]:
        """Planets within `radius` (euclidean, in location units) of a point."""
        planets = []
        r2 = radius * radius
        for planet in self.planets_in_rect(center_x - radius, center_y - radius,
                                           center_x + radius, center_y + radius):
            dx = planet.location.x - center_x
            dy = planet.location.y - center_y
            if dx * dx + dy * dy <= r2:
                planets.append(planet)
        return planets

    def find_next_planet(self, pointer: Optional[LocationPointer] = None) -> Tuple[LocationPointer, PlanetInfo]:
        """Walk the spiral from `pointer` until a planet is found."""
        while True:
            pointer = spiral_next(pointer)
            planet = self.planet_at(pointer.x, pointer.y)
            if planet:
                return pointer, planet

    def acquisition_cost(self, planets: Iterable[PlanetInfo]) -> int:
        """Token amount (18 decimals) needed to stake all given planets."""
        return sum(planet.stats.stake * DECIMALS_14 for planet in planets)

    # =========================================================================
    # DISTANCE / TIME
    # =========================================================================

    def distance(self, from_planet: PlanetInfo, to_planet: PlanetInfo) -> int:
        dx = to_planet.location.global_x - from_planet.location.global_x
        dy = to_planet.location.global_y - from_planet.location.global_y
        return isqrt(dx * dx + dy * dy)

    def time_to_arrive(self, from_planet: PlanetInfo, to_planet: PlanetInfo) -> int:
        distance = self.distance(from_planet, to_planet)
        return distance * self.config.time_per_distance * 10000 // from_planet.stats.speed

    # =========================================================================
    # PRODUCTION
    # =========================================================================

    def has_just_exited(self, exit_start_time: int, t: int) -> bool:
        return exit_start_time > 0 and t > exit_start_time + self.config.exit_duration

    def compute_planet_update(self, state: PlanetState, planet: PlanetInfo, t: int) -> None:
        """Advance `state` in place to time `t` (production, upkeep, exit)."""
        cfg = self.config

        if state.exit_start_time != 0 and self.has_just_exited(state.exit_start_time, t):
            state.num_spaceships = 0
            state.traveling_upkeep = 0
            state.overflow = 0
            state.active = False
            state.exiting = False
            state.exit_start_time = 0
            state.exit_time_left = 0
            state.owner = None
            state.natives = True
            return

        if state.natives:
            # natives are not counted in numSpaceships
            state.num_spaceships = 0

        time_passed = t - state.last_updated
        production = planet.stats.production
        rate = cfg.upkeep_production_decrease_rate_per_10000th
        produced = time_passed * cfg.production_speed_up * production // HOUR

        if state.traveling_upkeep > 0:
            upkeep_repaid = min(produced * rate // 10000, state.traveling_upkeep)
            state.traveling_upkeep -= upkeep_repaid

        new_num = state.num_spaceships
        extra_upkeep_paid = 0
        if cfg.production_cap_as_duration > 0:
            cap_when_active = cfg.acquire_num_spaceships + production * cfg.production_cap_as_duration // HOUR
            cap = cap_when_active if state.active else 0

            if new_num > cap:
                decrease_rate = 1800
                if state.overflow > 0:
                    decrease_rate = max(1800, state.overflow * 1800 // cap_when_active)
                decrease = time_passed * cfg.production_speed_up * decrease_rate // HOUR
                decrease = min(decrease, new_num - cap)
                if state.active:
                    extra_upkeep_paid = decrease
                new_num -= decrease
            elif state.active:
                increase = produced
                if state.traveling_upkeep > 0:
                    repay_speed = cfg.production_speed_up * production * rate
                    if repay_speed == 0 or state.traveling_upkeep * HOUR * 10000 >= time_passed * repay_speed:
                        extra_upkeep_paid = increase
                    else:
                        extra_upkeep_paid = min(state.traveling_upkeep * 10000 // rate, increase)
                    increase -= extra_upkeep_paid
                max_increase = cap - new_num
                if increase > max_increase:
                    extra_upkeep_paid = increase - max_increase
                    increase = max_increase
                new_num += increase

            if state.active:
                repaid = produced * rate // 10000 + extra_upkeep_paid
                state.traveling_upkeep = max(state.traveling_upkeep - repaid, -cap)
        elif state.active:
            new_num += produced
        else:
            decrease = time_passed * cfg.production_speed_up * 1800 // HOUR
            new_num -= min(decrease, new_num)

        if new_num >= ACTIVE_MASK:
            new_num = ACTIVE_MASK - 1
        state.num_spaceships = new_num
        state.natives = new_num == 0 and not state.active
        if state.natives:
            state.owner = None
        state.exiting = state.exit_start_time != 0
        state.exit_time_left = max(0, state.exit_start_time + cfg.exit_duration - t) if state.exiting else 0

    def state_at(self, planet: PlanetInfo, state: PlanetState, t: int) -> PlanetState:
        """Copy of `state` projected to time `t`."""
        projected = state.copy()
        if t >= state.last_updated:
            self.compute_planet_update(projected, planet, t)
            projected.last_updated = t
        return projected

    def future_state(self, planet: PlanetInfo, state: PlanetState, duration: int) -> PlanetState:
        return self.state_at(planet, state, state.last_updated + duration)

    def states_at_arrival(self, planet: PlanetInfo, state: PlanetState,
                          duration: int) -> Tuple[PlanetState, PlanetState]:
        """(earliest, latest) state a fleet can face, across the resolve window."""
        return (
            self.future_state(planet, state, max(0, duration)),
            self.future_state(planet, state, max(0, duration + self.config.resolve_window)),
        )

    def num_spaceships_at_arrival(self, planet: PlanetInfo, state: PlanetState,
                                  duration: int) -> Tuple[int, int]:
        low, high = self.states_at_arrival(planet, state, duration)
        return (
            planet.stats.natives if low.natives else low.num_spaceships,
            planet.stats.natives if high.natives else high.num_spaceships,
        )

    def duration_to_reach(self, planet: PlanetInfo, state: PlanetState, target: int) -> Tuple[int, int]:
        """
        How many spaceships still need producing to reach `target`, and how long it takes.

        Returns:
            (amount, duration_in_seconds); (0, 0) for inactive planets
        """
        if not state.active:
            return 0, 0
        target = min(target, planet.stats.cap)
        if state.num_spaceships >= target:
            return 0, 0
        amount = target - state.num_spaceships
        per_hour = planet.stats.production * self.config.production_speed_up
        if per_hour == 0:
            return amount, 0
        return amount, -(-amount * HOUR // per_hour)

    # =========================================================================
    # COMBAT
    # =========================================================================

    def combat(self, attack: int, num_attack: int, defense: int, num_defense: int) -> CombatResult:
        """One engagement; defender wins ties on damage."""
        if num_attack == 0 or num_defense == 0:
            return CombatResult(defender_loss=0, attacker_loss=0, attack_damage=0)

        f6 = self.config.fleet_size_factor6
        attack_factor = num_attack * (1000000 - f6 + num_attack * f6 // num_defense)
        attack_damage = attack_factor * attack // defense // 1000000

        if num_defense > attack_damage:
            return CombatResult(defender_loss=attack_damage, attacker_loss=num_attack,
                                attack_damage=attack_damage)

        defense_factor = num_defense * (1000000 - f6 + num_defense * f6 // num_attack)
        defense_damage = defense_factor * defense // attack // 1000000
        if defense_damage >= num_attack:
            defense_damage = num_attack - 1
        return CombatResult(defender_loss=num_defense, attacker_loss=defense_damage,
                            attack_damage=attack_damage)

    def outcome(self,
                from_planet: PlanetInfo,
                to_planet: PlanetInfo,
                to_state: PlanetState,
                quantity: int,
                duration: int,
                sender: Optional[Player] = None,
                from_player: Optional[Player] = None,
                to_player: Optional[Player] = None,
                gift: bool = False,
                specific: Optional[str] = None,
                extra_defense: int = 0,
                attack_override: Optional[int] = None) -> Outcome:
        """
        Bounded outcome of `quantity` spaceships arriving after `duration`.

        Args:
            from_planet: Origin planet
            to_planet: Destination planet
            to_state: Destination state at its last_updated time
            quantity: Spaceships sent
            duration: Seconds from to_state.last_updated to arrival
            sender: Player who sent the fleet
            from_player: Owner of the origin planet
            to_player: Owner of the destination
            gift: Whether the fleet is a gift
            specific: Target qualifier (0x...01 means allies only)
            extra_defense: Additional defenders for the earliest case
            attack_override: Attack stat override for the earliest case

        Returns:
            Outcome with min (earliest resolve) and max (latest resolve) results
        """
        low, high = self.states_at_arrival(to_planet, to_state, duration)
        return self._outcome_between(from_planet, to_planet, to_state.natives, low, high, quantity,
                                     sender, from_player, to_player, gift, specific,
                                     extra_defense, attack_override)

    def _outcome_between(self, from_planet: PlanetInfo, to_planet: PlanetInfo, was_natives: bool,
                         low: PlanetState, high: PlanetState, quantity: int,
                         sender: Optional[Player], from_player: Optional[Player],
                         to_player: Optional[Player], gift: bool, specific: Optional[str],
                         extra_defense: int = 0, attack_override: Optional[int] = None) -> Outcome:
        cfg = self.config
        natives = to_planet.stats.natives

        native_resist_if_fails = low.natives
        num_defense_min = low.num_spaceships
        if low.natives:
            num_defense_min = natives
        elif not low.active and num_defense_min < natives:
            num_defense_min = natives
            native_resist_if_fails = True

        num_defense_max = high.num_spaceships
        if high.natives:
            num_defense_max = natives
        elif not high.active and num_defense_max < natives:
            num_defense_max = natives

        num_attack = quantity

        allies = False
        if to_player and from_player:
            allies = same_address(to_player.address, from_player.address) or _common_alliance(to_player, from_player)

        tax_allies = allies
        if sender and to_player and from_player and not same_address(from_player.address, sender.address):
            tax_allies = same_address(to_player.address, sender.address) or _common_alliance(to_player, sender)

        actual_gift = gift
        if specific and same_address(specific, ALLIES_ONLY_ADDRESS):
            actual_gift = allies

        if actual_gift:
            loss = 0
            if not tax_allies:
                loss = num_attack * cfg.gift_tax_per_10000 // 10000
                num_attack -= loss
            return Outcome(
                min=CaptureResult(False, num_defense_min + num_attack),
                max=CaptureResult(False, num_defense_max + num_attack),
                allies=allies,
                tax_allies=tax_allies,
                gift=True,
                time_until_fails=0,
                native_resist=native_resist_if_fails,
                tax=TaxInfo(tax_rate=cfg.gift_tax_per_10000, loss=loss),
            )

        if num_attack == 0:
            return Outcome(
                min=CaptureResult(False, num_defense_min),
                max=CaptureResult(False, num_defense_max),
                allies=allies,
                tax_allies=tax_allies,
                gift=False,
                time_until_fails=0,
                native_resist=native_resist_if_fails,
                combat=CombatLoss(defender_loss=0, attacker_loss=0),
            )

        fleet_owner_tax = False
        if sender and from_player and not same_address(sender.address, from_player.address):
            fleet_owner_tax = not _common_alliance(from_player, sender)

        loss = 0
        if fleet_owner_tax:
            loss = num_attack * cfg.gift_tax_per_10000 // 10000
            num_attack -= loss

        attack = attack_override if attack_override is not None else from_planet.stats.attack
        defense = to_planet.stats.defense

        result_min = self.combat(attack, num_attack, defense, num_defense_min + extra_defense)
        if result_min.attacker_loss == num_attack:
            left = natives if was_natives else num_defense_min + extra_defense - result_min.defender_loss
            min_result = CaptureResult(False, left)
        else:
            min_result = CaptureResult(True, num_attack - result_min.attacker_loss)

        result_max = self.combat(from_planet.stats.attack, num_attack, defense, num_defense_max)
        if result_max.attacker_loss == num_attack:
            left = natives if was_natives else num_defense_max - result_max.defender_loss
            max_result = CaptureResult(False, left)
        else:
            max_result = CaptureResult(True, num_attack - result_max.attacker_loss)

        time_until_fails = 0
        if min_result.captured and cfg.resolve_window > 0:
            growth = (num_defense_max - num_defense_min) * 1000000 // cfg.resolve_window
            if growth > 0:
                time_until_fails = (result_min.attack_damage - num_defense_min) * 1000000 // growth
                if time_until_fails > cfg.resolve_window:
                    time_until_fails = 0

        return Outcome(
            min=min_result,
            max=max_result,
            allies=allies,
            tax_allies=tax_allies,
            gift=False,
            time_until_fails=time_until_fails,
            native_resist=not min_result.captured and native_resist_if_fails,
            tax=TaxInfo(tax_rate=cfg.gift_tax_per_10000, loss=loss) if loss > 0 else None,
            combat=CombatLoss(defender_loss=result_min.defender_loss,
                              attacker_loss=result_min.attacker_loss),
        )

    simulate_outcome = outcome

    def outcome_multiple_fleets(self,
                                fleets: List[FleetInput],
                                to_planet: PlanetInfo,
                                to_state: PlanetState,
                                arrival_time: Optional[int] = None,
                                to_player: Optional[Player] = None) -> MultipleFleetOutcome:
        """
        Fleets landing together, resolved one after the other in list order.

        `arrival_time` is a duration from to_state.last_updated and defaults
        to the longest travel time among the fleets.
        """
        if not fleets:
            left = to_planet.stats.natives if to_state.natives else to_state.num_spaceships
            return MultipleFleetOutcome(
                fleets=[],
                min=CaptureResult(False, left),
                max=CaptureResult(False, left),
                min_owner=to_state.owner,
                max_owner=to_state.owner,
                arrival_time=0,
            )

        if arrival_time is None:
            arrival_time = max(self.time_to_arrive(f.from_planet, to_planet) for f in fleets)

        low, high = self.states_at_arrival(to_planet, to_state, arrival_time)
        outcomes = []
        for fleet in fleets:
            outcome = self._outcome_between(fleet.from_planet, to_planet, low.natives, low, high,
                                            fleet.quantity, fleet.sender, fleet.from_player,
                                            to_player, fleet.gift, fleet.specific)
            outcomes.append(FleetOutcome(fleet.from_planet, fleet.quantity, outcome))

            owner_player = fleet.from_player or fleet.sender
            new_owner = owner_player.address if owner_player else None
            low = self._after_fleet(low, outcome.min, new_owner)
            high = self._after_fleet(high, outcome.max, new_owner)

        original_owner = to_state.owner
        return MultipleFleetOutcome(
            fleets=outcomes,
            min=CaptureResult(not _same_owner(low.owner, original_owner), low.num_spaceships),
            max=CaptureResult(not _same_owner(high.owner, original_owner), high.num_spaceships),
            min_owner=low.owner,
            max_owner=high.owner,
            arrival_time=arrival_time,
        )

    @staticmethod
    def _after_fleet(state: PlanetState, result: CaptureResult, new_owner: Optional[str]) -> PlanetState:
        if result.captured:
            return replace(state, num_spaceships=result.num_spaceships_left,
                           natives=False, active=True, owner=new_owner)
        return replace(state, num_spaceships=result.num_spaceships_left)

    def simulate_capture(self, player: str, planet: PlanetInfo, state: PlanetState) -> Tuple[bool, int]:
        """
        Whether staking `planet` would succeed against its current occupants.

        Returns:
            (success, num_spaceships_left)
        """
        acquire = self.config.acquire_num_spaceships
        if state.owner and same_address(state.owner, player):
            return True, state.num_spaceships + acquire

        if not state.natives and state.num_spaceships > 0:
            return False, state.num_spaceships

        num_defense = planet.stats.natives if state.natives else state.num_spaceships
        result = self.combat(10000, acquire, planet.stats.defense, num_defense)
        if result.attacker_loss < acquire:
            return True, acquire - result.attacker_loss
        return False, state.num_spaceships


def _same_owner(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.lower() == b.lower()
