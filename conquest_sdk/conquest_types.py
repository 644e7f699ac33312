"""
Conquest SDK - Data Types

Planet, config and pending-action structures. Wide integers (location ids,
fleet ids, timestamps) are serialized as decimal strings so that JSON
consumers never lose precision.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional
import json

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ALLIES_ONLY_ADDRESS = "0x0000000000000000000000000000000000000001"

# submission handle for a commit or exit found on the ledger without a known tx hash
RECOVERED_HANDLE = "recovered"


def _hex(value: Any) -> str:
    """Normalize bytes / HexBytes / str to a 0x-prefixed lowercase hex string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    if not text.startswith("0x"):
        text = "0x" + text
    return text.lower()


def _field(raw: Any, name: str, index: int) -> Any:
    """Read a struct member returned by web3 (tuple or attribute dict)."""
    if isinstance(raw, dict):
        return raw[name]
    if hasattr(raw, name):
        return getattr(raw, name)
    return raw[index]


def _owner(value: Optional[str]) -> Optional[str]:
    if not value or value.lower() == ZERO_ADDRESS:
        return None
    return value


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


# =============================================================================
# STATUS ENUMS
# =============================================================================

class ResultStatus(Enum):
    """Outcome class of a lifecycle operation"""
    SUCCEEDED = "succeeded"
    NOT_READY = "not_ready"
    REJECTED = "rejected"


class FleetStatus(Enum):
    """Fleet lifecycle: committed -> resolvable -> resolved"""
    COMMITTED = "committed"
    RESOLVABLE = "resolvable"
    RESOLVED = "resolved"


class ExitStatus(Enum):
    """Exit lifecycle: in_progress -> completed | interrupted -> withdrawn"""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    WITHDRAWN = "withdrawn"


@dataclass
class ActionResult:
    """Structured result of a send/resolve/exit/withdraw call."""
    status: ResultStatus
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.SUCCEEDED

    def to_dict(self) -> dict:
        result = {"status": self.status.value}
        if self.message:
            result["message"] = self.message
        result.update(self.data)
        return result

    @classmethod
    def succeeded(cls, message: str = "", **data) -> "ActionResult":
        return cls(ResultStatus.SUCCEEDED, message, data)

    @classmethod
    def not_ready(cls, message: str, **data) -> "ActionResult":
        return cls(ResultStatus.NOT_READY, message, data)

    @classmethod
    def rejected(cls, message: str, **data) -> "ActionResult":
        return cls(ResultStatus.REJECTED, message, data)


# =============================================================================
# CONTRACT CONFIG
# =============================================================================

_CONFIG_FIELDS = [
    ("genesis", "genesis"),
    ("resolve_window", "resolveWindow"),
    ("time_per_distance", "timePerDistance"),
    ("exit_duration", "exitDuration"),
    ("acquire_num_spaceships", "acquireNumSpaceships"),
    ("production_speed_up", "productionSpeedUp"),
    ("frontrunning_delay", "frontrunningDelay"),
    ("production_cap_as_duration", "productionCapAsDuration"),
    ("upkeep_production_decrease_rate_per_10000th", "upkeepProductionDecreaseRatePer10000th"),
    ("fleet_size_factor6", "fleetSizeFactor6"),
    ("initial_space_expansion", "initialSpaceExpansion"),
    ("expansion_delta", "expansionDelta"),
    ("gift_tax_per_10000", "giftTaxPer10000"),
    ("stake_range", "stakeRange"),
    ("stake_multiplier_10000th", "stakeMultiplier10000th"),
    ("bootstrap_session_end_time", "bootstrapSessionEndTime"),
    ("infinity_start_time", "infinityStartTime"),
]


@dataclass(frozen=True)
class ContractConfig:
    """
    Global tuning constants read from getConfig().

    time_per_distance is the ledger's value, already expressed for the
    4x global coordinate space.
    """
    genesis: str
    resolve_window: int
    time_per_distance: int
    exit_duration: int
    acquire_num_spaceships: int
    production_speed_up: int
    frontrunning_delay: int
    production_cap_as_duration: int
    upkeep_production_decrease_rate_per_10000th: int
    fleet_size_factor6: int
    initial_space_expansion: int = 0
    expansion_delta: int = 0
    gift_tax_per_10000: int = 0
    stake_range: str = "0x"
    stake_multiplier_10000th: int = 0
    bootstrap_session_end_time: int = 0
    infinity_start_time: int = 0

    @classmethod
    def from_contract(cls, raw: Any) -> "ContractConfig":
        """Build from the getConfig() struct."""
        values = {}
        for index, (name, abi_name) in enumerate(_CONFIG_FIELDS):
            value = _field(raw, abi_name, index)
            if name in ("genesis", "stake_range"):
                values[name] = _hex(value)
            else:
                values[name] = int(value)
        return cls(**values)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ContractConfig":
        values = {}
        for name, _ in _CONFIG_FIELDS:
            if name not in data:
                continue
            values[name] = data[name] if name in ("genesis", "stake_range") else int(data[name])
        return cls(**values)


# =============================================================================
# PLANETS
# =============================================================================

@dataclass(frozen=True)
class PlanetLocation:
    id: int
    x: int
    y: int
    global_x: int
    global_y: int


@dataclass(frozen=True)
class PlanetStats:
    stake: int
    production: int
    attack: int
    defense: int
    speed: int
    natives: int
    sub_x: int
    sub_y: int
    cap: int
    max_traveling_upkeep: int


@dataclass(frozen=True)
class PlanetInfo:
    """Static planet data, derived from coordinates and config."""
    location: PlanetLocation
    type: int
    stats: PlanetStats

    def to_dict(self) -> dict:
        data = asdict(self)
        data["location"]["id"] = str(self.location.id)
        return data


@dataclass
class PlanetState:
    """
    Short-lived copy of the ledger's planet state.

    `natives`, `exiting` and `exit_time_left` are derived locally.
    `traveling_upkeep` is not exposed by getPlanetStates and defaults to 0.
    """
    owner: Optional[str] = None
    ownership_start_time: int = 0
    exit_start_time: int = 0
    num_spaceships: int = 0
    overflow: int = 0
    last_updated: int = 0
    active: bool = False
    reward: int = 0
    traveling_upkeep: int = 0
    natives: bool = False
    exiting: bool = False
    exit_time_left: int = 0

    @classmethod
    def from_contract(cls, raw: Any) -> "PlanetState":
        """Build from one getPlanetStates() entry."""
        num_spaceships = int(_field(raw, "numSpaceships", 3))
        active = bool(_field(raw, "active", 6))
        exit_start_time = int(_field(raw, "exitStartTime", 2))
        return cls(
            owner=_owner(_field(raw, "owner", 0)),
            ownership_start_time=int(_field(raw, "ownershipStartTime", 1)),
            exit_start_time=exit_start_time,
            num_spaceships=num_spaceships,
            overflow=int(_field(raw, "overflow", 4)),
            last_updated=int(_field(raw, "lastUpdated", 5)),
            active=active,
            reward=int(_field(raw, "reward", 7)),
            natives=num_spaceships == 0 and not active,
            exiting=exit_start_time != 0,
        )

    def copy(self) -> "PlanetState":
        return PlanetState(**asdict(self))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reward"] = str(self.reward)
        return data


@dataclass(frozen=True)
class Player:
    """Player identity and the alliances it belongs to."""
    address: str
    alliances: List[str] = field(default_factory=list)


# =============================================================================
# OUTCOMES
# =============================================================================

@dataclass
class CaptureResult:
    captured: bool
    num_spaceships_left: int


@dataclass
class TaxInfo:
    tax_rate: int
    loss: int


@dataclass
class CombatLoss:
    defender_loss: int
    attacker_loss: int


@dataclass
class CombatResult:
    defender_loss: int
    attacker_loss: int
    attack_damage: int


@dataclass
class Outcome:
    """
    Bounded result of an attack or gift.

    `min` is the outcome if the fleet is resolved as soon as it arrives,
    `max` if it is resolved at the end of the resolve window.
    """
    min: CaptureResult
    max: CaptureResult
    allies: bool
    tax_allies: bool
    gift: bool
    time_until_fails: int
    native_resist: bool
    tax: Optional[TaxInfo] = None
    combat: Optional[CombatLoss] = None

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# PENDING ACTIONS
# =============================================================================

@dataclass
class PendingFleet:
    """
    A committed fleet whose destination is still secret.

    The secret exists only here until the reveal lands. Losing this record
    loses the fleet.
    """
    fleet_id: str
    from_planet_id: int
    to_planet_id: int
    quantity: int
    secret: str
    gift: bool
    specific: str
    arrival_time_wanted: int
    fleet_sender: str
    operator: str
    committed_at: int
    estimated_arrival_time: int
    to_hash: str = ""
    distance: int = 0
    resolved: bool = False
    resolved_at: Optional[int] = None
    tx_hash: Optional[str] = None
    resolve_tx_hash: Optional[str] = None

    def status(self, now: int, resolve_window: int) -> FleetStatus:
        if self.resolved:
            return FleetStatus.RESOLVED
        if now >= self.resolvable_at(resolve_window):
            return FleetStatus.RESOLVABLE
        return FleetStatus.COMMITTED

    def resolvable_at(self, resolve_window: int) -> int:
        return self.estimated_arrival_time + resolve_window

    def to_dict(self) -> dict:
        return {
            "fleet_id": self.fleet_id,
            "from_planet_id": str(self.from_planet_id),
            "to_planet_id": str(self.to_planet_id),
            "quantity": self.quantity,
            "secret": self.secret,
            "gift": self.gift,
            "specific": self.specific,
            "arrival_time_wanted": str(self.arrival_time_wanted),
            "fleet_sender": self.fleet_sender,
            "operator": self.operator,
            "committed_at": str(self.committed_at),
            "estimated_arrival_time": str(self.estimated_arrival_time),
            "to_hash": self.to_hash,
            "distance": self.distance,
            "resolved": self.resolved,
            "resolved_at": None if self.resolved_at is None else str(self.resolved_at),
            "tx_hash": self.tx_hash,
            "resolve_tx_hash": self.resolve_tx_hash,
        }

    def to_public_dict(self) -> dict:
        """to_dict() without the secret, for API responses."""
        data = self.to_dict()
        data.pop("secret")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PendingFleet":
        resolved_at = data.get("resolved_at")
        return cls(
            fleet_id=data["fleet_id"],
            from_planet_id=int(data["from_planet_id"]),
            to_planet_id=int(data["to_planet_id"]),
            quantity=int(data["quantity"]),
            secret=data["secret"],
            gift=bool(data.get("gift", False)),
            specific=data.get("specific", ZERO_ADDRESS),
            arrival_time_wanted=int(data.get("arrival_time_wanted", 0)),
            fleet_sender=data["fleet_sender"],
            operator=data["operator"],
            committed_at=int(data["committed_at"]),
            estimated_arrival_time=int(data["estimated_arrival_time"]),
            to_hash=data.get("to_hash", ""),
            distance=int(data.get("distance", 0)),
            resolved=bool(data.get("resolved", False)),
            resolved_at=None if resolved_at is None else int(resolved_at),
            tx_hash=data.get("tx_hash"),
            resolve_tx_hash=data.get("resolve_tx_hash"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "PendingFleet":
        return cls.from_dict(json.loads(json_str))


@dataclass
class PendingExit:
    """An exit (unstake) started locally and tracked until withdrawal."""
    planet_id: int
    player: str
    exit_start_time: int
    exit_duration: int
    exit_complete_time: int
    num_spaceships: int
    owner: str
    completed: bool = False
    interrupted: bool = False
    interrupted_by: Optional[str] = None
    withdrawn: bool = False
    withdrawn_at: Optional[int] = None
    last_checked_at: int = 0
    tx_hash: Optional[str] = None
    withdraw_tx_hash: Optional[str] = None

    @property
    def status(self) -> ExitStatus:
        if self.withdrawn:
            return ExitStatus.WITHDRAWN
        if self.interrupted:
            return ExitStatus.INTERRUPTED
        if self.completed:
            return ExitStatus.COMPLETED
        return ExitStatus.IN_PROGRESS

    @property
    def terminal(self) -> bool:
        return self.withdrawn or self.interrupted

    def to_dict(self) -> dict:
        return {
            "planet_id": str(self.planet_id),
            "player": self.player,
            "exit_start_time": str(self.exit_start_time),
            "exit_duration": self.exit_duration,
            "exit_complete_time": str(self.exit_complete_time),
            "num_spaceships": self.num_spaceships,
            "owner": self.owner,
            "completed": self.completed,
            "interrupted": self.interrupted,
            "interrupted_by": self.interrupted_by,
            "withdrawn": self.withdrawn,
            "withdrawn_at": None if self.withdrawn_at is None else str(self.withdrawn_at),
            "last_checked_at": str(self.last_checked_at),
            "tx_hash": self.tx_hash,
            "withdraw_tx_hash": self.withdraw_tx_hash,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingExit":
        withdrawn_at = data.get("withdrawn_at")
        return cls(
            planet_id=int(data["planet_id"]),
            player=data["player"],
            exit_start_time=int(data["exit_start_time"]),
            exit_duration=int(data["exit_duration"]),
            exit_complete_time=int(data["exit_complete_time"]),
            num_spaceships=int(data.get("num_spaceships", 0)),
            owner=data["owner"],
            completed=bool(data.get("completed", False)),
            interrupted=bool(data.get("interrupted", False)),
            interrupted_by=data.get("interrupted_by"),
            withdrawn=bool(data.get("withdrawn", False)),
            withdrawn_at=None if withdrawn_at is None else int(withdrawn_at),
            last_checked_at=int(data.get("last_checked_at", 0)),
            tx_hash=data.get("tx_hash"),
            withdraw_tx_hash=data.get("withdraw_tx_hash"),
        )
