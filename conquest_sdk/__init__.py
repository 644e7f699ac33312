"""
Conquest SDK

Off-chain commit-reveal engine for fleets and exits of a ledger-hosted
space game.

Architecture:
  - Planet stats, travel times and combat are recomputed OFF-CHAIN from
    the genesis hash and contract config (SpaceModel)
  - Fleets are committed with a hidden destination and revealed after
    arrival (FleetManager); the secret lives only in the local store
  - Exits are tracked until withdrawal and checked against the ledger
    for hostile captures (ExitManager)
  - The ledger is authoritative; the store is a reconciled mirror

Usage:
    from conquest_sdk import AgentConfig, ConquestAgent

    agent = ConquestAgent.from_config(AgentConfig.from_env())

    # Commit a fleet
    result = agent.send(home_id, target_id, 5000)

    # Later: resolve everything that is ready, re-check exits
    agent.sweep()
"""

from .agent import ConquestAgent
from .commitment import (
    compute_fleet_id,
    compute_to_hash,
    generate_secret,
    mask_secret,
    verify_reveal,
)
from .config import AgentConfig
from .conquest_types import (
    ActionResult,
    ContractConfig,
    ExitStatus,
    FleetStatus,
    PendingExit,
    PendingFleet,
    PlanetInfo,
    PlanetState,
    Player,
    ResultStatus,
)
from .errors import (
    CommitmentUnrecoverable,
    ConquestError,
    InputError,
    LedgerRejection,
    LedgerUnavailable,
    StorageError,
)
from .exit_manager import ExitManager
from .fleet_manager import FleetManager
from .ledger_client import LedgerClient
from .location import pack, spiral, unpack
from .space_model import FleetInput, SpaceModel
from .store import ReconciliationStore

__version__ = "0.1.0"
__all__ = [
    # Types
    "ActionResult", "ContractConfig", "ExitStatus", "FleetStatus", "PendingExit",
    "PendingFleet", "PlanetInfo", "PlanetState", "Player", "ResultStatus",
    # Errors
    "ConquestError", "InputError", "LedgerRejection", "LedgerUnavailable",
    "CommitmentUnrecoverable", "StorageError",
    # Core
    "ConquestAgent", "AgentConfig", "LedgerClient", "ReconciliationStore",
    "SpaceModel", "FleetInput", "FleetManager", "ExitManager",
    # Helpers
    "pack", "unpack", "spiral", "generate_secret", "compute_to_hash",
    "compute_fleet_id", "verify_reveal", "mask_secret",
]
