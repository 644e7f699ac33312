"""
Conquest SDK - Commitment Engine

Commit-reveal hashing for fleets.

  toHash  = keccak256(secret, to, gift, specific, arrivalTimeWanted)
  fleetId = keccak256(toHash, from, fleetSender, operator)

Both use Solidity packed encoding, so they match the ledger byte for byte.
The secret is the only thing that hides a fleet's destination until it is
revealed; it must never be logged in full.
"""

import secrets
from typing import Optional

from web3 import Web3

from .conquest_types import ZERO_ADDRESS, PendingFleet

SECRET_BYTES = 32


def mask_secret(secret: str, visible_prefix: int = 8, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. NEVER log full secrets."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


def generate_secret() -> str:
    """
    Generate a fresh 32-byte secret.

    Returns:
        0x-prefixed hex string
    """
    return "0x" + secrets.token_bytes(SECRET_BYTES).hex()


def _secret_bytes(secret: str) -> bytes:
    raw = bytes.fromhex(secret[2:] if secret.startswith("0x") else secret)
    if len(raw) != SECRET_BYTES:
        raise ValueError(f"Secret must be {SECRET_BYTES} bytes, got {len(raw)}")
    return raw


def _address(value: Optional[str]) -> str:
    return Web3.to_checksum_address(value or ZERO_ADDRESS)


def compute_to_hash(to_planet_id: int, secret: str, gift: bool = False,
                    specific: Optional[str] = None, arrival_time_wanted: int = 0) -> str:
    """
    Commitment to a destination.

    Args:
        to_planet_id: Destination location id
        secret: 32-byte hex secret
        gift: Gift flag
        specific: Target qualifier address (zero address when unused)
        arrival_time_wanted: Requested arrival timestamp, 0 for none

    Returns:
        0x-prefixed 32-byte hash
    """
    digest = Web3.solidity_keccak(
        ["bytes32", "uint256", "bool", "address", "uint256"],
        [_secret_bytes(secret), to_planet_id, gift, _address(specific), arrival_time_wanted],
    )
    return "0x" + bytes(digest).hex()


def compute_fleet_id(to_hash: str, from_planet_id: int, fleet_sender: str, operator: str) -> str:
    """
    Fleet identifier binding the commitment to its origin and senders.

    Returns:
        0x-prefixed 32-byte hash; the ledger takes it as uint256
    """
    digest = Web3.solidity_keccak(
        ["bytes32", "uint256", "address", "address"],
        [bytes.fromhex(to_hash[2:]), from_planet_id, _address(fleet_sender), _address(operator)],
    )
    return "0x" + bytes(digest).hex()


def fleet_id_to_int(fleet_id: str) -> int:
    return int(fleet_id, 16)


def normalize_fleet_id(fleet_id) -> str:
    """Accept a fleet id as 0x-hex, decimal string or int; return 0x-hex."""
    if isinstance(fleet_id, int) and not isinstance(fleet_id, bool):
        value = fleet_id
    elif isinstance(fleet_id, str):
        text = fleet_id.strip().lower()
        try:
            value = int(text, 16) if text.startswith("0x") else int(text)
        except ValueError:
            raise ValueError(f"Invalid fleet id: {fleet_id!r}")
    else:
        raise ValueError(f"Invalid fleet id: {fleet_id!r}")
    if value < 0 or value >= 1 << 256:
        raise ValueError(f"Fleet id out of range: {fleet_id!r}")
    return "0x" + format(value, "064x")


def verify_reveal(fleet: PendingFleet, secret: Optional[str] = None) -> bool:
    """
    Check that `secret` (default: the stored one) reproduces the fleet id.

    A substituted secret yields a different toHash and therefore a
    different fleet id, which the ledger would reject.
    """
    to_hash = compute_to_hash(
        fleet.to_planet_id,
        secret if secret is not None else fleet.secret,
        fleet.gift,
        fleet.specific,
        fleet.arrival_time_wanted,
    )
    fleet_id = compute_fleet_id(to_hash, fleet.from_planet_id, fleet.fleet_sender, fleet.operator)
    return fleet_id == fleet.fleet_id
