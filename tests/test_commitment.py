"""Commitment hashing and reveal verification."""

import pytest
from web3 import Web3

from conquest_sdk.commitment import (
    compute_fleet_id,
    compute_to_hash,
    fleet_id_to_int,
    generate_secret,
    mask_secret,
    normalize_fleet_id,
    verify_reveal,
)
from conquest_sdk.conquest_types import ZERO_ADDRESS, PendingFleet
from conquest_sdk.location import pack

from conftest import PLAYER

SECRET = "0x" + "5e" * 32
TO = pack(5, 5)
FROM = pack(0, 0)


def _fleet(secret=SECRET, **overrides) -> PendingFleet:
    to_hash = compute_to_hash(TO, secret)
    values = dict(
        fleet_id=compute_fleet_id(to_hash, FROM, PLAYER, PLAYER),
        from_planet_id=FROM,
        to_planet_id=TO,
        quantity=100,
        secret=secret,
        gift=False,
        specific=ZERO_ADDRESS,
        arrival_time_wanted=0,
        fleet_sender=PLAYER,
        operator=PLAYER,
        committed_at=0,
        estimated_arrival_time=0,
        to_hash=to_hash,
    )
    values.update(overrides)
    return PendingFleet(**values)


class TestSecrets:
    def test_generate_secret_shape(self):
        secret = generate_secret()
        assert secret.startswith("0x")
        assert len(secret) == 66
        int(secret, 16)

    def test_generate_secret_is_random(self):
        assert len({generate_secret() for _ in range(20)}) == 20

    def test_mask_secret(self):
        masked = mask_secret(SECRET)
        assert masked == SECRET[:8] + "..." + SECRET[-4:]
        assert SECRET not in masked
        assert mask_secret("short") == "***"
        assert mask_secret("") == "***"


class TestHashes:
    def test_to_hash_matches_packed_keccak(self):
        expected = Web3.solidity_keccak(
            ["bytes32", "uint256", "bool", "address", "uint256"],
            [bytes.fromhex(SECRET[2:]), TO, False, ZERO_ADDRESS, 0],
        )
        assert compute_to_hash(TO, SECRET) == "0x" + bytes(expected).hex()

    def test_deterministic(self):
        assert compute_to_hash(TO, SECRET, True, PLAYER, 123) == compute_to_hash(TO, SECRET, True, PLAYER, 123)
        to_hash = compute_to_hash(TO, SECRET)
        assert compute_fleet_id(to_hash, FROM, PLAYER, PLAYER) == compute_fleet_id(to_hash, FROM, PLAYER, PLAYER)

    @pytest.mark.parametrize("changed", [
        dict(gift=True),
        dict(specific="0x" + "00" * 19 + "01"),
        dict(arrival_time_wanted=1),
        dict(to_planet_id=pack(5, 6)),
    ])
    def test_every_parameter_is_bound(self, changed):
        base = dict(to_planet_id=TO, secret=SECRET, gift=False, specific=None, arrival_time_wanted=0)
        assert compute_to_hash(**base) != compute_to_hash(**dict(base, **changed))

    def test_fleet_id_binds_origin_and_sender(self):
        to_hash = compute_to_hash(TO, SECRET)
        fleet_id = compute_fleet_id(to_hash, FROM, PLAYER, PLAYER)
        assert fleet_id != compute_fleet_id(to_hash, pack(0, 1), PLAYER, PLAYER)
        assert fleet_id != compute_fleet_id(to_hash, FROM, "0x" + "b2" * 20, PLAYER)
        assert fleet_id != compute_fleet_id(to_hash, FROM, PLAYER, "0x" + "b2" * 20)

    def test_checksum_case_does_not_matter(self):
        to_hash = compute_to_hash(TO, SECRET)
        checksummed = Web3.to_checksum_address(PLAYER)
        assert compute_fleet_id(to_hash, FROM, PLAYER, PLAYER) == \
            compute_fleet_id(to_hash, FROM, checksummed, checksummed)

    def test_secret_must_be_32_bytes(self):
        with pytest.raises(ValueError):
            compute_to_hash(TO, "0x1234")


class TestFleetIds:
    def test_normalize_forms(self):
        fleet_id = _fleet().fleet_id
        as_int = fleet_id_to_int(fleet_id)
        assert normalize_fleet_id(fleet_id) == fleet_id
        assert normalize_fleet_id(fleet_id.upper().replace("0X", "0x")) == fleet_id
        assert normalize_fleet_id(as_int) == fleet_id
        assert normalize_fleet_id(str(as_int)) == fleet_id

    @pytest.mark.parametrize("value", ["", "nope", "0xgg", -1, 1 << 256, None, True])
    def test_normalize_rejects(self, value):
        with pytest.raises(ValueError):
            normalize_fleet_id(value)


class TestReveal:
    def test_stored_secret_verifies(self):
        assert verify_reveal(_fleet())

    def test_substituted_secret_fails(self):
        assert not verify_reveal(_fleet(), "0x" + "77" * 32)

    def test_tampered_destination_fails(self):
        assert not verify_reveal(_fleet(to_planet_id=pack(9, 9)))
