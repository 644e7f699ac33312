"""LedgerClient error mapping and the typed read helpers."""

import pytest
import requests
from web3.exceptions import ContractLogicError, TimeExhausted

from conquest_sdk.conquest_types import ZERO_ADDRESS
from conquest_sdk.errors import LedgerRejection, LedgerUnavailable
from conquest_sdk.ledger_client import LedgerClient, fetch_config, fetch_fleet, fetch_planet_states

from conftest import HOME, PLAYER

CONTRACT = "0x" + "c0" * 20


@pytest.fixture()
def client():
    # no request is made until a call is issued
    return LedgerClient("http://127.0.0.1:1", CONTRACT, chain_id=31337)


def _raise(exc):
    def call():
        raise exc
    return call


class TestLedgerClient:
    def test_read_only_client(self, client):
        assert client.address is None
        assert client.chain_id == 31337
        with pytest.raises(LedgerRejection):
            client.simulate_and_send("send", 1, 1, b"\x00" * 32)

    def test_signing_client(self):
        client = LedgerClient("http://127.0.0.1:1", CONTRACT, private_key="0x" + "01" * 32)
        assert client.address.startswith("0x")
        assert len(client.address) == 42

    def test_revert_is_rejection(self, client):
        with pytest.raises(LedgerRejection) as info:
            client._guard("exitMultipleFor", _raise(ContractLogicError("execution reverted: NOT_OWNER")))
        assert info.value.function == "exitMultipleFor"
        assert "NOT_OWNER" in info.value.reason
        assert not info.value.retryable

    def test_connection_failure_is_unavailable(self, client):
        with pytest.raises(LedgerUnavailable) as info:
            client._guard("getConfig", _raise(requests.exceptions.ConnectionError("refused")))
        assert info.value.retryable

    def test_timeout_is_unavailable(self, client):
        with pytest.raises(LedgerUnavailable):
            client._guard("send", _raise(TimeExhausted("no receipt")))

    def test_passthrough(self, client):
        assert client._guard("getConfig", lambda: 42) == 42


class StubReader:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def read(self, fn, *args):
        self.calls.append((fn, args))
        return self.responses[fn]


class TestTypedReads:
    def test_fetch_fleet_unknown(self):
        ledger = StubReader({"getFleet": (ZERO_ADDRESS, 0, 0)})
        assert fetch_fleet(ledger, 1, HOME.location.id) == (None, 0, 0)

    def test_fetch_fleet(self):
        ledger = StubReader({"getFleet": (PLAYER, 1000, 50)})
        assert fetch_fleet(ledger, 1, HOME.location.id) == (PLAYER, 1000, 50)
        assert ledger.calls == [("getFleet", (1, HOME.location.id))]

    def test_fetch_planet_states_from_tuples(self):
        raw = (PLAYER, 10, 0, 500, 0, 20, True, 7)
        ledger = StubReader({"getPlanetStates": ([raw], [])})
        [state] = fetch_planet_states(ledger, [HOME.location.id])
        assert state.owner == PLAYER
        assert state.num_spaceships == 500
        assert state.active
        assert not state.natives
        assert not state.exiting

    def test_fetch_planet_states_empty(self):
        ledger = StubReader({})
        assert fetch_planet_states(ledger, []) == []
        assert ledger.calls == []

    def test_fetch_config_bytes(self):
        raw = [bytes.fromhex("11" * 32)] + list(range(1, 13)) + [bytes.fromhex("00" * 32)] + [4, 5, 6]
        config = fetch_config(StubReader({"getConfig": raw}))
        assert config.genesis == "0x" + "11" * 32
        assert config.resolve_window == 1
        assert config.stake_range == "0x" + "00" * 32
        assert config.infinity_start_time == 6
