"""
Conquest SDK - Ledger Client

web3 access to the game contract, reduced to two capabilities:

  read(fn, *args)               -> eth_call, decoded
  simulate_and_send(fn, *args)  -> eth_call dry run, then signed tx

Lifecycle managers only ever see this narrow interface, so tests can swap
in an in-memory ledger.
"""

import logging
from typing import Any, List, Optional, Tuple

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .conquest_types import ZERO_ADDRESS, ContractConfig, PlanetState
from .errors import LedgerRejection, LedgerUnavailable

log = logging.getLogger(__name__)


def _uint(name: str) -> dict:
    return {"name": name, "type": "uint256"}


PLANET_STATE_COMPONENTS = [
    {"name": "owner", "type": "address"},
    {"name": "ownershipStartTime", "type": "uint40"},
    {"name": "exitStartTime", "type": "uint40"},
    {"name": "numSpaceships", "type": "uint32"},
    {"name": "overflow", "type": "uint32"},
    {"name": "lastUpdated", "type": "uint40"},
    {"name": "active", "type": "bool"},
    {"name": "reward", "type": "uint256"},
]

PLANET_STATS_COMPONENTS = [
    {"name": "subX", "type": "int8"},
    {"name": "subY", "type": "int8"},
    {"name": "stake", "type": "uint32"},
    {"name": "production", "type": "uint16"},
    {"name": "attack", "type": "uint16"},
    {"name": "defense", "type": "uint16"},
    {"name": "speed", "type": "uint16"},
    {"name": "natives", "type": "uint16"},
]

CONFIG_COMPONENTS = [
    {"name": "genesis", "type": "bytes32"},
    _uint("resolveWindow"),
    _uint("timePerDistance"),
    _uint("exitDuration"),
    _uint("acquireNumSpaceships"),
    _uint("productionSpeedUp"),
    _uint("frontrunningDelay"),
    _uint("productionCapAsDuration"),
    _uint("upkeepProductionDecreaseRatePer10000th"),
    _uint("fleetSizeFactor6"),
    _uint("initialSpaceExpansion"),
    _uint("expansionDelta"),
    _uint("giftTaxPer10000"),
    {"name": "stakeRange", "type": "bytes32"},
    _uint("stakeMultiplier10000th"),
    _uint("bootstrapSessionEndTime"),
    _uint("infinityStartTime"),
]

FLEET_RESOLUTION_COMPONENTS = [
    _uint("from"),
    _uint("to"),
    _uint("distance"),
    _uint("arrivalTimeWanted"),
    {"name": "gift", "type": "bool"},
    {"name": "specific", "type": "address"},
    {"name": "secret", "type": "bytes32"},
    {"name": "fleetSender", "type": "address"},
    {"name": "operator", "type": "address"},
]

# Game contract ABI (only the functions the engine calls)
CONQUEST_ABI = [
    {
        "inputs": [],
        "name": "getConfig",
        "outputs": [{"name": "config", "type": "tuple", "components": CONFIG_COMPONENTS}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "ids", "type": "uint256[]"}],
        "name": "getPlanetStates",
        "outputs": [
            {"name": "states", "type": "tuple[]", "components": PLANET_STATE_COMPONENTS},
            {"name": "stats", "type": "tuple[]", "components": PLANET_STATS_COMPONENTS}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [_uint("fleetId"), _uint("from")],
        "name": "getFleet",
        "outputs": [
            {"name": "owner", "type": "address"},
            {"name": "launchTime", "type": "uint40"},
            {"name": "quantity", "type": "uint32"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [_uint("from"), _uint("quantity"), {"name": "toHash", "type": "bytes32"}],
        "name": "send",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            _uint("fleetId"),
            {"name": "resolution", "type": "tuple", "components": FLEET_RESOLUTION_COMPONENTS}
        ],
        "name": "resolveFleet",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "locations", "type": "uint256[]"}],
        "name": "exitMultipleFor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "locations", "type": "uint256[]"}],
        "name": "fetchAndWithdrawFor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "locations", "type": "uint256[]"},
            _uint("amountToMint"),
            _uint("tokenAmount")
        ],
        "name": "acquireMultipleViaNativeTokenAndStakingToken",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function"
    },
]


class LedgerClient:
    """
    Signing web3 client for the game contract.

    Usage:
        ledger = LedgerClient("https://rpc.example", "0xContract...", private_key)
        config = fetch_config(ledger)
        tx_hash = ledger.simulate_and_send("send", from_id, 100, to_hash)
    """

    def __init__(self, rpc_url: str, contract_address: str,
                 private_key: Optional[str] = None,
                 chain_id: Optional[int] = None,
                 timeout: int = 30,
                 receipt_timeout: int = 120,
                 wait_for_receipt: bool = True):
        """
        Initialize the ledger client.

        Args:
            rpc_url: JSON-RPC endpoint of the ledger node
            contract_address: Game contract address
            private_key: Signing key (read-only client when omitted)
            chain_id: Chain id (queried from the node when omitted)
            timeout: HTTP request timeout in seconds
            receipt_timeout: Seconds to wait for a receipt after submission
            wait_for_receipt: Whether to wait for inclusion after sending
        """
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=CONQUEST_ABI)
        self.account = Account.from_key(private_key) if private_key else None
        self._chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.wait_for_receipt = wait_for_receipt
        if self.account:
            log.info(f"Ledger client initialized. Player address: {self.account.address}")

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account else None

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self._guard("eth_chainId", lambda: self.w3.eth.chain_id)
        return self._chain_id

    def _guard(self, function: str, call):
        """Run a node call, translating transport and revert errors."""
        try:
            return call()
        except ContractLogicError as e:
            reason = e.message if getattr(e, "message", None) else str(e)
            raise LedgerRejection(function, reason)
        except requests.exceptions.RequestException as e:
            raise LedgerUnavailable(f"{function}: connection failed: {e}")
        except TimeExhausted as e:
            raise LedgerUnavailable(f"{function}: timed out: {e}")
        except (Web3Exception, ValueError) as e:
            raise LedgerRejection(function, str(e))

    # =========================================================================
    # CAPABILITY INTERFACE
    # =========================================================================

    def read(self, fn: str, *args) -> Any:
        """Call a view function."""
        return self._guard(fn, lambda: self.contract.functions[fn](*args).call())

    def simulate_and_send(self, fn: str, *args, value: int = 0) -> str:
        """
        Dry-run then submit a state-changing call.

        Returns:
            Transaction hash (0x-hex)

        Raises:
            LedgerRejection: the dry run reverted or the receipt has status 0
            LedgerUnavailable: the node could not be reached
        """
        if not self.account:
            raise LedgerRejection(fn, "no signing key configured")

        sender = self.account.address
        function = self.contract.functions[fn](*args)
        params = {"from": sender, "value": value}

        self._guard(fn, lambda: function.call(params))
        gas = self._guard(fn, lambda: function.estimate_gas(params))

        def build_and_send():
            tx = function.build_transaction({
                "from": sender,
                "value": value,
                "nonce": self.w3.eth.get_transaction_count(sender),
                "gas": gas,
                "gasPrice": self.w3.eth.gas_price,
                "chainId": self.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            return self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash = self._guard(fn, build_and_send)
        tx_hex = Web3.to_hex(tx_hash)
        log.info(f"{fn} TX sent: {tx_hex}")

        if self.wait_for_receipt:
            try:
                receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
            except TimeExhausted:
                log.warning(f"{fn} TX {tx_hex} not mined after {self.receipt_timeout}s, continuing")
                return tx_hex
            except requests.exceptions.RequestException as e:
                log.warning(f"{fn} TX {tx_hex} receipt check failed: {e}")
                return tx_hex
            if receipt["status"] != 1:
                raise LedgerRejection(fn, f"transaction {tx_hex} reverted")
            log.info(f"{fn} confirmed in block {receipt['blockNumber']}")

        return tx_hex

    # =========================================================================
    # CLOCK
    # =========================================================================

    def get_timestamp(self) -> int:
        """Timestamp of the latest block (the ledger clock)."""
        block = self._guard("eth_getBlockByNumber", lambda: self.w3.eth.get_block("latest"))
        return int(block["timestamp"])


# =============================================================================
# TYPED READS (work with any object exposing read())
# =============================================================================

def fetch_config(ledger) -> ContractConfig:
    return ContractConfig.from_contract(ledger.read("getConfig"))


def fetch_planet_states(ledger, planet_ids: List[int]) -> List[PlanetState]:
    """Current ledger state for each id, in order."""
    if not planet_ids:
        return []
    states, _stats = ledger.read("getPlanetStates", list(planet_ids))
    return [PlanetState.from_contract(raw) for raw in states]


def fetch_fleet(ledger, fleet_id: int, from_planet_id: int) -> Tuple[Optional[str], int, int]:
    """
    On-chain fleet record.

    Returns:
        (owner or None, launch_time, quantity). A committed fleet has an
        owner; a resolved one keeps its owner with quantity 0.
    """
    owner, launch_time, quantity = ledger.read("getFleet", fleet_id, from_planet_id)[:3]
    if not owner or owner.lower() == ZERO_ADDRESS:
        owner = None
    return owner, int(launch_time), int(quantity)
