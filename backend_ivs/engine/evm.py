"""
web3.py client for the InfectionVulnerabilityScore contract.

Transactions are sent from an unlocked node account (hardhat / anvil style) and
confirmed with wait_for_transaction_receipt; reads are eth_call through the contract
object. Function selectors, event topics and custom-error selectors are all derived
from the contract ABI: the bundled abi/InfectionVulnerabilityScore.json, or the
compiled hardhat artifact named by IVS_ABI_PATH.

JSON-RPC goes over httpx (HttpxProvider), so timeouts and test transports are the same
as everywhere else in the backend.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

import httpx
from eth_abi.exceptions import DecodingError
from eth_utils import event_abi_to_log_topic, function_abi_to_4byte_selector
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD
from web3.providers.async_base import AsyncJSONBaseProvider

from backend_ivs.config.settings import Settings
from backend_ivs.core.exceptions import (
    REASON_UNAUTHORIZED,
    ConfigError,
    EngineUnavailable,
    MalformedNotification,
    SubmissionRejected,
)
from backend_ivs.decryption.models import DataKind
from backend_ivs.logging import get_logger

logger = get_logger(__name__)

ABI_DIR = Path(__file__).resolve().parent / "abi"
DEFAULT_ABI_PATH = ABI_DIR / "InfectionVulnerabilityScore.json"

REQUESTED_EVENT = "DecryptionRequested"
COMPLETED_EVENT = "DecryptionCompleted"

DECRYPT_FUNCTIONS = {
    DataKind.SCORE: "getDecryptedIVS",
    DataKind.HEALTH_STATUS: "getDecryptedHealthStatus",
}
HANDLE_FUNCTIONS = {
    DataKind.SCORE: "getEncryptedIVS",
    DataKind.HEALTH_STATUS: "getEncryptedHealthStatus",
}
REQUIRED_ABI_ENTRIES = frozenset(
    [
        *DECRYPT_FUNCTIONS.values(),
        *HANDLE_FUNCTIONS.values(),
        "getAllUsers",
        REQUESTED_EVENT,
        COMPLETED_EVENT,
    ]
)


def load_abi(path: Path | None = None) -> list[dict[str, Any]]:
    """
    Load the contract ABI from a JSON file: either a bare ABI list or a hardhat
    artifact with an "abi" key. None loads the bundled ABI.
    """
    path = path or DEFAULT_ABI_PATH
    if not path.is_file():
        raise ConfigError(f"ABI file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"ABI file {path} is not valid JSON: {e}") from e
    abi = raw.get("abi") if isinstance(raw, dict) else raw
    if not isinstance(abi, list):
        raise ConfigError(f"ABI file {path} must hold a JSON list or an artifact with 'abi'")
    missing = REQUIRED_ABI_ENTRIES - {entry.get("name") for entry in abi if isinstance(entry, dict)}
    if missing:
        raise ConfigError(f"ABI in {path} is missing {sorted(missing)}")
    return abi


def error_selectors(abi: list[dict[str, Any]]) -> dict[str, str]:
    """{"0x<4-byte selector>": error name} for every custom error in the ABI."""
    return {
        "0x" + function_abi_to_4byte_selector(entry).hex(): entry["name"]
        for entry in abi
        if entry.get("type") == "error"
    }


def _quantity(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


def normalize_log(raw: Mapping[str, Any]) -> dict[str, Any]:
    """
    Convert a raw eth_getLogs entry (hex strings) into the typed form web3's event
    processing expects. Raises MalformedNotification on non-hex or missing fields.
    """
    try:
        return {
            "address": Web3.to_checksum_address(raw["address"]),
            "topics": [HexBytes(t) for t in raw.get("topics") or []],
            "data": HexBytes(raw.get("data") or "0x"),
            "blockNumber": _quantity(raw.get("blockNumber")),
            "blockHash": HexBytes(raw.get("blockHash") or "0x"),
            "transactionIndex": _quantity(raw.get("transactionIndex")),
            "transactionHash": HexBytes(raw.get("transactionHash") or "0x"),
            "logIndex": _quantity(raw.get("logIndex")),
        }
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedNotification(f"malformed log entry: {e}") from e


def decode_event(event: Any, log: Mapping[str, Any]) -> dict[str, Any]:
    """
    Decode a typed log with a contract event (contract.events.X()) into
    {param_name: value} plus blockNumber, logIndex and transactionHash.
    Raises MalformedNotification.
    """
    try:
        decoded = event.process_log(log)
    except (Web3Exception, DecodingError, KeyError, TypeError, ValueError) as e:
        name = getattr(event, "event_name", "event")
        raise MalformedNotification(f"undecodable {name} log: {e}") from e
    out = dict(decoded["args"])
    out["blockNumber"] = decoded["blockNumber"]
    out["logIndex"] = decoded["logIndex"]
    tx_hash = decoded["transactionHash"]
    out["transactionHash"] = Web3.to_hex(tx_hash) if tx_hash else None
    return out


class HttpxProvider(AsyncJSONBaseProvider):
    """Async JSON-RPC provider that posts through an httpx.AsyncClient."""

    def __init__(self, endpoint_uri: str, client: httpx.AsyncClient) -> None:
        super().__init__()
        self.endpoint_uri = endpoint_uri
        self._client = client

    async def make_request(self, method: Any, params: Any) -> Any:
        body = self.encode_rpc_request(method, params)
        try:
            resp = await self._client.post(
                self.endpoint_uri,
                content=body,
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise EngineUnavailable(f"{method} failed: {e}") from e
        try:
            return self.decode_rpc_response(resp.content)
        except ValueError as e:
            raise EngineUnavailable(f"{method} returned invalid JSON: {e}") from e

    async def is_connected(self, show_traceback: bool = False) -> bool:
        try:
            response = await self.make_request("web3_clientVersion", [])
        except EngineUnavailable:
            if show_traceback:
                raise
            return False
        return "result" in response


class EvmEngineClient:
    """
    DecryptionEngine over an EVM node, plus the contract's admin operations.

    Args:
        rpc_url: Node HTTP endpoint.
        contract_address: Deployed IVS contract.
        sender_address: Unlocked admin account that signs transactions on the node.
        abi: Contract ABI (defaults to the bundled one).
        receipt_timeout_sec: Max wait for a transaction to be mined.
        receipt_poll_sec: Interval between receipt polls.
        request_timeout_sec: HTTP timeout per RPC call.
        client: Optional pre-built httpx.AsyncClient (tests inject a MockTransport).
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        sender_address: str,
        *,
        abi: list[dict[str, Any]] | None = None,
        receipt_timeout_sec: float = 120.0,
        receipt_poll_sec: float = 2.0,
        request_timeout_sec: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not rpc_url.strip():
            raise ConfigError("rpc_url must be non-empty")
        if not Web3.is_address(contract_address or ""):
            raise ConfigError(f"contract address is not a valid address: {contract_address!r}")
        if sender_address and not Web3.is_address(sender_address):
            raise ConfigError(f"sender address is not a valid address: {sender_address!r}")
        self.abi = abi if abi is not None else load_abi()
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.sender_address = Web3.to_checksum_address(sender_address) if sender_address else ""
        self._http = client or httpx.AsyncClient(timeout=httpx.Timeout(request_timeout_sec))
        self._owns_client = client is None
        self.provider = HttpxProvider(rpc_url.rstrip("/"), self._http)
        self.w3 = AsyncWeb3(self.provider)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=self.abi)
        self.error_names = error_selectors(self.abi)
        self._receipt_timeout = receipt_timeout_sec
        self._receipt_poll = receipt_poll_sec

    @classmethod
    def from_settings(
        cls, settings: Settings, *, client: httpx.AsyncClient | None = None
    ) -> "EvmEngineClient":
        if not settings.contract_address:
            raise ConfigError("IVS_CONTRACT_ADDRESS is not set")
        return cls(
            settings.rpc_url,
            settings.contract_address,
            settings.sender_address,
            abi=load_abi(settings.abi_path),
            receipt_timeout_sec=settings.receipt_timeout_sec,
            receipt_poll_sec=settings.poll_interval_sec,
            request_timeout_sec=settings.request_timeout_sec,
            client=client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "EvmEngineClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # -- events --

    def event_topic(self, event_name: str) -> str:
        for entry in self.abi:
            if entry.get("type") == "event" and entry.get("name") == event_name:
                return Web3.to_hex(event_abi_to_log_topic(entry))
        raise ConfigError(f"event {event_name} is not in the ABI")

    def decode_log(self, event_name: str, raw_log: Mapping[str, Any]) -> dict[str, Any]:
        """Decode one raw eth_getLogs entry; raises MalformedNotification."""
        event = getattr(self.contract.events, event_name)()
        return decode_event(event, normalize_log(raw_log))

    async def block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except (Web3Exception, ValueError) as e:
            raise EngineUnavailable(f"eth_blockNumber failed: {e}") from e

    async def get_logs(self, event_name: str, from_block: int, to_block: int) -> list[dict[str, Any]]:
        """
        Raw eth_getLogs entries for one contract event. Entries are left undecoded
        (see decode_log) so a single bad entry cannot fail the whole range.
        """
        flt = {
            "address": self.contract_address,
            "topics": [self.event_topic(event_name)],
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        response = await self.provider.make_request("eth_getLogs", [flt])
        if response.get("error"):
            raise EngineUnavailable(f"eth_getLogs failed: {response['error']}")
        result = response.get("result")
        return result if isinstance(result, list) else []

    # -- DecryptionEngine --

    async def submit_decryption_request(self, subject_user_id: int, kind: DataKind) -> int:
        """
        Send getDecrypted{IVS,HealthStatus}(userId), wait for the receipt and return the
        requestId from its DecryptionRequested log.
        """
        name = DECRYPT_FUNCTIONS[kind]
        receipt = await self._transact(getattr(self.contract.functions, name)(subject_user_id), name)
        try:
            events = self.contract.events.DecryptionRequested().process_receipt(receipt, errors=DISCARD)
        except (Web3Exception, DecodingError, KeyError, TypeError, ValueError) as e:
            raise EngineUnavailable(f"undecodable receipt logs: {e}") from e
        for ev in events:
            if ev["address"] != self.contract_address:
                continue
            rid = int(ev["args"]["requestId"])
            logger.info(
                "evm_decrypt_requested",
                request_id=rid,
                subject_user_id=ev["args"]["userId"],
                kind=kind.value,
                block_number=ev["blockNumber"],
            )
            return rid
        raise EngineUnavailable(
            f"no DecryptionRequested event in receipt of {Web3.to_hex(receipt['transactionHash'])}"
        )

    async def get_all_users(self) -> list[int]:
        return list(await self._call(self.contract.functions.getAllUsers()))

    async def get_ciphertext_handle(self, subject_user_id: int, kind: DataKind) -> str:
        fn = getattr(self.contract.functions, HANDLE_FUNCTIONS[kind])(subject_user_id)
        return Web3.to_hex(await self._call(fn))

    # -- admin operations --

    async def register_user(self, user_id: int) -> Any:
        return await self._transact(self.contract.functions.registerUser(user_id), "registerUser")

    async def add_contact(self, user_a: int, user_b: int) -> Any:
        return await self._transact(self.contract.functions.addContact(user_a, user_b), "addContact")

    async def set_health_status(self, user_id: int, encrypted_status: str, input_proof: str) -> Any:
        """
        Store an encrypted health flag. encrypted_status (32-byte handle) and input_proof
        come from an FHE input encryptor bound to this contract and sender.
        """
        handle = HexBytes(encrypted_status)
        if len(handle) != 32:
            raise ValueError(f"encrypted status handle must be 32 bytes, got {len(handle)}")
        fn = self.contract.functions.setHealthStatus(user_id, handle, HexBytes(input_proof))
        return await self._transact(fn, "setHealthStatus")

    async def compute_ivs(self, d_max: int) -> Any:
        return await self._transact(self.contract.functions.computeIVS(d_max), "computeIVS")

    async def get_total_users(self) -> int:
        return int(await self._call(self.contract.functions.getTotalUsers()))

    async def is_user_registered(self, user_id: int) -> bool:
        return bool(await self._call(self.contract.functions.isUserRegistered(user_id)))

    async def get_user_contacts(self, user_id: int) -> list[int]:
        return list(await self._call(self.contract.functions.getUserContacts(user_id)))

    async def get_admin(self) -> str:
        return await self._call(self.contract.functions.admin())

    # -- internals --

    def rejection(self, error: ContractLogicError) -> SubmissionRejected:
        """Map a revert to SubmissionRejected using the ABI's custom-error selectors."""
        data = getattr(error, "data", None)
        name = None
        if isinstance(data, str) and len(data) >= 10:
            name = self.error_names.get(data[:10].lower())
        message = str(getattr(error, "message", None) or error)
        return SubmissionRejected.from_revert(message, error_name=name)

    async def _call(self, fn: Any) -> Any:
        try:
            return await fn.call()
        except ContractLogicError as e:
            raise self.rejection(e) from e
        except (Web3Exception, ValueError) as e:
            raise EngineUnavailable(f"{fn.fn_name} call failed: {e}") from e

    async def _transact(self, fn: Any, label: str) -> Any:
        """Estimate, send and wait for one transaction; return its receipt."""
        if not self.sender_address:
            raise SubmissionRejected("IVS_SENDER_ADDRESS is not set", reason=REASON_UNAUTHORIZED)
        tx: dict[str, Any] = {"from": self.sender_address}
        try:
            # Estimation surfaces custom-error reverts before anything is sent.
            tx["gas"] = await fn.estimate_gas(tx)
            tx["gasPrice"] = await self.w3.eth.gas_price
            tx_hash = await fn.transact(tx)
        except ContractLogicError as e:
            raise self.rejection(e) from e
        except (Web3Exception, ValueError) as e:
            raise EngineUnavailable(f"{label} failed: {e}") from e
        tx_hex = Web3.to_hex(tx_hash)
        logger.info("evm_tx_sent", function=label, tx_hash=tx_hex)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout, poll_latency=self._receipt_poll
            )
        except TimeExhausted as e:
            raise EngineUnavailable(
                f"transaction {tx_hex} not mined within {self._receipt_timeout}s"
            ) from e
        except (Web3Exception, ValueError) as e:
            raise EngineUnavailable(f"receipt for {tx_hex} failed: {e}") from e
        if receipt.get("status", 1) == 0:
            raise SubmissionRejected(f"transaction {tx_hex} reverted")
        logger.info(
            "evm_tx_confirmed",
            function=label,
            tx_hash=tx_hex,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )
        return receipt
