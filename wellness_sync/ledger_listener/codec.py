"""
Contract log decoder — raw EVM logs to ProfileFetched / VoteAdded / StakeDelegated.

Implements the subset of the Solidity ABI the WellnessProfiles events use:
static words (address, bool, uintN, intN) in the head, dynamic `string`
through head offsets, and indexed parameters read from topics[1:]. topic0
(keccak256 of the event signature) is resolved once through the node's
web3_sha3 method, or supplied precomputed via configuration.

Every malformed payload raises EventDecodeError; callers drop the log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from wellness_sync.core.exceptions import EventDecodeError
from wellness_sync.database.models import BIGINT_MAX, BIGINT_MIN, INTEGER_MAX, VoteType
from wellness_sync.logging import get_logger
from wellness_sync.projection.events import (
    EventMeta,
    LedgerEvent,
    ProfileFetched,
    StakeDelegated,
    VoteAdded,
)

logger = get_logger(__name__)

WORD = 32
_RPC_TIMEOUT_SEC = 15.0


@dataclass(frozen=True)
class AbiInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventAbi:
    name: str
    inputs: tuple[AbiInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"


EVENT_ABIS: dict[str, EventAbi] = {
    "ProfileFetched": EventAbi(
        "ProfileFetched",
        (
            AbiInput("account", "address", indexed=True),
            AbiInput("name", "string"),
            AbiInput("bio", "string"),
            AbiInput("profilePicture", "string"),
            AbiInput("isWellnessProfessional", "bool"),
            AbiInput("upvotes", "uint256"),
            AbiInput("downvotes", "uint256"),
            AbiInput("reputation", "int256"),
            AbiInput("totalStake", "uint256"),
        ),
    ),
    "VoteAdded": EventAbi(
        "VoteAdded",
        (
            AbiInput("voter", "address", indexed=True),
            AbiInput("wellnessProfessional", "address", indexed=True),
            AbiInput("timestamp", "uint256"),
            AbiInput("voteType", "uint8"),
            AbiInput("stakeAmount", "uint256"),
        ),
    ),
    "StakeDelegated": EventAbi(
        "StakeDelegated",
        (
            AbiInput("from", "address", indexed=True),
            AbiInput("to", "address", indexed=True),
            AbiInput("amount", "uint256"),
        ),
    ),
}


def hex_to_bytes(value: Any) -> bytes:
    if not isinstance(value, str):
        raise EventDecodeError(f"expected hex string, got {type(value).__name__}")
    s = value[2:] if value.startswith(("0x", "0X")) else value
    if len(s) % 2:
        raise EventDecodeError("odd-length hex string")
    try:
        return bytes.fromhex(s)
    except ValueError as e:
        raise EventDecodeError(f"invalid hex: {e}") from e


def hex_to_int(value: Any) -> int | None:
    """Parse a JSON-RPC quantity ("0x1a"); None stays None."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except ValueError as e:
        raise EventDecodeError(f"invalid quantity {value!r}") from e


def _bits(abi_type: str, prefix: str) -> int:
    suffix = abi_type[len(prefix):]
    bits = int(suffix) if suffix else 256
    if bits <= 0 or bits > 256 or bits % 8:
        raise EventDecodeError(f"unsupported ABI type {abi_type}")
    return bits


def decode_static(word: bytes, abi_type: str) -> Any:
    """Decode one 32-byte head word."""
    if len(word) != WORD:
        raise EventDecodeError(f"short word for {abi_type}")
    if abi_type == "address":
        if any(word[:12]):
            raise EventDecodeError("address word has non-zero padding")
        return "0x" + word[12:].hex()
    if abi_type == "bool":
        value = int.from_bytes(word, "big")
        if value not in (0, 1):
            raise EventDecodeError(f"invalid bool {value}")
        return bool(value)
    if abi_type.startswith("uint"):
        bits = _bits(abi_type, "uint")
        value = int.from_bytes(word, "big")
        if value >= 1 << bits:
            raise EventDecodeError(f"{abi_type} out of range")
        return value
    if abi_type.startswith("int"):
        bits = _bits(abi_type, "int")
        value = int.from_bytes(word, "big", signed=True)
        if not -(1 << (bits - 1)) <= value < (1 << (bits - 1)):
            raise EventDecodeError(f"{abi_type} out of range")
        return value
    raise EventDecodeError(f"unsupported ABI type {abi_type}")


def decode_string(data: bytes, offset: int) -> str:
    if offset % WORD or offset + WORD > len(data):
        raise EventDecodeError(f"string offset {offset} out of bounds")
    length = int.from_bytes(data[offset:offset + WORD], "big")
    start = offset + WORD
    if start + length > len(data):
        raise EventDecodeError("string length out of bounds")
    try:
        return data[start:start + length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise EventDecodeError(f"string is not valid UTF-8: {e}") from e


def decode_values(abi: EventAbi, topics: list[bytes], data: bytes) -> dict[str, Any]:
    """Decode indexed params from topics[1:] and the rest from data."""
    values: dict[str, Any] = {}
    indexed = [i for i in abi.inputs if i.indexed]
    if len(topics) != len(indexed) + 1:
        raise EventDecodeError(
            f"{abi.name}: expected {len(indexed) + 1} topics, got {len(topics)}"
        )
    for inp, topic in zip(indexed, topics[1:]):
        if inp.type == "string":
            raise EventDecodeError(f"{abi.name}: indexed string {inp.name} is not recoverable")
        values[inp.name] = decode_static(topic, inp.type)

    body = [i for i in abi.inputs if not i.indexed]
    if len(data) < len(body) * WORD:
        raise EventDecodeError(
            f"{abi.name}: data too short ({len(data)} bytes for {len(body)} words)"
        )
    for n, inp in enumerate(body):
        word = data[n * WORD:(n + 1) * WORD]
        if inp.type == "string":
            values[inp.name] = decode_string(data, int.from_bytes(word, "big"))
        else:
            values[inp.name] = decode_static(word, inp.type)
    return values


# Fields mirrored into INTEGER / BIGINT columns; stake amounts are stored as decimal strings.
_COLUMN_BOUNDS: dict[str, tuple[int, int]] = {
    "upvotes": (0, INTEGER_MAX),
    "downvotes": (0, INTEGER_MAX),
    "reputation": (BIGINT_MIN, BIGINT_MAX),
    "timestamp": (0, BIGINT_MAX),
}


def _check_column_bounds(name: str, v: dict[str, Any]) -> None:
    for field, (low, high) in _COLUMN_BOUNDS.items():
        if field in v and not low <= v[field] <= high:
            raise EventDecodeError(f"{name}.{field} {v[field]} does not fit the mirror column")


def _build_event(name: str, v: dict[str, Any], meta: EventMeta) -> LedgerEvent:
    _check_column_bounds(name, v)
    if name == "ProfileFetched":
        return ProfileFetched(
            address=v["account"],
            name=v["name"],
            bio=v["bio"],
            profile_picture=v["profilePicture"],
            is_wellness_professional=v["isWellnessProfessional"],
            upvotes=v["upvotes"],
            downvotes=v["downvotes"],
            reputation=v["reputation"],
            total_stake=v["totalStake"],
            meta=meta,
        )
    if name == "VoteAdded":
        try:
            vote_type = VoteType.from_ordinal(v["voteType"])
        except ValueError as e:
            raise EventDecodeError(str(e)) from e
        return VoteAdded(
            voter=v["voter"],
            subject=v["wellnessProfessional"],
            vote_type=vote_type,
            timestamp=v["timestamp"],
            stake_amount=v["stakeAmount"],
            meta=meta,
        )
    return StakeDelegated(
        delegator=v["from"],
        delegate=v["to"],
        amount=v["amount"],
        meta=meta,
    )


class EventCodec:
    """
    Decodes logs of one contract. `topics` maps event name -> topic0 hex.

    Build with EventCodec.resolve() to look topic0 values up on the node.
    """

    def __init__(self, topics: Mapping[str, str], *, contract_address: str | None = None) -> None:
        missing = set(EVENT_ABIS) - set(topics)
        if missing:
            raise ValueError(f"missing topic0 for {', '.join(sorted(missing))}")
        self._by_topic = {topics[name].lower(): EVENT_ABIS[name] for name in EVENT_ABIS}
        self._topics = {name: topics[name].lower() for name in EVENT_ABIS}
        self._contract = contract_address.lower() if contract_address else None

    @property
    def topics(self) -> dict[str, str]:
        return dict(self._topics)

    def topic_filter(self) -> list[list[str]]:
        """eth_subscribe/eth_getLogs `topics` filter: any of the three events."""
        return [list(self._topics.values())]

    def decode(self, log: Any) -> LedgerEvent:
        if not isinstance(log, dict):
            raise EventDecodeError("log must be an object", raw=log)
        if log.get("removed"):
            raise EventDecodeError("log was removed by a chain reorganisation", raw=log)
        if self._contract and str(log.get("address", "")).lower() != self._contract:
            raise EventDecodeError(f"log from unexpected address {log.get('address')}", raw=log)
        raw_topics = log.get("topics")
        if not isinstance(raw_topics, list) or not raw_topics:
            raise EventDecodeError("log has no topics", raw=log)
        topic0 = str(raw_topics[0]).lower()
        abi = self._by_topic.get(topic0)
        if abi is None:
            raise EventDecodeError(f"unknown topic0 {topic0}", raw=log)
        try:
            topics = [hex_to_bytes(t) for t in raw_topics]
            values = decode_values(abi, topics, hex_to_bytes(log.get("data", "0x")))
            meta = EventMeta(
                block_number=hex_to_int(log.get("blockNumber")),
                log_index=hex_to_int(log.get("logIndex")),
                transaction_hash=log.get("transactionHash"),
            )
            return _build_event(abi.name, values, meta)
        except EventDecodeError as e:
            e.raw = log
            raise

    @classmethod
    async def resolve(
        cls,
        http_url: str,
        *,
        contract_address: str | None = None,
        overrides: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "EventCodec":
        """Resolve topic0 for every event not in `overrides` via web3_sha3."""
        topics = {k: v.lower() for k, v in (overrides or {}).items() if k in EVENT_ABIS}
        pending = [name for name in EVENT_ABIS if name not in topics]
        if pending:
            owns_client = client is None
            client = client or httpx.AsyncClient(timeout=httpx.Timeout(_RPC_TIMEOUT_SEC))
            try:
                for n, name in enumerate(pending, start=1):
                    topics[name] = await _web3_sha3(client, http_url, EVENT_ABIS[name].signature, n)
            finally:
                if owns_client:
                    await client.aclose()
        logger.info("codec_topics_resolved", topics=topics)
        return cls(topics, contract_address=contract_address)


async def _web3_sha3(client: httpx.AsyncClient, http_url: str, text: str, request_id: int) -> str:
    """keccak256 of `text` computed by the node; raise on transport or RPC error."""
    body = {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "web3_sha3",
        "params": ["0x" + text.encode("utf-8").hex()],
    }
    resp = await client.post(http_url, json=body)
    resp.raise_for_status()
    data = resp.json()
    if "error" in data:
        err = data["error"]
        raise RuntimeError(f"web3_sha3 RPC error: {err.get('message', err)} (code={err.get('code')})")
    result = data.get("result")
    if not isinstance(result, str) or len(hex_to_bytes(result)) != WORD:
        raise RuntimeError(f"web3_sha3 returned unexpected result {result!r}")
    return result.lower()
