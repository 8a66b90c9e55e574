import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .utils import decode_topic_address, normalize_address, parse_hex_int


class DecodeError(ValueError):
    pass


@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool


@dataclass
class DecodedLog:
    address: str
    event: str
    args: Dict[str, Any]
    block_number: int
    tx_hash: str
    log_index: int
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def position(self) -> Tuple[int, int]:
        return self.block_number, self.log_index


_EVENT_RE = re.compile(r"^\s*event\s+(\w+)\s*\((.*)\)\s*$")


@dataclass(frozen=True)
class EventSpec:
    name: str
    params: Tuple[EventParam, ...]

    @classmethod
    def parse(cls, text: str) -> "EventSpec":
        m = _EVENT_RE.match(text)
        if not m:
            raise ValueError(f"not an event declaration: {text}")
        params: List[EventParam] = []
        for chunk in m.group(2).split(","):
            parts = chunk.split()
            if not parts:
                continue
            indexed = "indexed" in parts[1:]
            names = [p for p in parts[1:] if p != "indexed"]
            params.append(EventParam(name=names[-1] if names else f"arg{len(params)}", type=parts[0], indexed=indexed))
        return cls(name=m.group(1), params=tuple(params))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic0(self) -> str:
        return "0x" + keccak(text=self.signature).hex()

    def decode(self, log: Dict[str, Any]) -> DecodedLog:
        topics = [str(t).lower() for t in (log.get("topics") or [])]
        if not topics or topics[0] != self.topic0:
            raise DecodeError(f"log is not a {self.name} event")
        indexed = [p for p in self.params if p.indexed]
        if len(topics) - 1 != len(indexed):
            raise DecodeError(
                f"{self.name}: expected {len(indexed)} indexed topics, got {len(topics) - 1}"
            )

        args: Dict[str, Any] = {}
        for param, topic in zip(indexed, topics[1:]):
            if param.type == "address":
                args[param.name] = decode_topic_address(topic)
            elif param.type.startswith("uint") or param.type.startswith("int"):
                args[param.name] = int(topic, 16)
            else:
                args[param.name] = topic

        data_params = [p for p in self.params if not p.indexed]
        if data_params:
            data_hex = str(log.get("data") or "0x")
            try:
                values = abi_decode(
                    [p.type for p in data_params],
                    bytes.fromhex(data_hex[2:] if data_hex.startswith("0x") else data_hex),
                )
            except (DecodingError, ValueError) as e:
                raise DecodeError(f"{self.name}: cannot decode data: {e}") from e
            for param, value in zip(data_params, values):
                if param.type == "address":
                    value = normalize_address(value)
                args[param.name] = value

        return DecodedLog(
            address=normalize_address(log["address"]),
            event=self.name,
            args=args,
            block_number=parse_hex_int(log.get("blockNumber")),
            tx_hash=str(log.get("transactionHash") or "").lower(),
            log_index=parse_hex_int(log.get("logIndex")),
            raw=log,
        )


TOKEN_CREATED = EventSpec.parse(
    "event TokenCreated(address indexed token, address indexed pool, address indexed creator, "
    "string name, string symbol, uint256 initialSupply)"
)
SWAP = EventSpec.parse(
    "event Swap(address indexed tokenIn, address indexed tokenOut, uint256 amountIn, "
    "uint256 amountOut, address indexed trader)"
)
TRANSFER = EventSpec.parse(
    "event Transfer(address indexed from, address indexed to, uint256 value)"
)
FAIR_LAUNCH_CREATED = EventSpec.parse(
    "event FairLaunchCreated(address indexed ico, address indexed token, address indexed treasury, "
    "address timelock, address creator, uint256 tokenSupply, uint256 minimumRaise, "
    "uint256 startTime, uint256 endTime)"
)
COMMITTED = EventSpec.parse(
    "event Committed(address indexed user, uint256 amount, uint256 totalUserCommitment)"
)
FINALIZED = EventSpec.parse(
    "event Finalized(uint256 totalRaised, uint256 tokenPrice, uint256 participantCount)"
)
ICO_FAILED = EventSpec.parse(
    "event ICOFailed(uint256 totalCommitted, uint256 minimumRequired)"
)
TOKENS_CLAIMED = EventSpec.parse(
    "event TokensClaimed(address indexed user, uint256 allocation)"
)
REFUNDED = EventSpec.parse(
    "event Refunded(address indexed user, uint256 amount)"
)

ICO_EVENTS = (COMMITTED, FINALIZED, ICO_FAILED, TOKENS_CLAIMED, REFUNDED)

EVENTS_BY_NAME: Dict[str, EventSpec] = {
    e.name: e
    for e in (TOKEN_CREATED, SWAP, TRANSFER, FAIR_LAUNCH_CREATED, *ICO_EVENTS)
}
