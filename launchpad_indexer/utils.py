import asyncio
import logging
from decimal import Decimal, getcontext
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

import aiohttp

getcontext().prec = 60

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

T = TypeVar("T")


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def topic_address(addr: str) -> str:
    return "0x" + ("0" * 24) + normalize_address(addr)[2:]


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def decimal_to_str(v: Optional[Decimal], places: int = 18) -> Optional[str]:
    if v is None:
        return None
    q = Decimal(10) ** -places
    return str(v.quantize(q))


def ratio_price(numerator: int, denominator: int, places: int = 18) -> str:
    # both sides are raw 18-decimal amounts
    if denominator <= 0:
        return "0"
    return decimal_to_str(Decimal(numerator) / Decimal(denominator), places)


def holder_percentage(balance: int, total_supply: int) -> float:
    if total_supply <= 0:
        return 0.0
    return (balance * 10000 // total_supply) / 100


TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay_sec: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    backoff: float = 1.0,
    label: str = "",
) -> T:
    attempts = max(1, int(attempts))
    wait = max(0.0, float(delay_sec))
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= attempts:
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label or "call",
                attempt,
                attempts,
                e,
                wait,
            )
            await asyncio.sleep(wait)
            wait *= backoff
    raise RuntimeError("unreachable")


def chunk_ranges(from_block: int, to_block: int, span: int) -> Iterator[Tuple[int, int]]:
    span = max(1, int(span))
    start = from_block
    while start <= to_block:
        end = min(to_block, start + span - 1)
        yield start, end
        start = end + 1
