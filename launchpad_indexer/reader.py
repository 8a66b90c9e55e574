import logging
from typing import Any, Dict, Iterable, List, Tuple

from eth_abi import decode as abi_decode

from .events import DecodedLog, DecodeError, EventSpec
from .rpc import RPCClient, RPCError
from .utils import TRANSIENT_ERRORS, chunk_ranges, normalize_address, parse_hex_int, retry_async

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RPCError,) + TRANSIENT_ERRORS

BLOCK_TS_CACHE_LIMIT = 5000


class ChainLogReader:
    def __init__(
        self,
        rpc: RPCClient,
        *,
        max_block_span: int = 5000,
        retry_attempts: int = 3,
        retry_delay_sec: float = 2.0,
    ):
        self.rpc = rpc
        self.max_block_span = max(1, int(max_block_span))
        self.retry_attempts = retry_attempts
        self.retry_delay_sec = retry_delay_sec
        self.block_ts_cache: Dict[int, int] = {}

    async def _retry(self, fn, label: str):
        return await retry_async(
            fn,
            attempts=self.retry_attempts,
            delay_sec=self.retry_delay_sec,
            retry_on=RETRYABLE_ERRORS,
            label=label,
        )

    async def head_block(self) -> int:
        return await self._retry(self.rpc.get_latest_block_number, "eth_blockNumber")

    async def fetch_logs(
        self, address: str, event: EventSpec, from_block: int, to_block: int
    ) -> List[DecodedLog]:
        address = normalize_address(address)
        if from_block > to_block:
            return []

        out: List[DecodedLog] = []
        for lo, hi in chunk_ranges(from_block, to_block, self.max_block_span):
            raw_logs = await self._retry(
                lambda lo=lo, hi=hi: self.rpc.get_logs(
                    lo, hi, address=address, topics=[event.topic0]
                ),
                f"eth_getLogs {event.name} {address} [{lo}, {hi}]",
            )
            for raw in raw_logs:
                if raw.get("removed"):
                    continue
                try:
                    out.append(event.decode(raw))
                except DecodeError as e:
                    logger.warning(
                        "skipping undecodable %s log tx=%s: %s",
                        event.name,
                        raw.get("transactionHash"),
                        e,
                    )
        out.sort(key=lambda d: d.position)
        return out

    async def block_timestamp(self, block_number: int) -> int:
        cached = self.block_ts_cache.get(block_number)
        if cached is not None:
            return cached
        block = await self._retry(
            lambda: self.rpc.get_block_by_number(block_number),
            f"eth_getBlockByNumber {block_number}",
        )
        if not block:
            raise RPCError(f"block {block_number} not found")
        ts = parse_hex_int(block["timestamp"])
        self.block_ts_cache[block_number] = ts
        if len(self.block_ts_cache) > BLOCK_TS_CACHE_LIMIT:
            oldest = sorted(self.block_ts_cache.keys())[:1000]
            for b in oldest:
                self.block_ts_cache.pop(b, None)
        return ts

    async def block_timestamps(self, logs: Iterable[DecodedLog]) -> Dict[int, int]:
        out: Dict[int, int] = {}
        for n in sorted({log.block_number for log in logs}):
            out[n] = await self.block_timestamp(n)
        return out

    async def deploy_block(self, tx_hash: str) -> int:
        tx = await self._retry(
            lambda: self.rpc.get_transaction(tx_hash),
            f"eth_getTransactionByHash {tx_hash}",
        )
        if not tx or tx.get("blockNumber") is None:
            raise RPCError(f"transaction {tx_hash} not found or pending")
        return parse_hex_int(tx["blockNumber"])

    async def call_function(self, to: str, data: str, types: List[str]) -> Tuple[Any, ...]:
        out = await self._retry(lambda: self.rpc.eth_call(to, data), f"eth_call {data[:10]} {to}")
        if not out or out == "0x":
            raise RPCError(f"empty eth_call result from {to} for {data[:10]}")
        return abi_decode(types, bytes.fromhex(out[2:]))
