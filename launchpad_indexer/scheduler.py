import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import AppConfig
from .events import COMMITTED, FINALIZED, ICO_FAILED, REFUNDED, TOKENS_CLAIMED
from .fair_launch import ICO_PROCESSORS, FairLaunchCreatedProcessor
from .metrics import refresh_metrics
from .processors import (
    EventProcessor,
    IndexerContext,
    Stream,
    SwapProcessor,
    TokenCreatedProcessor,
    TransferProcessor,
    process_range,
)
from .reader import ChainLogReader
from .rpc import RPCClient
from .store import STATUS_FAILED, STATUS_FINALIZED, Storage, StreamKey

logger = logging.getLogger(__name__)

PROCESSOR_CLASSES = (
    TokenCreatedProcessor,
    FairLaunchCreatedProcessor,
    SwapProcessor,
    TransferProcessor,
    *ICO_PROCESSORS,
)

# the stream an ICO keeps after reaching each terminal status
POST_TERMINAL_EVENT = {
    STATUS_FINALIZED: TOKENS_CLAIMED.name,
    STATUS_FAILED: REFUNDED.name,
}


@dataclass
class CycleStats:
    started_at: float
    cycle_count: int = 0
    last_cycle_ok: Optional[bool] = None
    last_cycle_error: Optional[str] = None
    last_cycle_at: Optional[float] = None
    last_head: Optional[int] = None


class MonitoredRegistry:
    def __init__(self, cfg: AppConfig, processors: Dict[str, EventProcessor]):
        self.cfg = cfg
        self.processors = processors
        self._streams: Dict[StreamKey, Stream] = {}
        self.pools: Set[str] = set()
        self.tokens: Set[str] = set()
        self.icos: Set[str] = set()

    def streams(self) -> List[Stream]:
        return list(self._streams.values())

    def _add(self, address: str, event_name: str, entity: str, deploy_block: Optional[int]) -> bool:
        processor = self.processors[event_name]
        stream = Stream(
            address=address,
            processor=processor,
            entity=entity,
            start_block=self.cfg.stream_start_block(address, event_name, default=deploy_block),
            chain_id=self.cfg.chain_id,
        )
        if stream.key in self._streams:
            return False
        self._streams[stream.key] = stream
        logger.info("monitoring %s from block %d", stream, stream.start_block)
        return True

    def register_token(self, token: Dict[str, Any]) -> None:
        token_address = token["token_address"]
        deploy_block = token.get("deploy_block")
        self._add(token_address, TransferProcessor.event.name, token_address, deploy_block)
        self.tokens.add(token_address)
        pool = token.get("pool_address")
        if pool:
            self._add(pool, SwapProcessor.event.name, token_address, deploy_block)
            self.pools.add(pool)

    def register_fair_launch(self, fair_launch: Dict[str, Any]) -> None:
        ico = fair_launch["ico_address"]
        for processor_cls in ICO_PROCESSORS:
            self._add(ico, processor_cls.event.name, ico, fair_launch.get("deploy_block"))
        self.icos.add(ico)

    def unregister(self, address: str, event_name: str) -> bool:
        key = StreamKey.of(address, event_name, self.cfg.chain_id)
        stream = self._streams.pop(key, None)
        if stream is None:
            return False
        logger.info("stopped monitoring %s", stream)
        if not any(s.address == stream.address for s in self._streams.values()):
            self.pools.discard(stream.address)
            self.tokens.discard(stream.address)
            self.icos.discard(stream.address)
        return True

    def rebuild(self, storage: Storage) -> None:
        self._streams.clear()
        self.pools.clear()
        self.tokens.clear()
        self.icos.clear()
        for token in storage.list_tokens(on_chain_only=True):
            self.register_token(token)
        for fair_launch in storage.list_fair_launches():
            self.register_fair_launch(fair_launch)
        self.retire_finished(storage)
        logger.info(
            "registry rebuilt: %d pools, %d tokens, %d icos",
            len(self.pools),
            len(self.tokens),
            len(self.icos),
        )

    def retire_finished(self, storage: Storage) -> List[Tuple[str, str]]:
        # after FINALIZED or FAILED only the claim or refund stream keeps producing events
        retired: List[Tuple[str, str]] = []
        for ico in sorted(self.icos):
            fair_launch = storage.get_fair_launch(ico)
            if not fair_launch or fair_launch["status"] not in POST_TERMINAL_EVENT:
                continue
            terminal_block = fair_launch["terminal_block"]
            if terminal_block is None:
                continue
            keep = POST_TERMINAL_EVENT[fair_launch["status"]]
            for event_name in (COMMITTED.name, FINALIZED.name, ICO_FAILED.name, TOKENS_CLAIMED.name, REFUNDED.name):
                if event_name == keep:
                    continue
                key = StreamKey.of(ico, event_name, self.cfg.chain_id)
                if key not in self._streams:
                    continue
                cursor = storage.get_cursor(key)
                if cursor and cursor.last_indexed_at and cursor.last_indexed_block >= terminal_block:
                    self.unregister(ico, event_name)
                    retired.append((ico, event_name))
        return retired


class Indexer:
    def __init__(self, cfg: AppConfig, storage: Storage, rpc: RPCClient):
        self.cfg = cfg
        self.storage = storage
        self.reader = ChainLogReader(
            rpc,
            max_block_span=cfg.max_block_span,
            retry_attempts=cfg.rpc_retry_attempts,
            retry_delay_sec=cfg.rpc_retry_delay_sec,
        )
        self.ctx = IndexerContext(cfg=cfg, storage=storage, reader=self.reader)
        self.processors: Dict[str, EventProcessor] = {
            cls.event.name: cls(self.ctx) for cls in PROCESSOR_CLASSES
        }
        self.registry = MonitoredRegistry(cfg, self.processors)
        self.ctx.registry = self.registry
        self.factory_streams = self._factory_streams()

        self.stats = CycleStats(started_at=time.time())
        self.stop_event = asyncio.Event()
        self.semaphore = asyncio.Semaphore(cfg.max_concurrent_streams)
        self.locks: Dict[str, asyncio.Lock] = {}

    def _factory_streams(self) -> List[Stream]:
        out: List[Stream] = []
        factories = (
            ("TOKEN_FACTORY_ADDR", self.cfg.token_factory_addr, TokenCreatedProcessor),
            ("FAIR_LAUNCH_FACTORY_ADDR", self.cfg.fair_launch_factory_addr, FairLaunchCreatedProcessor),
        )
        for key, address, processor_cls in factories:
            if not address:
                logger.warning("%s is not configured, %s stream disabled", key, processor_cls.event.name)
                continue
            out.append(
                Stream(
                    address=address,
                    processor=self.processors[processor_cls.event.name],
                    entity=address,
                    start_block=self.cfg.stream_start_block(address, processor_cls.event.name),
                    chain_id=self.cfg.chain_id,
                )
            )
        return out

    def _lock_for(self, entity: str) -> asyncio.Lock:
        lock = self.locks.get(entity)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[entity] = lock
        return lock

    def compute_range(self, stream: Stream, head: int) -> Optional[Tuple[int, int]]:
        cursor = self.storage.get_cursor(stream.key)
        if cursor is None or not cursor.last_indexed_at:
            from_block = stream.start_block
        else:
            from_block = cursor.last_indexed_block + 1
        if from_block > head:
            return None
        return from_block, min(head, from_block + self.cfg.max_blocks_per_tick - 1)

    async def run_stream(self, stream: Stream, head: int) -> int:
        async with self.semaphore:
            async with self._lock_for(stream.entity):
                block_range = self.compute_range(stream, head)
                if block_range is None:
                    return 0
                try:
                    return await process_range(self.ctx, stream, *block_range)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception("%s failed on [%d, %d]", stream, *block_range)
                    self.storage.record_error(
                        stream.key, f"{type(e).__name__}: {e}", stream.processor.contract_type
                    )
                    return 0

    async def _run_all(self, streams: List[Stream], head: int) -> int:
        if not streams:
            return 0
        counts = await asyncio.gather(*(self.run_stream(s, head) for s in streams))
        return sum(counts)

    async def tick(self) -> int:
        head = max(0, await self.reader.head_block() - self.cfg.confirmations)
        self.stats.last_head = head

        processed = await self._run_all(self.factory_streams, head)
        processed += await self._run_all(self.registry.streams(), head)
        self.registry.retire_finished(self.storage)

        self.stats.cycle_count += 1
        cycles = self.cfg.metrics_refresh_cycles
        if cycles and self.stats.cycle_count % cycles == 0:
            refresh_metrics(self.storage)
        return processed

    async def run(self) -> None:
        self.registry.rebuild(self.storage)
        while not self.stop_event.is_set():
            try:
                processed = await self.tick()
                self.stats.last_cycle_ok = True
                self.stats.last_cycle_error = None
                logger.debug(
                    "cycle %d done: head=%s logs=%d", self.stats.cycle_count, self.stats.last_head, processed
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.last_cycle_ok = False
                self.stats.last_cycle_error = f"{type(e).__name__}: {e}"
                logger.exception("poll cycle failed")
            self.stats.last_cycle_at = time.time()

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.cfg.poll_interval_sec)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self.stop_event.set()
