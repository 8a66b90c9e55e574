import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .config import AppConfig
from .events import SWAP, TOKEN_CREATED, TRANSFER, DecodedLog, EventSpec
from .reader import ChainLogReader
from .store import Storage, StreamKey
from .utils import ZERO_ADDRESS, holder_percentage, ratio_price

if TYPE_CHECKING:
    from .scheduler import MonitoredRegistry

logger = logging.getLogger(__name__)

CONTRACT_TOKEN_FACTORY = "TokenFactory"
CONTRACT_POOL = "WeightedPool"
CONTRACT_TOKEN = "LaunchToken"
CONTRACT_FAIR_LAUNCH_FACTORY = "FairLaunchFactory"
CONTRACT_ICO = "ICOContract"


@dataclass
class IndexerContext:
    cfg: AppConfig
    storage: Storage
    reader: ChainLogReader
    registry: Optional["MonitoredRegistry"] = None


@dataclass(frozen=True)
class Stream:
    # streams sharing an entity never run at the same time
    address: str
    processor: "EventProcessor"
    entity: str
    start_block: int
    chain_id: int

    @property
    def key(self) -> StreamKey:
        return StreamKey.of(self.address, self.processor.event.name, self.chain_id)

    @property
    def is_factory(self) -> bool:
        return self.processor.contract_type in (
            CONTRACT_TOKEN_FACTORY,
            CONTRACT_FAIR_LAUNCH_FACTORY,
        )

    def __str__(self) -> str:
        return f"{self.processor.contract_type}:{self.processor.event.name}@{self.address}"


class EventProcessor:
    event: EventSpec
    contract_type: str = ""

    def __init__(self, ctx: IndexerContext):
        self.ctx = ctx

    @property
    def storage(self) -> Storage:
        return self.ctx.storage

    async def prepare(self, stream: Stream, logs: List[DecodedLog]) -> None:
        """Read-only RPC lookups, done before the write transaction opens."""

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        raise NotImplementedError

    def finish(self, stream: Stream, logs: List[DecodedLog]) -> None:
        pass

    def after_commit(self, stream: Stream, logs: List[DecodedLog]) -> None:
        pass


async def process_range(ctx: IndexerContext, stream: Stream, from_block: int, to_block: int) -> int:
    processor = stream.processor
    logs = await ctx.reader.fetch_logs(stream.address, processor.event, from_block, to_block)
    block_ts = await ctx.reader.block_timestamps(logs)
    await processor.prepare(stream, logs)

    last_tx = logs[-1].tx_hash if logs else None
    with ctx.storage.transaction():
        for log in logs:
            processor.apply(stream, log, block_ts[log.block_number])
        processor.finish(stream, logs)
        ctx.storage.advance(stream.key, to_block, last_tx, processor.contract_type)

    processor.after_commit(stream, logs)
    if logs:
        logger.info(
            "%s: %d logs in [%d, %d]", stream, len(logs), from_block, to_block
        )
    return len(logs)


class TokenCreatedProcessor(EventProcessor):
    event = TOKEN_CREATED
    contract_type = CONTRACT_TOKEN_FACTORY

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        args = log.args
        inserted = self.storage.insert_token(
            token_address=args["token"],
            pool_address=args["pool"],
            creator_address=args["creator"],
            name=args["name"],
            symbol=args["symbol"],
            total_supply=args["initialSupply"],
            deploy_tx_hash=log.tx_hash,
            deploy_block=log.block_number,
            deployed_at=block_ts,
        )
        if inserted:
            logger.info("indexed new token %s (%s) pool=%s", args["symbol"], args["token"], args["pool"])
        else:
            logger.debug("token %s already indexed", args["token"])

    def after_commit(self, stream: Stream, logs: List[DecodedLog]) -> None:
        registry = self.ctx.registry
        if registry is None:
            return
        for log in logs:
            token = self.storage.get_token(log.args["token"])
            if token:
                registry.register_token(token)


class SwapProcessor(EventProcessor):
    event = SWAP
    contract_type = CONTRACT_POOL

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        token = self.storage.get_token_by_pool(stream.address)
        if not token:
            logger.warning("swap on unknown pool %s tx=%s", stream.address, log.tx_hash)
            return
        if self.storage.trade_exists(log.tx_hash):
            logger.debug("trade %s already stored", log.tx_hash)
            return

        args = log.args
        token_address = token["token_address"]
        if args["tokenOut"] == token_address:
            trade_type = "buy"
            token_amount, native_amount = args["amountOut"], args["amountIn"]
        elif args["tokenIn"] == token_address:
            trade_type = "sell"
            token_amount, native_amount = args["amountIn"], args["amountOut"]
        else:
            logger.warning(
                "swap tx=%s on pool %s does not involve token %s",
                log.tx_hash,
                stream.address,
                token_address,
            )
            return

        price = ratio_price(native_amount, token_amount)
        inserted = self.storage.insert_trade(
            token_id=token["id"],
            token_address=token_address,
            pool_address=stream.address,
            trade_type=trade_type,
            trader_address=args["trader"],
            token_amount=token_amount,
            native_amount=native_amount,
            price=price,
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            block_timestamp=block_ts,
            log_index=log.log_index,
        )
        if inserted:
            self.storage.apply_trade_to_candles(token["id"], block_ts, price, native_amount)


def write_holder_balance(
    storage: Storage,
    token: Dict[str, Any],
    holder: str,
    balance: int,
    block_number: int,
    seen_at: Optional[int] = None,
) -> None:
    if balance <= 0:
        if balance < 0:
            logger.warning(
                "negative balance %d for %s on %s, dropping holder",
                balance,
                holder,
                token["token_address"],
            )
        storage.delete_holder(token["id"], holder)
        return
    storage.upsert_holder(
        token_id=token["id"],
        token_address=token["token_address"],
        holder_address=holder,
        balance=balance,
        percentage=holder_percentage(balance, int(token["total_supply"])),
        block_number=block_number,
        first_seen_at=seen_at,
    )


class TransferProcessor(EventProcessor):
    event = TRANSFER
    contract_type = CONTRACT_TOKEN

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        token = self.storage.get_token(stream.address)
        if not token:
            logger.warning("transfer on unknown token %s tx=%s", stream.address, log.tx_hash)
            return

        sender, receiver, value = log.args["from"], log.args["to"], log.args["value"]
        fresh = self.storage.record_transfer(
            token_address=token["token_address"],
            tx_hash=log.tx_hash,
            log_index=log.log_index,
            block_number=log.block_number,
            from_address=sender,
            to_address=receiver,
            value=value,
        )
        if not fresh or value == 0:
            return

        for holder, delta in ((sender, -value), (receiver, value)):
            if holder == ZERO_ADDRESS:
                continue
            balance = self.storage.get_holder_balance(token["id"], holder) + delta
            write_holder_balance(self.storage, token, holder, balance, log.block_number, block_ts)

    def finish(self, stream: Stream, logs: List[DecodedLog]) -> None:
        token = self.storage.get_token(stream.address)
        if token and logs:
            self.storage.recompute_holder_count(token["id"])
