"""Operator repair tools: holder backfill, token sync and cursor maintenance."""

import logging
from typing import Any, Dict, List, Optional

from eth_abi import encode as abi_encode

from .events import EVENTS_BY_NAME, TRANSFER
from .processors import CONTRACT_TOKEN, IndexerContext, write_holder_balance
from .reader import RETRYABLE_ERRORS
from .rpc import selector
from .scheduler import PROCESSOR_CLASSES
from .store import Cursor, Storage, StreamKey
from .utils import ZERO_ADDRESS, normalize_address

logger = logging.getLogger(__name__)

CONTRACT_TYPES: Dict[str, str] = {cls.event.name: cls.contract_type for cls in PROCESSOR_CLASSES}

GET_ALL_TOKENS_SELECTOR = selector("getAllTokens()")
GET_TOKEN_INFO_SELECTOR = selector("getTokenInfo(address)")
# token, pool, creator, name, symbol, initialSupply, createdAt
TOKEN_INFO_TYPE = "(address,address,address,string,string,uint256,uint256)"


async def resolve_start_block(ctx: IndexerContext, token: Dict[str, Any]) -> int:
    tx_hash = token.get("deploy_tx_hash")
    if tx_hash:
        try:
            return await ctx.reader.deploy_block(tx_hash)
        except RETRYABLE_ERRORS as e:
            logger.warning("cannot resolve deploy block of %s from %s: %s", token["token_address"], tx_hash, e)
    if token.get("deploy_block") is not None:
        return int(token["deploy_block"])
    return ctx.cfg.backfill_default_start_block


async def backfill_token_holders(
    ctx: IndexerContext, token: Dict[str, Any], head: int, reset: bool = False
) -> int:
    storage = ctx.storage
    token_address = token["token_address"]
    start = await resolve_start_block(ctx, token)
    logger.info("backfilling holders of %s (%s) over [%d, %d]", token["symbol"], token_address, start, head)

    logs = await ctx.reader.fetch_logs(token_address, TRANSFER, start, head) if start <= head else []

    with storage.transaction():
        if reset:
            removed = storage.clear_holders(token["id"])
            logger.info("cleared %d holder rows of %s", removed, token_address)

        deltas: Dict[str, int] = {}
        last_block: Dict[str, int] = {}
        applied = 0
        for log in logs:
            sender, receiver, value = log.args["from"], log.args["to"], log.args["value"]
            fresh = storage.record_transfer(
                token_address=token_address,
                tx_hash=log.tx_hash,
                log_index=log.log_index,
                block_number=log.block_number,
                from_address=sender,
                to_address=receiver,
                value=value,
            )
            if not fresh:
                continue
            applied += 1
            for holder, delta in ((sender, -value), (receiver, value)):
                if holder == ZERO_ADDRESS:
                    continue
                deltas[holder] = deltas.get(holder, 0) + delta
                last_block[holder] = log.block_number

        for holder, delta in deltas.items():
            balance = storage.get_holder_balance(token["id"], holder) + delta
            write_holder_balance(storage, token, holder, balance, last_block[holder])

        holder_count = storage.recompute_holder_count(token["id"])
        storage.advance(
            StreamKey.of(token_address, TRANSFER.name, ctx.cfg.chain_id),
            head,
            logs[-1].tx_hash if logs else None,
            CONTRACT_TOKEN,
        )

    logger.info(
        "%s: %d transfers (%d new), %d holders", token_address, len(logs), applied, holder_count
    )
    return holder_count


async def backfill_holders(
    ctx: IndexerContext, token_address: Optional[str] = None, reset: bool = False
) -> Dict[str, int]:
    storage = ctx.storage
    if token_address:
        token = storage.get_token(token_address)
        if not token:
            raise ValueError(f"unknown token {token_address}")
        tokens = [token]
    else:
        tokens = storage.list_tokens(on_chain_only=True)

    head = max(0, await ctx.reader.head_block() - ctx.cfg.confirmations)
    results: Dict[str, int] = {}
    for token in tokens:
        results[token["token_address"]] = await backfill_token_holders(ctx, token, head, reset=reset)
    return results


async def read_factory_token(ctx: IndexerContext, factory: str, token_address: str) -> Dict[str, Any]:
    data = GET_TOKEN_INFO_SELECTOR + abi_encode(["address"], [token_address]).hex()
    (info,) = await ctx.reader.call_function(factory, data, [TOKEN_INFO_TYPE])
    _, pool, creator, name, symbol, initial_supply, created_at = info
    pool = normalize_address(pool)
    return {
        "pool_address": None if pool == ZERO_ADDRESS else pool,
        "creator_address": creator,
        "name": name,
        "symbol": symbol,
        "total_supply": initial_supply,
        "deployed_at": created_at or None,
    }


async def sync_tokens(ctx: IndexerContext) -> Dict[str, int]:
    """Insert tokens the factory lists but the store lacks, then backfill their holders."""
    factory = ctx.cfg.token_factory_addr
    if not factory:
        raise ValueError("TOKEN_FACTORY_ADDR is not configured")
    storage = ctx.storage

    (addresses,) = await ctx.reader.call_function(factory, GET_ALL_TOKENS_SELECTOR, ["address[]"])
    logger.info("factory %s lists %d tokens", factory, len(addresses))
    head = max(0, await ctx.reader.head_block() - ctx.cfg.confirmations)

    results: Dict[str, int] = {}
    for raw in addresses:
        token_address = normalize_address(raw)
        token = storage.get_token(token_address)
        if token is None:
            info = await read_factory_token(ctx, factory, token_address)
            storage.insert_token(
                token_address=token_address,
                deploy_tx_hash=None,
                deploy_block=None,
                **info,
            )
            token = storage.get_token(token_address)
            logger.info("created missing token %s (%s)", token["symbol"], token_address)
        elif token["holder_count"] > 1:
            logger.debug("%s already has %d holders, skipping", token_address, token["holder_count"])
            continue
        results[token_address] = await backfill_token_holders(ctx, token, head)
    return results


def cleanup_error_cursors(storage: Storage) -> List[Cursor]:
    removed = storage.delete_error_cursors()
    for c in removed:
        logger.info(
            "deleted cursor %s (errors=%d, last_error=%s)", c.key, c.error_count, c.last_error
        )
    logger.info("removed %d errored cursors", len(removed))
    return removed


def _stream_key(chain_id: int, address: str, event_type: str) -> StreamKey:
    if event_type not in EVENTS_BY_NAME:
        raise ValueError(f"unknown event type {event_type!r}, expected one of {sorted(EVENTS_BY_NAME)}")
    return StreamKey.of(address, event_type, chain_id)


def reset_cursor(ctx: IndexerContext, address: str, event_type: str, block: int) -> StreamKey:
    if block < 0:
        raise ValueError("block must be >= 0")
    key = _stream_key(ctx.cfg.chain_id, address, event_type)
    ctx.storage.reset_cursor(key, block, CONTRACT_TYPES[event_type])
    logger.info("cursor %s reset to block %d", key, block)
    return key


def delete_cursor(ctx: IndexerContext, address: str, event_type: str) -> bool:
    key = _stream_key(ctx.cfg.chain_id, address, event_type)
    deleted = ctx.storage.delete_cursor(key)
    logger.info("cursor %s %s", key, "deleted" if deleted else "not found")
    return deleted
