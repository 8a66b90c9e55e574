import pytest
from eth_abi import encode

from conftest import ALICE, BASE_TS, BOB, CREATOR, POOL, TOKEN, TOKEN_FACTORY, addr, seed_token
from launchpad_indexer.backfill import (
    GET_ALL_TOKENS_SELECTOR,
    GET_TOKEN_INFO_SELECTOR,
    TOKEN_INFO_TYPE,
    backfill_holders,
    cleanup_error_cursors,
    delete_cursor,
    reset_cursor,
    resolve_start_block,
    sync_tokens,
)
from launchpad_indexer.config import parse_config
from launchpad_indexer.events import TRANSFER
from launchpad_indexer.processors import IndexerContext, Stream, TransferProcessor, process_range
from launchpad_indexer.rpc import RPCError
from launchpad_indexer.store import StreamKey
from launchpad_indexer.utils import ZERO_ADDRESS

CAROL = addr(0x33)


def _history(rpc):
    rpc.add_log(TRANSFER, TOKEN, 10, {"from": ZERO_ADDRESS, "to": ALICE, "value": 1000})
    rpc.add_log(TRANSFER, TOKEN, 150, {"from": ALICE, "to": BOB, "value": 400})
    rpc.add_log(TRANSFER, TOKEN, 151, {"from": BOB, "to": CAROL, "value": 400})
    rpc.add_log(TRANSFER, TOKEN, 260, {"from": ALICE, "to": ZERO_ADDRESS, "value": 100})
    rpc.head = 300


def balances(storage, token_id):
    return {h["holder_address"]: h["balance"] for h in storage.list_holders(token_id)}


@pytest.mark.asyncio
async def test_backfill_rebuilds_holders_and_seeds_cursor(ctx, storage, rpc):
    token = seed_token(storage, supply=1000)
    rpc.txs["0x" + "d0" * 32] = 10
    _history(rpc)

    result = await backfill_holders(ctx, TOKEN)

    assert result == {TOKEN: 2}
    assert balances(storage, token["id"]) == {ALICE: "500", CAROL: "400"}
    minted, burned = storage.transfer_totals(TOKEN, ZERO_ADDRESS)
    assert storage.sum_holder_balances(token["id"]) == minted - burned == 900
    assert storage.get_token(TOKEN)["holder_count"] == 2
    assert storage.get_cursor(StreamKey.of(TOKEN, "Transfer", 97)).last_indexed_block == 300


@pytest.mark.asyncio
async def test_backfill_after_live_indexing_does_not_double_count(ctx, storage, rpc):
    token = seed_token(storage, supply=1000)
    _history(rpc)
    stream = Stream(address=TOKEN, processor=TransferProcessor(ctx), entity=TOKEN, start_block=1, chain_id=97)
    await process_range(ctx, stream, 1, 155)

    await backfill_holders(ctx, TOKEN)

    assert balances(storage, token["id"]) == {ALICE: "500", CAROL: "400"}


@pytest.mark.asyncio
async def test_backfill_reset_discards_corrupt_rows(ctx, storage, rpc):
    token = seed_token(storage, supply=1000)
    _history(rpc)
    storage.upsert_holder(
        token_id=token["id"], token_address=TOKEN, holder_address=BOB,
        balance=999999, percentage=1.0, block_number=1,
    )

    await backfill_holders(ctx, TOKEN, reset=True)

    assert balances(storage, token["id"]) == {ALICE: "500", CAROL: "400"}


@pytest.mark.asyncio
async def test_backfill_unknown_token(ctx):
    with pytest.raises(ValueError):
        await backfill_holders(ctx, addr(0xDEAD))


@pytest.mark.asyncio
async def test_start_block_fallbacks(ctx, storage, rpc):
    token = seed_token(storage, deploy_block=42)
    rpc.txs[token["deploy_tx_hash"]] = 40
    assert await resolve_start_block(ctx, token) == 40

    rpc.txs.clear()
    # transaction lookup returns nothing, stored deploy block wins
    with pytest.raises(RPCError):
        await ctx.reader.deploy_block(token["deploy_tx_hash"])
    assert await resolve_start_block(ctx, token) == 42

    token["deploy_tx_hash"] = None
    token["deploy_block"] = None
    assert await resolve_start_block(ctx, token) == ctx.cfg.backfill_default_start_block


def test_cleanup_and_cursor_repair(ctx, storage):
    healthy = StreamKey.of(TOKEN, "Transfer", 97)
    broken = StreamKey.of(addr(0x44), "Swap", 97)
    storage.advance(healthy, 10)
    storage.record_error(broken, "boom")

    removed = cleanup_error_cursors(storage)
    assert [c.key for c in removed] == [broken]
    assert [c.key for c in storage.list_cursors()] == [healthy]

    reset_cursor(ctx, TOKEN, "Transfer", 3)
    assert storage.get_cursor(healthy).last_indexed_block == 3
    assert storage.get_cursor(healthy).contract_type == "LaunchToken"

    assert delete_cursor(ctx, TOKEN, "Transfer") is True
    assert delete_cursor(ctx, TOKEN, "Transfer") is False

    with pytest.raises(ValueError):
        reset_cursor(ctx, TOKEN, "Approval", 3)


def factory_lists(rpc, tokens):
    rpc.set_call_result(TOKEN_FACTORY, GET_ALL_TOKENS_SELECTOR, ["address[]"], [tokens])


@pytest.mark.asyncio
async def test_sync_tokens_creates_missing_token_and_backfills(ctx, storage, rpc):
    _history(rpc)
    factory_lists(rpc, [TOKEN])
    rpc.set_call_result(
        TOKEN_FACTORY,
        GET_TOKEN_INFO_SELECTOR + encode(["address"], [TOKEN]).hex(),
        [TOKEN_INFO_TYPE],
        [(TOKEN, POOL, CREATOR, "Moon Token", "moon", 1000, BASE_TS)],
    )

    result = await sync_tokens(ctx)

    token = storage.get_token(TOKEN)
    assert result == {TOKEN: 2}
    assert token["pool_address"] == POOL
    assert token["creator_address"] == CREATOR
    assert token["symbol"] == "MOON"
    assert token["total_supply"] == "1000"
    assert token["deployed_at"] == BASE_TS
    assert balances(storage, token["id"]) == {ALICE: "500", CAROL: "400"}
    assert storage.get_cursor(StreamKey.of(TOKEN, "Transfer", 97)).last_indexed_block == 300


@pytest.mark.asyncio
async def test_sync_tokens_skips_tokens_with_holders(ctx, storage, rpc):
    seed_token(storage, supply=1000)
    _history(rpc)
    factory_lists(rpc, [TOKEN])

    assert await sync_tokens(ctx) == {TOKEN: 2}

    rpc.get_logs_calls.clear()
    assert await sync_tokens(ctx) == {}
    assert rpc.get_logs_calls == []


@pytest.mark.asyncio
async def test_sync_tokens_requires_factory(raw_config, storage, reader):
    raw_config.pop("TOKEN_FACTORY_ADDR")
    ctx = IndexerContext(cfg=parse_config(raw_config), storage=storage, reader=reader)
    with pytest.raises(ValueError):
        await sync_tokens(ctx)
