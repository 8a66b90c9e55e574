import pytest

from conftest import ALICE, BOB, CREATOR, FAIR_LAUNCH_FACTORY, ICO, TOKEN, addr, seed_fair_launch
from launchpad_indexer.events import (
    COMMITTED,
    FAIR_LAUNCH_CREATED,
    FINALIZED,
    ICO_FAILED,
    REFUNDED,
    TOKENS_CLAIMED,
)
from launchpad_indexer.fair_launch import (
    CommittedProcessor,
    FairLaunchCreatedProcessor,
    FinalizedProcessor,
    ICOFailedProcessor,
    RefundedProcessor,
    TokensClaimedProcessor,
    allocation_for,
)
from launchpad_indexer.processors import Stream, process_range
from launchpad_indexer.rpc import NAME_SELECTOR, SYMBOL_SELECTOR, TOKEN_URI_SELECTOR


def ico_stream(processor):
    return Stream(address=ICO, processor=processor, entity=ICO, start_block=1, chain_id=97)


def commit(rpc, block, user, amount, total):
    rpc.add_log(COMMITTED, ICO, block, {"user": user, "amount": amount, "totalUserCommitment": total})


def allocations(storage, fair_launch_id):
    return {c["user_address"]: c["allocation"] for c in storage.list_commitments(fair_launch_id)}


def test_allocation_formula():
    assert allocation_for(6, 1_000_000, 15) == 400000
    assert allocation_for(1, 10, 3) == 3
    assert allocation_for(5, 100, 0) == 0


@pytest.mark.asyncio
async def test_commit_and_finalize_scenario(ctx, storage, rpc):
    fl = seed_fair_launch(storage, supply=1_000_000, minimum_raise=10)
    commit(rpc, 10, ALICE, 2, 2)
    commit(rpc, 11, BOB, 9, 9)
    commit(rpc, 12, ALICE, 4, 6)
    rpc.add_log(FINALIZED, ICO, 20, {"totalRaised": 15, "tokenPrice": 66666, "participantCount": 2})

    await process_range(ctx, ico_stream(CommittedProcessor(ctx)), 1, 19)
    await process_range(ctx, ico_stream(CommittedProcessor(ctx)), 1, 19)

    fl = storage.get_fair_launch(ICO)
    assert fl["status"] == "ACTIVE"
    assert fl["total_committed"] == "15"
    assert fl["participant_count"] == 2

    await process_range(ctx, ico_stream(FinalizedProcessor(ctx)), 1, 30)

    fl = storage.get_fair_launch(ICO)
    assert fl["status"] == "FINALIZED"
    assert fl["total_raised"] == "15"
    assert fl["token_price"] == "66666"
    assert fl["terminal_block"] == 20
    assert fl["finalized_at"] == 1_700_000_000 + 20 * 3
    assert allocations(storage, fl["id"]) == {ALICE: "400000", BOB: "600000"}


@pytest.mark.asyncio
async def test_commitment_arriving_after_finalize(ctx, storage, rpc):
    fl = seed_fair_launch(storage, supply=1_000_000)
    commit(rpc, 10, ALICE, 6, 6)
    commit(rpc, 11, BOB, 9, 9)
    rpc.add_log(FINALIZED, ICO, 20, {"totalRaised": 15, "tokenPrice": 1, "participantCount": 2})
    committed = ico_stream(CommittedProcessor(ctx))

    # commitment stream lags: only Alice is indexed before the finalize batch
    await process_range(ctx, committed, 1, 10)
    await process_range(ctx, ico_stream(FinalizedProcessor(ctx)), 1, 30)
    assert allocations(storage, fl["id"]) == {ALICE: "400000"}

    await process_range(ctx, committed, 11, 30)

    fl = storage.get_fair_launch(ICO)
    assert fl["status"] == "FINALIZED"
    assert fl["participant_count"] == 2
    assert fl["total_committed"] == "15"
    assert allocations(storage, fl["id"]) == {ALICE: "400000", BOB: "600000"}


@pytest.mark.asyncio
async def test_aggregates_match_commitments_after_every_batch(ctx, storage, rpc):
    fl = seed_fair_launch(storage)
    users = [addr(0x100 + i) for i in range(5)]
    for i, user in enumerate(users):
        commit(rpc, 10 + i, user, i + 1, (i + 1) * 10)
    commit(rpc, 20, users[0], 5, 15)
    stream = ico_stream(CommittedProcessor(ctx))

    for lo, hi in ((1, 12), (13, 15), (16, 25), (1, 25)):
        await process_range(ctx, stream, lo, hi)
        fl = storage.get_fair_launch(ICO)
        rows = storage.list_commitments(fl["id"])
        assert int(fl["total_committed"]) == sum(int(c["amount"]) for c in rows)
        assert fl["participant_count"] == len(rows)

    assert storage.get_fair_launch(ICO)["total_committed"] == str(15 + 20 + 30 + 40 + 50)


@pytest.mark.asyncio
async def test_failed_ico_and_refund(ctx, storage, rpc):
    fl = seed_fair_launch(storage, minimum_raise=100)
    commit(rpc, 10, ALICE, 7, 7)
    rpc.add_log(ICO_FAILED, ICO, 30, {"totalCommitted": 7, "minimumRequired": 100})
    rpc.add_log(REFUNDED, ICO, 31, {"user": ALICE, "amount": 7})
    rpc.add_log(FINALIZED, ICO, 32, {"totalRaised": 7, "tokenPrice": 1, "participantCount": 1})

    await process_range(ctx, ico_stream(CommittedProcessor(ctx)), 1, 40)
    await process_range(ctx, ico_stream(ICOFailedProcessor(ctx)), 1, 40)
    await process_range(ctx, ico_stream(RefundedProcessor(ctx)), 1, 40)
    await process_range(ctx, ico_stream(FinalizedProcessor(ctx)), 1, 40)

    fl = storage.get_fair_launch(ICO)
    assert fl["status"] == "FAILED"
    assert fl["total_committed"] == "7"
    assert fl["failed_at"] == 1_700_000_000 + 30 * 3
    c = storage.get_commitment(fl["id"], ALICE)
    assert c["has_refunded"] == 1
    assert c["refunded_at"] == 1_700_000_000 + 31 * 3
    assert c["allocation"] == "0"


@pytest.mark.asyncio
async def test_failed_event_ignored_once_finalized(ctx, storage, rpc):
    seed_fair_launch(storage)
    rpc.add_log(FINALIZED, ICO, 20, {"totalRaised": 0, "tokenPrice": 0, "participantCount": 0})
    rpc.add_log(ICO_FAILED, ICO, 21, {"totalCommitted": 0, "minimumRequired": 10})

    await process_range(ctx, ico_stream(FinalizedProcessor(ctx)), 1, 30)
    await process_range(ctx, ico_stream(ICOFailedProcessor(ctx)), 1, 30)

    assert storage.get_fair_launch(ICO)["status"] == "FINALIZED"


@pytest.mark.asyncio
async def test_tokens_claimed(ctx, storage, rpc):
    fl = seed_fair_launch(storage, supply=1_000_000)
    commit(rpc, 10, ALICE, 6, 6)
    rpc.add_log(TOKENS_CLAIMED, ICO, 40, {"user": ALICE, "allocation": 400000})
    rpc.add_log(TOKENS_CLAIMED, ICO, 41, {"user": BOB, "allocation": 1})

    await process_range(ctx, ico_stream(CommittedProcessor(ctx)), 1, 50)
    await process_range(ctx, ico_stream(TokensClaimedProcessor(ctx)), 1, 50)

    c = storage.get_commitment(fl["id"], ALICE)
    assert c["has_claimed"] == 1
    assert c["claimed_at"] == 1_700_000_000 + 40 * 3
    assert c["allocation"] == "400000"
    assert storage.get_commitment(fl["id"], BOB) is None


def _creation_log(rpc, block=8):
    rpc.add_log(
        FAIR_LAUNCH_CREATED,
        FAIR_LAUNCH_FACTORY,
        block,
        {
            "ico": ICO,
            "token": TOKEN,
            "treasury": addr(0x7E),
            "timelock": addr(0x7F),
            "creator": CREATOR,
            "tokenSupply": 10**24,
            "minimumRaise": 10**19,
            "startTime": 1_700_000_100,
            "endTime": 1_700_086_500,
        },
    )


class RecordingRegistry:
    def __init__(self):
        self.fair_launches = []

    def register_fair_launch(self, fair_launch):
        self.fair_launches.append(fair_launch["ico_address"])


@pytest.mark.asyncio
async def test_fair_launch_created_reads_metadata(ctx, storage, rpc):
    ctx.registry = RecordingRegistry()
    rpc.strings[(TOKEN, NAME_SELECTOR)] = "Fair Token"
    rpc.strings[(TOKEN, SYMBOL_SELECTOR)] = "fair"
    rpc.strings[(TOKEN, TOKEN_URI_SELECTOR)] = "ipfs://cid"
    _creation_log(rpc)
    stream = Stream(
        address=FAIR_LAUNCH_FACTORY,
        processor=FairLaunchCreatedProcessor(ctx),
        entity=FAIR_LAUNCH_FACTORY,
        start_block=1,
        chain_id=97,
    )

    await process_range(ctx, stream, 1, 10)

    fl = storage.get_fair_launch(ICO)
    assert (fl["name"], fl["symbol"], fl["image_uri"]) == ("Fair Token", "FAIR", "ipfs://cid")
    assert fl["status"] == "PENDING"
    assert fl["token_supply"] == str(10**24)
    assert fl["deploy_block"] == 8
    assert ctx.registry.fair_launches == [ICO]


@pytest.mark.asyncio
async def test_fair_launch_created_falls_back_on_metadata_failure(ctx, storage, rpc):
    _creation_log(rpc)
    stream = Stream(
        address=FAIR_LAUNCH_FACTORY,
        processor=FairLaunchCreatedProcessor(ctx),
        entity=FAIR_LAUNCH_FACTORY,
        start_block=1,
        chain_id=97,
    )

    await process_range(ctx, stream, 1, 10)
    await process_range(ctx, stream, 1, 10)

    launches = storage.list_fair_launches()
    assert len(launches) == 1
    assert (launches[0]["name"], launches[0]["symbol"], launches[0]["image_uri"]) == ("Unknown Token", "UNKNOWN", "")
