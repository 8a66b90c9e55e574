import logging
from typing import Any, Dict, List, Optional, Tuple

from eth_abi.exceptions import DecodingError

from .events import (
    COMMITTED,
    FAIR_LAUNCH_CREATED,
    FINALIZED,
    ICO_FAILED,
    REFUNDED,
    TOKENS_CLAIMED,
    DecodedLog,
)
from .processors import (
    CONTRACT_FAIR_LAUNCH_FACTORY,
    CONTRACT_ICO,
    EventProcessor,
    Stream,
)
from .rpc import NAME_SELECTOR, SYMBOL_SELECTOR, TOKEN_URI_SELECTOR, RPCError
from .store import STATUS_ACTIVE, STATUS_FAILED, STATUS_FINALIZED, STATUS_PENDING
from .utils import TRANSIENT_ERRORS

logger = logging.getLogger(__name__)

PLACEHOLDER_METADATA = ("Unknown Token", "UNKNOWN", "")

METADATA_ERRORS = (RPCError, DecodingError, ValueError) + TRANSIENT_ERRORS


def allocation_for(amount: int, token_supply: int, total_raised: int) -> int:
    if total_raised <= 0:
        return 0
    return amount * token_supply // total_raised


class FairLaunchCreatedProcessor(EventProcessor):
    event = FAIR_LAUNCH_CREATED
    contract_type = CONTRACT_FAIR_LAUNCH_FACTORY

    def __init__(self, ctx):
        super().__init__(ctx)
        self._metadata: Dict[str, Tuple[str, str, str]] = {}

    async def _read_metadata(self, token: str) -> Tuple[str, str, str]:
        rpc = self.ctx.reader.rpc
        try:
            name = await rpc.read_string(token, NAME_SELECTOR)
            symbol = await rpc.read_string(token, SYMBOL_SELECTOR)
            image_uri = await rpc.read_string(token, TOKEN_URI_SELECTOR)
        except METADATA_ERRORS as e:
            logger.warning("could not read token metadata for %s: %s", token, e)
            return PLACEHOLDER_METADATA
        return name, symbol, image_uri or ""

    async def prepare(self, stream: Stream, logs: List[DecodedLog]) -> None:
        for log in logs:
            token = log.args["token"]
            if token in self._metadata or self.storage.get_fair_launch(log.args["ico"]):
                continue
            self._metadata[token] = await self._read_metadata(token)

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        args = log.args
        if self.storage.get_fair_launch(args["ico"]):
            logger.debug("fair launch %s already indexed", args["ico"])
            return
        name, symbol, image_uri = self._metadata.pop(args["token"], PLACEHOLDER_METADATA)
        self.storage.insert_fair_launch(
            ico_address=args["ico"],
            token_address=args["token"],
            treasury_address=args["treasury"],
            timelock_address=args["timelock"],
            creator_address=args["creator"],
            name=name,
            symbol=symbol,
            image_uri=image_uri,
            token_supply=args["tokenSupply"],
            minimum_raise=args["minimumRaise"],
            start_time=args["startTime"],
            end_time=args["endTime"],
            deploy_tx_hash=log.tx_hash,
            deploy_block=log.block_number,
        )
        logger.info("indexed new fair launch %s (%s)", symbol.upper(), args["ico"])

    def after_commit(self, stream: Stream, logs: List[DecodedLog]) -> None:
        registry = self.ctx.registry
        if registry is None:
            return
        for log in logs:
            fair_launch = self.storage.get_fair_launch(log.args["ico"])
            if fair_launch:
                registry.register_fair_launch(fair_launch)


class ICOEventProcessor(EventProcessor):
    contract_type = CONTRACT_ICO

    def _fair_launch(self, stream: Stream, log: Optional[DecodedLog] = None) -> Optional[Dict[str, Any]]:
        fair_launch = self.storage.get_fair_launch(stream.address)
        if not fair_launch:
            logger.warning(
                "%s for unknown fair launch %s tx=%s",
                self.event.name,
                stream.address,
                log.tx_hash if log else "-",
            )
        return fair_launch


class CommittedProcessor(ICOEventProcessor):
    event = COMMITTED

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        fair_launch = self._fair_launch(stream, log)
        if not fair_launch:
            return
        user = log.args["user"]
        self.storage.upsert_commitment(
            fair_launch_id=fair_launch["id"],
            ico_address=fair_launch["ico_address"],
            user_address=user,
            amount=log.args["totalUserCommitment"],
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            block_time=block_ts,
        )

        # commitments delivered after the finalize batch
        if fair_launch["status"] == STATUS_FINALIZED and fair_launch["total_raised"]:
            commitment = self.storage.get_commitment(fair_launch["id"], user)
            allocation = allocation_for(
                int(commitment["amount"]),
                int(fair_launch["token_supply"]),
                int(fair_launch["total_raised"]),
            )
            self.storage.set_allocation(commitment["id"], allocation)

    def finish(self, stream: Stream, logs: List[DecodedLog]) -> None:
        if not logs:
            return
        fair_launch = self._fair_launch(stream)
        if not fair_launch:
            return
        total, count = self.storage.recompute_commitment_totals(fair_launch["id"])
        fields: Dict[str, Any] = {"total_committed": str(total), "participant_count": count}
        if fair_launch["status"] == STATUS_PENDING:
            fields["status"] = STATUS_ACTIVE
        self.storage.update_fair_launch(fair_launch["id"], **fields)


class FinalizedProcessor(ICOEventProcessor):
    event = FINALIZED

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        fair_launch = self._fair_launch(stream, log)
        if not fair_launch:
            return
        if fair_launch["status"] == STATUS_FAILED:
            logger.warning("ignoring Finalized for failed fair launch %s", stream.address)
            return

        total_raised = log.args["totalRaised"]
        token_supply = int(fair_launch["token_supply"])
        self.storage.update_fair_launch(
            fair_launch["id"],
            status=STATUS_FINALIZED,
            total_raised=str(total_raised),
            token_price=str(log.args["tokenPrice"]),
            participant_count=int(log.args["participantCount"]),
            finalized_at=block_ts,
            finalize_tx_hash=log.tx_hash,
            terminal_block=log.block_number,
        )
        if total_raised <= 0:
            logger.warning("fair launch %s finalized with zero raise", stream.address)

        commitments = self.storage.list_commitments(fair_launch["id"])
        for c in commitments:
            self.storage.set_allocation(
                c["id"], allocation_for(int(c["amount"]), token_supply, total_raised)
            )
        logger.info(
            "fair launch %s finalized: raised=%d participants=%d allocations=%d",
            stream.address,
            total_raised,
            log.args["participantCount"],
            len(commitments),
        )


class ICOFailedProcessor(ICOEventProcessor):
    event = ICO_FAILED

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        fair_launch = self._fair_launch(stream, log)
        if not fair_launch:
            return
        if fair_launch["status"] == STATUS_FINALIZED:
            logger.warning("ignoring ICOFailed for finalized fair launch %s", stream.address)
            return
        self.storage.update_fair_launch(
            fair_launch["id"],
            status=STATUS_FAILED,
            total_committed=str(log.args["totalCommitted"]),
            failed_at=block_ts,
            terminal_block=log.block_number,
        )
        logger.info(
            "fair launch %s failed: committed=%d minimum=%d",
            stream.address,
            log.args["totalCommitted"],
            log.args["minimumRequired"],
        )


class TokensClaimedProcessor(ICOEventProcessor):
    event = TOKENS_CLAIMED

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        fair_launch = self._fair_launch(stream, log)
        if not fair_launch:
            return
        user = log.args["user"]
        if not self.storage.mark_claimed(fair_launch["id"], user, log.args["allocation"], block_ts):
            logger.warning("claim by %s without commitment on %s", user, stream.address)


class RefundedProcessor(ICOEventProcessor):
    event = REFUNDED

    def apply(self, stream: Stream, log: DecodedLog, block_ts: int) -> None:
        fair_launch = self._fair_launch(stream, log)
        if not fair_launch:
            return
        user = log.args["user"]
        if not self.storage.mark_refunded(fair_launch["id"], user, block_ts):
            logger.warning("refund to %s without commitment on %s", user, stream.address)


ICO_PROCESSORS = (
    CommittedProcessor,
    FinalizedProcessor,
    ICOFailedProcessor,
    TokensClaimedProcessor,
    RefundedProcessor,
)
