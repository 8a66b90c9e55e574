import itertools
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from eth_abi import encode

from launchpad_indexer.config import parse_config
from launchpad_indexer.events import EventSpec
from launchpad_indexer.processors import IndexerContext
from launchpad_indexer.reader import ChainLogReader
from launchpad_indexer.rpc import RPCError
from launchpad_indexer.store import Storage
from launchpad_indexer.utils import parse_hex_int, topic_address

TOKEN_FACTORY = "0x" + "f1" * 20
FAIR_LAUNCH_FACTORY = "0x" + "f2" * 20
TOKEN = "0x" + "a1" * 20
POOL = "0x" + "b1" * 20
ICO = "0x" + "c1" * 20
WBNB = "0x" + "ee" * 20
CREATOR = "0x" + "0c" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20

BASE_TS = 1_700_000_000


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


class FakeRPC:
    """In-memory stand-in for RPCClient backed by a list of raw logs."""

    def __init__(self):
        self.head = 0
        self.logs: List[Dict[str, Any]] = []
        self.block_ts: Dict[int, int] = {}
        self.txs: Dict[str, int] = {}
        self.strings: Dict[Tuple[str, str], str] = {}
        self.call_results: Dict[Tuple[str, str], str] = {}
        self.get_logs_calls: List[Tuple[int, int, Optional[str]]] = []
        self.failing_ranges: Set[int] = set()
        self.flaky_failures = 0
        self.head_failures = 0
        self._tx_counter = itertools.count(1)

    def next_tx_hash(self) -> str:
        return "0x" + format(next(self._tx_counter), "064x")

    def add_log(
        self,
        event: EventSpec,
        address: str,
        block: int,
        args: Dict[str, Any],
        tx_hash: Optional[str] = None,
        log_index: int = 0,
    ) -> Dict[str, Any]:
        topics = [event.topic0]
        data_types: List[str] = []
        data_values: List[Any] = []
        for p in event.params:
            value = args[p.name]
            if p.indexed:
                if p.type == "address":
                    topics.append(topic_address(value))
                else:
                    topics.append("0x" + format(int(value), "064x"))
            else:
                data_types.append(p.type)
                data_values.append(value)
        log = {
            "address": address,
            "topics": topics,
            "data": "0x" + encode(data_types, data_values).hex(),
            "blockNumber": hex(block),
            "transactionHash": tx_hash or self.next_tx_hash(),
            "logIndex": hex(log_index),
            "removed": False,
        }
        self.logs.append(log)
        self.head = max(self.head, block)
        return log

    async def get_latest_block_number(self) -> int:
        if self.head_failures:
            self.head_failures -= 1
            raise RPCError("eth_blockNumber: upstream unavailable")
        return self.head

    async def get_logs(self, from_block, to_block, address=None, topics=None):
        self.get_logs_calls.append((from_block, to_block, address))
        if from_block in self.failing_ranges:
            raise RPCError("eth_getLogs: block range too large")
        if self.flaky_failures:
            self.flaky_failures -= 1
            raise RPCError("eth_getLogs: header not found")
        out = []
        for log in self.logs:
            n = parse_hex_int(log["blockNumber"])
            if not from_block <= n <= to_block:
                continue
            if address and log["address"].lower() != address.lower():
                continue
            if topics and log["topics"][0] != topics[0]:
                continue
            out.append(log)
        return out

    async def get_block_by_number(self, block_number: int):
        return {"timestamp": hex(self.block_ts.get(block_number, BASE_TS + block_number * 3))}

    async def get_transaction(self, tx_hash: str):
        if tx_hash not in self.txs:
            return None
        return {"hash": tx_hash, "blockNumber": hex(self.txs[tx_hash])}

    def set_call_result(self, to: str, data: str, types: List[str], values: List[Any]) -> None:
        self.call_results[(to.lower(), data)] = "0x" + encode(types, values).hex()

    async def eth_call(self, to: str, data: str) -> str:
        key = (to.lower(), data)
        if key not in self.call_results:
            raise RPCError(f"execution reverted: {to} {data[:10]}")
        return self.call_results[key]

    async def read_string(self, to: str, selector: str) -> str:
        key = (to.lower(), selector)
        if key not in self.strings:
            raise RPCError(f"execution reverted: {to} {selector}")
        return self.strings[key]


@pytest.fixture
def raw_config(tmp_path) -> Dict[str, Any]:
    return {
        "CHAIN_ID": 97,
        "HTTP_RPC_URL": "http://127.0.0.1:8545",
        "SQLITE_PATH": str(tmp_path / "indexer.db"),
        "TOKEN_FACTORY_ADDR": TOKEN_FACTORY,
        "FAIR_LAUNCH_FACTORY_ADDR": FAIR_LAUNCH_FACTORY,
        "START_BLOCK": 1,
        "MAX_BLOCK_SPAN": 100,
        "RPC_RETRY_ATTEMPTS": 3,
        "RPC_RETRY_DELAY_SEC": 0,
        "METRICS_REFRESH_CYCLES": 0,
    }


@pytest.fixture
def cfg(raw_config):
    return parse_config(raw_config)


@pytest.fixture
def storage(cfg):
    s = Storage(cfg.sqlite_path)
    yield s
    s.close()


@pytest.fixture
def rpc():
    return FakeRPC()


@pytest.fixture
def reader(cfg, rpc):
    return ChainLogReader(
        rpc,
        max_block_span=cfg.max_block_span,
        retry_attempts=cfg.rpc_retry_attempts,
        retry_delay_sec=cfg.rpc_retry_delay_sec,
    )


@pytest.fixture
def ctx(cfg, storage, reader):
    return IndexerContext(cfg=cfg, storage=storage, reader=reader)


def seed_token(storage: Storage, supply: int = 1_000_000, deploy_block: int = 10) -> Dict[str, Any]:
    storage.insert_token(
        token_address=TOKEN,
        pool_address=POOL,
        creator_address=CREATOR,
        name="Moon Token",
        symbol="moon",
        total_supply=supply,
        deploy_tx_hash="0x" + "d0" * 32,
        deploy_block=deploy_block,
        deployed_at=BASE_TS,
    )
    return storage.get_token(TOKEN)


def seed_fair_launch(storage: Storage, supply: int = 1_000_000, minimum_raise: int = 10) -> Dict[str, Any]:
    storage.insert_fair_launch(
        ico_address=ICO,
        token_address=TOKEN,
        treasury_address=addr(0x7E),
        timelock_address=addr(0x7F),
        creator_address=CREATOR,
        name="Fair Token",
        symbol="fair",
        image_uri="ipfs://fair",
        token_supply=supply,
        minimum_raise=minimum_raise,
        start_time=BASE_TS,
        end_time=BASE_TS + 86400,
        deploy_tx_hash="0x" + "d1" * 32,
        deploy_block=5,
    )
    return storage.get_fair_launch(ICO)
