import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .utils import normalize_address

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_ACTIVE = "ACTIVE"
STATUS_FINALIZED = "FINALIZED"
STATUS_FAILED = "FAILED"
OPEN_STATUSES = (STATUS_PENDING, STATUS_ACTIVE)
TERMINAL_STATUSES = (STATUS_FINALIZED, STATUS_FAILED)

CANDLE_INTERVALS = (60, 3600)


@dataclass(frozen=True)
class StreamKey:
    contract_address: str
    event_type: str
    chain_id: int

    @classmethod
    def of(cls, contract_address: str, event_type: str, chain_id: int) -> "StreamKey":
        return cls(normalize_address(contract_address), event_type, int(chain_id))

    def __str__(self) -> str:
        return f"{self.contract_address}:{self.event_type}@{self.chain_id}"


@dataclass
class Cursor:
    key: StreamKey
    contract_type: str
    last_indexed_block: int
    last_indexed_tx_hash: Optional[str]
    last_indexed_at: int
    last_error: Optional[str]
    error_count: int

    def to_api(self) -> Dict[str, Any]:
        return {
            "contract": self.key.contract_address,
            "contractType": self.contract_type,
            "eventType": self.key.event_type,
            "chainId": self.key.chain_id,
            "errorCount": self.error_count,
            "lastError": self.last_error,
            "lastIndexedBlock": str(self.last_indexed_block),
            "lastIndexedAt": self.last_indexed_at or None,
        }


def _cursor_from_row(row: sqlite3.Row) -> Cursor:
    return Cursor(
        key=StreamKey(row["contract_address"], row["event_type"], int(row["chain_id"])),
        contract_type=row["contract_type"],
        last_indexed_block=int(row["last_indexed_block"]),
        last_indexed_tx_hash=row["last_indexed_tx_hash"],
        last_indexed_at=int(row["last_indexed_at"] or 0),
        last_error=row["last_error"],
        error_count=int(row["error_count"]),
    )


class Storage:
    # writes join an open transaction(), so a batch and its cursor advance commit together

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;
            PRAGMA foreign_keys=ON;

            CREATE TABLE IF NOT EXISTS indexer_state (
                contract_address TEXT NOT NULL,
                event_type TEXT NOT NULL,
                chain_id INTEGER NOT NULL,
                contract_type TEXT NOT NULL,
                last_indexed_block INTEGER NOT NULL DEFAULT 0,
                last_indexed_tx_hash TEXT,
                last_indexed_at INTEGER,
                last_error TEXT,
                error_count INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                PRIMARY KEY(contract_address, event_type, chain_id)
            );

            CREATE TABLE IF NOT EXISTS tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token_address TEXT NOT NULL UNIQUE,
                pool_address TEXT,
                creator_address TEXT NOT NULL,
                name TEXT NOT NULL,
                symbol TEXT NOT NULL,
                total_supply TEXT NOT NULL,
                decimals INTEGER NOT NULL DEFAULT 18,
                holder_count INTEGER NOT NULL DEFAULT 0,
                is_on_chain INTEGER NOT NULL DEFAULT 1,
                deploy_tx_hash TEXT,
                deploy_block INTEGER,
                deployed_at INTEGER,
                price TEXT NOT NULL DEFAULT '0',
                volume_24h TEXT NOT NULL DEFAULT '0',
                change_24h REAL NOT NULL DEFAULT 0,
                change_7d REAL NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tokens_pool ON tokens(pool_address);

            CREATE TABLE IF NOT EXISTS token_holders (
                token_id INTEGER NOT NULL REFERENCES tokens(id),
                token_address TEXT NOT NULL,
                holder_address TEXT NOT NULL,
                balance TEXT NOT NULL,
                percentage REAL NOT NULL,
                first_seen_at INTEGER,
                last_updated_block INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(token_id, holder_address)
            );

            CREATE TABLE IF NOT EXISTS transfer_events (
                token_address TEXT NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                from_address TEXT NOT NULL,
                to_address TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY(token_address, tx_hash, log_index)
            );

            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token_id INTEGER NOT NULL REFERENCES tokens(id),
                token_address TEXT NOT NULL,
                pool_address TEXT NOT NULL,
                trade_type TEXT NOT NULL,
                trader_address TEXT NOT NULL,
                token_amount TEXT NOT NULL,
                native_amount TEXT NOT NULL,
                price TEXT NOT NULL,
                tx_hash TEXT NOT NULL UNIQUE,
                block_number INTEGER NOT NULL,
                block_timestamp INTEGER NOT NULL,
                log_index INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_trades_token_time
                ON trades(token_id, block_timestamp);

            CREATE TABLE IF NOT EXISTS price_history (
                token_id INTEGER NOT NULL REFERENCES tokens(id),
                interval INTEGER NOT NULL,
                bucket INTEGER NOT NULL,
                open TEXT NOT NULL,
                high TEXT NOT NULL,
                low TEXT NOT NULL,
                close TEXT NOT NULL,
                volume TEXT NOT NULL,
                trade_count INTEGER NOT NULL,
                PRIMARY KEY(token_id, interval, bucket)
            );

            CREATE TABLE IF NOT EXISTS fair_launches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ico_address TEXT NOT NULL UNIQUE,
                token_address TEXT NOT NULL,
                treasury_address TEXT NOT NULL,
                timelock_address TEXT,
                creator_address TEXT NOT NULL,
                name TEXT NOT NULL,
                symbol TEXT NOT NULL,
                image_uri TEXT NOT NULL DEFAULT '',
                token_supply TEXT NOT NULL,
                minimum_raise TEXT NOT NULL,
                total_committed TEXT NOT NULL DEFAULT '0',
                participant_count INTEGER NOT NULL DEFAULT 0,
                token_price TEXT,
                total_raised TEXT,
                status TEXT NOT NULL DEFAULT 'PENDING',
                start_time INTEGER,
                end_time INTEGER,
                finalized_at INTEGER,
                failed_at INTEGER,
                terminal_block INTEGER,
                deploy_tx_hash TEXT,
                deploy_block INTEGER,
                finalize_tx_hash TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS commitments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fair_launch_id INTEGER NOT NULL REFERENCES fair_launches(id),
                ico_address TEXT NOT NULL,
                user_address TEXT NOT NULL,
                amount TEXT NOT NULL,
                allocation TEXT NOT NULL DEFAULT '0',
                has_claimed INTEGER NOT NULL DEFAULT 0,
                claimed_at INTEGER,
                has_refunded INTEGER NOT NULL DEFAULT 0,
                refunded_at INTEGER,
                last_tx_hash TEXT,
                last_block_number INTEGER,
                last_block_time INTEGER,
                UNIQUE(fair_launch_id, user_address)
            );
            """
        )

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        if self.conn.in_transaction:
            yield self.conn
            return
        self.conn.execute("BEGIN")
        try:
            yield self.conn
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    # cursors

    def get_cursor(self, key: StreamKey) -> Optional[Cursor]:
        row = self.conn.execute(
            """
            SELECT * FROM indexer_state
            WHERE contract_address = ? AND event_type = ? AND chain_id = ?
            """,
            (key.contract_address, key.event_type, key.chain_id),
        ).fetchone()
        return _cursor_from_row(row) if row else None

    def advance(
        self,
        key: StreamKey,
        block: int,
        tx_hash: Optional[str] = None,
        contract_type: str = "",
    ) -> None:
        now = int(time.time())
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO indexer_state(
                    contract_address, event_type, chain_id, contract_type,
                    last_indexed_block, last_indexed_tx_hash, last_indexed_at,
                    last_error, error_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, 0, ?)
                ON CONFLICT(contract_address, event_type, chain_id) DO UPDATE SET
                    contract_type = COALESCE(NULLIF(excluded.contract_type, ''), indexer_state.contract_type),
                    last_indexed_block = MAX(indexer_state.last_indexed_block, excluded.last_indexed_block),
                    last_indexed_tx_hash = COALESCE(excluded.last_indexed_tx_hash, indexer_state.last_indexed_tx_hash),
                    last_indexed_at = excluded.last_indexed_at,
                    last_error = NULL,
                    error_count = 0
                """,
                (
                    key.contract_address,
                    key.event_type,
                    key.chain_id,
                    contract_type,
                    int(block),
                    tx_hash.lower() if tx_hash else None,
                    now,
                    now,
                ),
            )

    def record_error(self, key: StreamKey, message: str, contract_type: str = "") -> None:
        now = int(time.time())
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO indexer_state(
                    contract_address, event_type, chain_id, contract_type,
                    last_indexed_block, last_error, error_count, created_at
                ) VALUES (?, ?, ?, ?, 0, ?, 1, ?)
                ON CONFLICT(contract_address, event_type, chain_id) DO UPDATE SET
                    contract_type = COALESCE(NULLIF(excluded.contract_type, ''), indexer_state.contract_type),
                    last_error = excluded.last_error,
                    error_count = indexer_state.error_count + 1
                """,
                (
                    key.contract_address,
                    key.event_type,
                    key.chain_id,
                    contract_type,
                    str(message)[:2000],
                    now,
                ),
            )

    def reset_cursor(self, key: StreamKey, start_block: int, contract_type: str = "") -> None:
        now = int(time.time())
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO indexer_state(
                    contract_address, event_type, chain_id, contract_type,
                    last_indexed_block, last_indexed_at, error_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(contract_address, event_type, chain_id) DO UPDATE SET
                    contract_type = COALESCE(NULLIF(excluded.contract_type, ''), indexer_state.contract_type),
                    last_indexed_block = excluded.last_indexed_block,
                    last_indexed_tx_hash = NULL,
                    last_indexed_at = excluded.last_indexed_at,
                    last_error = NULL,
                    error_count = 0
                """,
                (
                    key.contract_address,
                    key.event_type,
                    key.chain_id,
                    contract_type,
                    int(start_block),
                    now,
                    now,
                ),
            )

    def delete_cursor(self, key: StreamKey) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                DELETE FROM indexer_state
                WHERE contract_address = ? AND event_type = ? AND chain_id = ?
                """,
                (key.contract_address, key.event_type, key.chain_id),
            )
        return cur.rowcount > 0

    def list_cursors(self) -> List[Cursor]:
        rows = self.conn.execute(
            "SELECT * FROM indexer_state ORDER BY last_indexed_at DESC"
        ).fetchall()
        return [_cursor_from_row(r) for r in rows]

    def list_error_cursors(self, limit: Optional[int] = None) -> List[Cursor]:
        sql = """
            SELECT * FROM indexer_state
            WHERE error_count > 0 OR last_error IS NOT NULL
            ORDER BY error_count DESC, contract_address ASC
        """
        params: Tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        return [_cursor_from_row(r) for r in self.conn.execute(sql, params).fetchall()]

    def error_totals(self) -> Tuple[int, int]:
        row = self.conn.execute(
            """
            SELECT COALESCE(SUM(error_count), 0) AS errors,
                   COALESCE(MAX(error_count), 0) AS worst
            FROM indexer_state
            WHERE error_count > 0 OR last_error IS NOT NULL
            """
        ).fetchone()
        return int(row["errors"]), int(row["worst"])

    def delete_error_cursors(self) -> List[Cursor]:
        with self.transaction():
            broken = self.list_error_cursors()
            self.conn.execute(
                "DELETE FROM indexer_state WHERE error_count > 0 OR last_error IS NOT NULL"
            )
        return broken

    def max_indexed_block(self) -> Optional[int]:
        row = self.conn.execute(
            "SELECT MAX(last_indexed_block) AS b FROM indexer_state WHERE error_count = 0"
        ).fetchone()
        return int(row["b"]) if row and row["b"] is not None else None

    # tokens

    def get_token(self, token_address: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM tokens WHERE token_address = ?",
            (normalize_address(token_address),),
        ).fetchone()
        return dict(row) if row else None

    def get_token_by_id(self, token_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM tokens WHERE id = ?", (token_id,)).fetchone()
        return dict(row) if row else None

    def get_token_by_pool(self, pool_address: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM tokens WHERE pool_address = ?",
            (normalize_address(pool_address),),
        ).fetchone()
        return dict(row) if row else None

    def insert_token(
        self,
        *,
        token_address: str,
        pool_address: Optional[str],
        creator_address: str,
        name: str,
        symbol: str,
        total_supply: int,
        deploy_tx_hash: Optional[str],
        deploy_block: Optional[int],
        deployed_at: Optional[int],
        decimals: int = 18,
    ) -> bool:
        now = int(time.time())
        with self.transaction():
            cur = self.conn.execute(
                """
                INSERT OR IGNORE INTO tokens(
                    token_address, pool_address, creator_address, name, symbol,
                    total_supply, decimals, deploy_tx_hash, deploy_block, deployed_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    normalize_address(token_address),
                    normalize_address(pool_address) if pool_address else None,
                    normalize_address(creator_address),
                    name,
                    symbol.upper(),
                    str(int(total_supply)),
                    int(decimals),
                    deploy_tx_hash.lower() if deploy_tx_hash else None,
                    deploy_block,
                    deployed_at,
                    now,
                    now,
                ),
            )
        return cur.rowcount == 1

    def list_tokens(self, on_chain_only: bool = True) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM tokens"
        if on_chain_only:
            sql += " WHERE is_on_chain = 1"
        sql += " ORDER BY id ASC"
        return [dict(r) for r in self.conn.execute(sql).fetchall()]

    def update_token_metrics(
        self,
        token_id: int,
        *,
        price: str,
        volume_24h: str,
        change_24h: float,
        change_7d: float,
    ) -> None:
        with self.transaction():
            self.conn.execute(
                """
                UPDATE tokens
                SET price = ?, volume_24h = ?, change_24h = ?, change_7d = ?, updated_at = ?
                WHERE id = ?
                """,
                (price, volume_24h, change_24h, change_7d, int(time.time()), token_id),
            )

    def recompute_holder_count(self, token_id: int) -> int:
        with self.transaction():
            row = self.conn.execute(
                "SELECT COUNT(*) AS c FROM token_holders WHERE token_id = ? AND balance != '0'",
                (token_id,),
            ).fetchone()
            count = int(row["c"])
            self.conn.execute(
                "UPDATE tokens SET holder_count = ?, updated_at = ? WHERE id = ?",
                (count, int(time.time()), token_id),
            )
        return count

    # holders

    def get_holder_balance(self, token_id: int, holder_address: str) -> int:
        row = self.conn.execute(
            "SELECT balance FROM token_holders WHERE token_id = ? AND holder_address = ?",
            (token_id, holder_address),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def upsert_holder(
        self,
        *,
        token_id: int,
        token_address: str,
        holder_address: str,
        balance: int,
        percentage: float,
        block_number: int,
        first_seen_at: Optional[int] = None,
    ) -> None:
        now = int(time.time())
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO token_holders(
                    token_id, token_address, holder_address, balance, percentage,
                    first_seen_at, last_updated_block, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(token_id, holder_address) DO UPDATE SET
                    balance = excluded.balance,
                    percentage = excluded.percentage,
                    last_updated_block = excluded.last_updated_block,
                    updated_at = excluded.updated_at
                """,
                (
                    token_id,
                    token_address,
                    holder_address,
                    str(int(balance)),
                    float(percentage),
                    first_seen_at,
                    int(block_number),
                    now,
                ),
            )

    def delete_holder(self, token_id: int, holder_address: str) -> None:
        with self.transaction():
            self.conn.execute(
                "DELETE FROM token_holders WHERE token_id = ? AND holder_address = ?",
                (token_id, holder_address),
            )

    def list_holders(self, token_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT * FROM token_holders
            WHERE token_id = ?
            ORDER BY percentage DESC, holder_address ASC
            """,
            (token_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def sum_holder_balances(self, token_id: int) -> int:
        rows = self.conn.execute(
            "SELECT balance FROM token_holders WHERE token_id = ?", (token_id,)
        ).fetchall()
        return sum(int(r["balance"]) for r in rows)

    def clear_holders(self, token_id: int) -> int:
        with self.transaction():
            token = self.get_token_by_id(token_id)
            cur = self.conn.execute("DELETE FROM token_holders WHERE token_id = ?", (token_id,))
            if token:
                self.conn.execute(
                    "DELETE FROM transfer_events WHERE token_address = ?",
                    (token["token_address"],),
                )
        return cur.rowcount

    # transfer ledger

    def record_transfer(
        self,
        *,
        token_address: str,
        tx_hash: str,
        log_index: int,
        block_number: int,
        from_address: str,
        to_address: str,
        value: int,
    ) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                INSERT OR IGNORE INTO transfer_events(
                    token_address, tx_hash, log_index, block_number,
                    from_address, to_address, value
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    token_address,
                    tx_hash.lower(),
                    int(log_index),
                    int(block_number),
                    from_address,
                    to_address,
                    str(int(value)),
                ),
            )
        return cur.rowcount == 1

    def transfer_totals(self, token_address: str, zero_address: str) -> Tuple[int, int]:
        rows = self.conn.execute(
            """
            SELECT from_address, to_address, value
            FROM transfer_events
            WHERE token_address = ? AND (from_address = ? OR to_address = ?)
            """,
            (token_address, zero_address, zero_address),
        ).fetchall()
        minted = sum(int(r["value"]) for r in rows if r["from_address"] == zero_address)
        burned = sum(int(r["value"]) for r in rows if r["to_address"] == zero_address)
        return minted, burned

    # trades

    def trade_exists(self, tx_hash: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM trades WHERE tx_hash = ?", (tx_hash.lower(),)
        ).fetchone()
        return row is not None

    def insert_trade(
        self,
        *,
        token_id: int,
        token_address: str,
        pool_address: str,
        trade_type: str,
        trader_address: str,
        token_amount: int,
        native_amount: int,
        price: str,
        tx_hash: str,
        block_number: int,
        block_timestamp: int,
        log_index: int,
    ) -> bool:
        try:
            with self.transaction():
                self.conn.execute(
                    """
                    INSERT INTO trades(
                        token_id, token_address, pool_address, trade_type, trader_address,
                        token_amount, native_amount, price, tx_hash, block_number,
                        block_timestamp, log_index, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        token_id,
                        token_address,
                        pool_address,
                        trade_type,
                        trader_address,
                        str(int(token_amount)),
                        str(int(native_amount)),
                        price,
                        tx_hash.lower(),
                        int(block_number),
                        int(block_timestamp),
                        int(log_index),
                        int(time.time()),
                    ),
                )
        except sqlite3.IntegrityError:
            if not self.trade_exists(tx_hash):
                raise
            logger.debug("trade %s already stored", tx_hash)
            return False
        return True

    def list_trades(self, token_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM trades WHERE token_id = ? ORDER BY block_number ASC, log_index ASC",
            (token_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def trades_since(self, token_id: int, since_ts: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT * FROM trades
            WHERE token_id = ? AND block_timestamp >= ?
            ORDER BY block_timestamp ASC
            """,
            (token_id, int(since_ts)),
        ).fetchall()
        return [dict(r) for r in rows]

    def latest_trade(self, token_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            """
            SELECT * FROM trades
            WHERE token_id = ?
            ORDER BY block_timestamp DESC, block_number DESC, log_index DESC
            LIMIT 1
            """,
            (token_id,),
        ).fetchone()
        return dict(row) if row else None

    # price candles

    def apply_trade_to_candles(
        self,
        token_id: int,
        block_timestamp: int,
        price: str,
        native_amount: int,
        intervals: Iterable[int] = CANDLE_INTERVALS,
    ) -> None:
        p = Decimal(price)
        with self.transaction():
            for interval in intervals:
                bucket = int(block_timestamp) // interval * interval
                row = self.conn.execute(
                    """
                    SELECT * FROM price_history
                    WHERE token_id = ? AND interval = ? AND bucket = ?
                    """,
                    (token_id, interval, bucket),
                ).fetchone()
                if row is None:
                    self.conn.execute(
                        """
                        INSERT INTO price_history(
                            token_id, interval, bucket, open, high, low, close, volume, trade_count
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
                        """,
                        (token_id, interval, bucket, price, price, price, price, str(int(native_amount))),
                    )
                    continue
                high = max(Decimal(row["high"]), p)
                low = min(Decimal(row["low"]), p)
                self.conn.execute(
                    """
                    UPDATE price_history
                    SET high = ?, low = ?, close = ?, volume = ?, trade_count = trade_count + 1
                    WHERE token_id = ? AND interval = ? AND bucket = ?
                    """,
                    (
                        str(high),
                        str(low),
                        price,
                        str(int(row["volume"]) + int(native_amount)),
                        token_id,
                        interval,
                        bucket,
                    ),
                )

    def latest_candle(
        self, token_id: int, interval: int, at_or_before: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        if at_or_before is None:
            row = self.conn.execute(
                """
                SELECT * FROM price_history
                WHERE token_id = ? AND interval = ?
                ORDER BY bucket DESC LIMIT 1
                """,
                (token_id, interval),
            ).fetchone()
        else:
            row = self.conn.execute(
                """
                SELECT * FROM price_history
                WHERE token_id = ? AND interval = ? AND bucket <= ?
                ORDER BY bucket DESC LIMIT 1
                """,
                (token_id, interval, int(at_or_before)),
            ).fetchone()
        return dict(row) if row else None

    # fair launches

    def get_fair_launch(self, ico_address: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM fair_launches WHERE ico_address = ?",
            (normalize_address(ico_address),),
        ).fetchone()
        return dict(row) if row else None

    def insert_fair_launch(
        self,
        *,
        ico_address: str,
        token_address: str,
        treasury_address: str,
        timelock_address: Optional[str],
        creator_address: str,
        name: str,
        symbol: str,
        image_uri: str,
        token_supply: int,
        minimum_raise: int,
        start_time: int,
        end_time: int,
        deploy_tx_hash: Optional[str],
        deploy_block: Optional[int],
    ) -> bool:
        now = int(time.time())
        with self.transaction():
            cur = self.conn.execute(
                """
                INSERT OR IGNORE INTO fair_launches(
                    ico_address, token_address, treasury_address, timelock_address,
                    creator_address, name, symbol, image_uri, token_supply, minimum_raise,
                    status, start_time, end_time, deploy_tx_hash, deploy_block,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    normalize_address(ico_address),
                    normalize_address(token_address),
                    normalize_address(treasury_address),
                    normalize_address(timelock_address) if timelock_address else None,
                    normalize_address(creator_address),
                    name,
                    symbol.upper(),
                    image_uri or "",
                    str(int(token_supply)),
                    str(int(minimum_raise)),
                    STATUS_PENDING,
                    int(start_time),
                    int(end_time),
                    deploy_tx_hash.lower() if deploy_tx_hash else None,
                    deploy_block,
                    now,
                    now,
                ),
            )
        return cur.rowcount == 1

    def list_fair_launches(self, statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        if statuses is None:
            rows = self.conn.execute("SELECT * FROM fair_launches ORDER BY id ASC").fetchall()
        else:
            wanted = list(statuses)
            placeholders = ",".join("?" for _ in wanted)
            rows = self.conn.execute(
                f"SELECT * FROM fair_launches WHERE status IN ({placeholders}) ORDER BY id ASC",
                wanted,
            ).fetchall()
        return [dict(r) for r in rows]

    def update_fair_launch(self, fair_launch_id: int, **fields: Any) -> None:
        if not fields:
            return
        fields["updated_at"] = int(time.time())
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self.transaction():
            self.conn.execute(
                f"UPDATE fair_launches SET {assignments} WHERE id = ?",
                [*fields.values(), fair_launch_id],
            )

    def recompute_commitment_totals(self, fair_launch_id: int) -> Tuple[int, int]:
        rows = self.conn.execute(
            "SELECT amount FROM commitments WHERE fair_launch_id = ?", (fair_launch_id,)
        ).fetchall()
        total = sum(int(r["amount"]) for r in rows)
        return total, len(rows)

    # commitments

    def get_commitment(self, fair_launch_id: int, user_address: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM commitments WHERE fair_launch_id = ? AND user_address = ?",
            (fair_launch_id, user_address),
        ).fetchone()
        return dict(row) if row else None

    def upsert_commitment(
        self,
        *,
        fair_launch_id: int,
        ico_address: str,
        user_address: str,
        amount: int,
        tx_hash: str,
        block_number: int,
        block_time: int,
    ) -> None:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO commitments(
                    fair_launch_id, ico_address, user_address, amount,
                    last_tx_hash, last_block_number, last_block_time
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(fair_launch_id, user_address) DO UPDATE SET
                    amount = excluded.amount,
                    last_tx_hash = excluded.last_tx_hash,
                    last_block_number = excluded.last_block_number,
                    last_block_time = excluded.last_block_time
                WHERE excluded.last_block_number >= COALESCE(commitments.last_block_number, 0)
                """,
                (
                    fair_launch_id,
                    ico_address,
                    user_address,
                    str(int(amount)),
                    tx_hash.lower(),
                    int(block_number),
                    int(block_time),
                ),
            )

    def list_commitments(self, fair_launch_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM commitments WHERE fair_launch_id = ? ORDER BY id ASC",
            (fair_launch_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def set_allocation(self, commitment_id: int, allocation: int) -> None:
        with self.transaction():
            self.conn.execute(
                "UPDATE commitments SET allocation = ? WHERE id = ?",
                (str(int(allocation)), commitment_id),
            )

    def mark_claimed(self, fair_launch_id: int, user_address: str, allocation: int, claimed_at: int) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                UPDATE commitments
                SET has_claimed = 1, claimed_at = ?, allocation = ?
                WHERE fair_launch_id = ? AND user_address = ?
                """,
                (int(claimed_at), str(int(allocation)), fair_launch_id, user_address),
            )
        return cur.rowcount > 0

    def mark_refunded(self, fair_launch_id: int, user_address: str, refunded_at: int) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                UPDATE commitments
                SET has_refunded = 1, refunded_at = ?
                WHERE fair_launch_id = ? AND user_address = ?
                """,
                (int(refunded_at), fair_launch_id, user_address),
            )
        return cur.rowcount > 0
