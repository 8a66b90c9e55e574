import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from .store import Storage
from .utils import decimal_to_str

logger = logging.getLogger(__name__)

DAY_SEC = 24 * 3600
WEEK_SEC = 7 * DAY_SEC


def percent_change(current: Decimal, previous: Optional[Decimal]) -> float:
    if previous is None or previous <= 0:
        return 0.0
    return float(round((current - previous) / previous * 100, 4))


def compute_token_metrics(storage: Storage, token: Dict[str, Any], now: int) -> Dict[str, Any]:
    token_id = token["id"]
    volume = sum(int(t["native_amount"]) for t in storage.trades_since(token_id, now - DAY_SEC))

    price = Decimal(0)
    latest = storage.latest_trade(token_id)
    if latest:
        price = Decimal(latest["price"])
    else:
        candle = storage.latest_candle(token_id, 60)
        if candle:
            price = Decimal(candle["close"])

    def close_at(ts: int) -> Optional[Decimal]:
        candle = storage.latest_candle(token_id, 3600, at_or_before=ts)
        return Decimal(candle["close"]) if candle else None

    return {
        "price": decimal_to_str(price, 18),
        "volume_24h": str(volume),
        "change_24h": percent_change(price, close_at(now - DAY_SEC)),
        "change_7d": percent_change(price, close_at(now - WEEK_SEC)),
    }


def refresh_metrics(storage: Storage, now: Optional[int] = None) -> int:
    now = int(time.time()) if now is None else now
    tokens = storage.list_tokens(on_chain_only=True)
    for token in tokens:
        metrics = compute_token_metrics(storage, token, now)
        storage.update_token_metrics(token["id"], **metrics)
    logger.info("refreshed metrics for %d tokens", len(tokens))
    return len(tokens)
