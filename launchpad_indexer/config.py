import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .utils import normalize_address


class ConfigError(ValueError):
    pass


@dataclass
class AppConfig:
    chain_id: int
    http_rpc_url: str
    sqlite_path: str
    token_factory_addr: Optional[str]
    fair_launch_factory_addr: Optional[str]
    start_block: int
    start_blocks: Dict[str, int] = field(default_factory=dict)
    poll_interval_sec: float = 5.0
    confirmations: int = 0
    max_block_span: int = 5000
    max_blocks_per_tick: int = 50000
    max_concurrent_streams: int = 1
    rpc_timeout_sec: int = 12
    rpc_retry_attempts: int = 3
    rpc_retry_delay_sec: float = 2.0
    backfill_default_start_block: int = 0
    metrics_refresh_cycles: int = 12
    unhealthy_error_threshold: int = 5
    enabled: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "info"

    def stream_start_block(self, address: str, event_type: str, default: Optional[int] = None) -> int:
        address = address.lower()
        key = f"{address}:{event_type}"
        if key in self.start_blocks:
            return self.start_blocks[key]
        if address in self.start_blocks:
            return self.start_blocks[address]
        if default is not None:
            return default
        return self.start_block


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _optional_address(raw: Dict[str, Any], key: str) -> Optional[str]:
    value = str(raw.get(key) or "").strip()
    if not value:
        return None
    try:
        return normalize_address(value)
    except ValueError as e:
        raise ConfigError(f"{key} is invalid: {e}") from e


def _parse_start_blocks(raw_value: Any) -> Dict[str, int]:
    if not raw_value:
        return {}
    if not isinstance(raw_value, dict):
        raise ConfigError("START_BLOCKS must be an object")
    out: Dict[str, int] = {}
    for key, value in raw_value.items():
        key = str(key).strip()
        address, _, event_type = key.partition(":")
        try:
            address = normalize_address(address)
        except ValueError as e:
            raise ConfigError(f"START_BLOCKS key {key!r} is invalid: {e}") from e
        block = int(value)
        if block < 0:
            raise ConfigError(f"START_BLOCKS[{key}] must be >= 0")
        out[f"{address}:{event_type}" if event_type else address] = block
    return out


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    http_rpc_url = str(raw.get("HTTP_RPC_URL") or "").strip()
    if not http_rpc_url:
        raise ConfigError("HTTP_RPC_URL is required")
    sqlite_path = str(raw.get("SQLITE_PATH") or "").strip()
    if not sqlite_path:
        raise ConfigError("SQLITE_PATH is required")

    try:
        cfg = AppConfig(
            chain_id=int(raw.get("CHAIN_ID", 97)),
            http_rpc_url=http_rpc_url,
            sqlite_path=sqlite_path,
            token_factory_addr=_optional_address(raw, "TOKEN_FACTORY_ADDR"),
            fair_launch_factory_addr=_optional_address(raw, "FAIR_LAUNCH_FACTORY_ADDR"),
            start_block=int(raw.get("START_BLOCK", 0)),
            start_blocks=_parse_start_blocks(raw.get("START_BLOCKS")),
            poll_interval_sec=float(raw.get("POLL_INTERVAL_SEC", 5)),
            confirmations=int(raw.get("CONFIRMATIONS", 0)),
            max_block_span=int(raw.get("MAX_BLOCK_SPAN", 5000)),
            max_blocks_per_tick=int(raw.get("MAX_BLOCKS_PER_TICK", 50000)),
            max_concurrent_streams=int(raw.get("MAX_CONCURRENT_STREAMS", 1)),
            rpc_timeout_sec=int(raw.get("RPC_TIMEOUT_SEC", 12)),
            rpc_retry_attempts=int(raw.get("RPC_RETRY_ATTEMPTS", 3)),
            rpc_retry_delay_sec=float(raw.get("RPC_RETRY_DELAY_SEC", 2)),
            backfill_default_start_block=int(raw.get("BACKFILL_DEFAULT_START_BLOCK", 0)),
            metrics_refresh_cycles=int(raw.get("METRICS_REFRESH_CYCLES", 12)),
            unhealthy_error_threshold=int(raw.get("UNHEALTHY_ERROR_THRESHOLD", 5)),
            enabled=_parse_bool(raw.get("INDEXER_ENABLED", False)),
            api_host=str(raw.get("API_HOST", "0.0.0.0")),
            api_port=int(raw.get("API_PORT", 8080)),
            log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        )
    except ConfigError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid config value: {e}") from e

    if cfg.start_block < 0:
        raise ConfigError("START_BLOCK must be >= 0")
    if cfg.poll_interval_sec <= 0:
        raise ConfigError("POLL_INTERVAL_SEC must be > 0")
    if cfg.confirmations < 0:
        raise ConfigError("CONFIRMATIONS must be >= 0")
    if cfg.max_block_span <= 0:
        raise ConfigError("MAX_BLOCK_SPAN must be >= 1")
    if cfg.max_blocks_per_tick <= 0:
        raise ConfigError("MAX_BLOCKS_PER_TICK must be >= 1")
    if cfg.max_concurrent_streams <= 0:
        raise ConfigError("MAX_CONCURRENT_STREAMS must be >= 1")
    if cfg.rpc_retry_attempts <= 0:
        raise ConfigError("RPC_RETRY_ATTEMPTS must be >= 1")
    if cfg.metrics_refresh_cycles < 0:
        raise ConfigError("METRICS_REFRESH_CYCLES must be >= 0")
    return cfg


def load_config(path: str) -> AppConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("config root must be an object")
    return parse_config(raw)
