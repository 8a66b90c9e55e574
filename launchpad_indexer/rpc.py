from typing import Any, Dict, List, Optional

import aiohttp
from eth_abi import decode as abi_decode
from eth_utils import function_signature_to_4byte_selector

from .utils import parse_hex_int


def selector(signature: str) -> str:
    return "0x" + function_signature_to_4byte_selector(signature).hex()


NAME_SELECTOR = selector("name()")
SYMBOL_SELECTOR = selector("symbol()")
TOKEN_URI_SELECTOR = selector("tokenURI()")


class RPCError(RuntimeError):
    pass


class RPCClient:
    def __init__(self, url: str, timeout_sec: int = 12):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        async with self._session.post(self.url, json=payload) as resp:
            if resp.status >= 500 or resp.status == 429:
                raise RPCError(f"{method}: HTTP {resp.status}")
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                raise RPCError(f"{method}: HTTP {resp.status} non-JSON body")
        if not isinstance(data, dict):
            raise RPCError(f"{method}: malformed response")
        if "error" in data:
            raise RPCError(f"{method}: {data['error']}")
        return data.get("result")

    async def get_block_by_number(self, block_number: int) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getBlockByNumber", [hex(block_number), False])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return parse_hex_int(result)

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result

    async def read_string(self, to: str, selector: str) -> str:
        out = await self.eth_call(to, selector)
        if not out or out == "0x":
            raise RPCError(f"empty eth_call result from {to} for {selector}")
        (value,) = abi_decode(["string"], bytes.fromhex(out[2:]))
        return value
