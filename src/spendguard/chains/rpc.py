"""JSON-RPC over a shared httpx client."""

import logging
from typing import Any

import httpx

from spendguard.chains.base import ChainError

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 caller bound to one endpoint."""

    def __init__(self, http: httpx.AsyncClient, url: str):
        self.http = http
        self.url = url
        self._next_id = 1

    async def call(self, method: str, params: list) -> Any:
        """Invoke ``method`` and return its ``result``.

        Raises:
            ChainError: On transport failure, non-200 status or an RPC error object
        """
        request_id = self._next_id
        self._next_id += 1

        try:
            response = await self.http.post(
                self.url,
                json={
                    "jsonrpc": "2.0",
                    "method": method,
                    "params": params,
                    "id": request_id,
                },
            )
        except httpx.HTTPError as e:
            raise ChainError(f"{method} failed: {e}") from e

        if response.status_code != 200:
            raise ChainError(f"{method} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ChainError(f"{method} returned invalid JSON") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RpcError(method, message)

        return data.get("result")


class RpcError(ChainError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, message: Any):
        super().__init__(f"{method} error: {message}")
        self.method = method
        self.rpc_message = str(message)
