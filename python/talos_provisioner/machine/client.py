"""
talos_provisioner/machine/client.py

An asynchronous client for the machine management API. Each call is a JSON
POST to https://<endpoint>/machine.MachineService/<Method>.

A client owns one aiohttp session restricted to a single connection. It is
meant to live for one reconciliation pass and is closed on every exit path.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import ssl
from typing import Any, Dict, Optional, Protocol, Type

import aiohttp

from talos_provisioner.models.validator import validate_type

logger = logging.getLogger(__name__)

SERVICE_PATH = "machine.MachineService"


class MachineAPIError(Exception):
    """The machine answered and refused the request."""

    def __init__(self, method: str, status: int, body: str) -> None:
        self.method = method
        self.status = status
        self.body = body
        super().__init__(f"{method} refused with HTTP {status}: {body[:200]}")


class MachineTransportError(Exception):
    """The request could not be completed; whether the machine acted is unknown."""


class MachineClient(Protocol):
    async def apply_configuration(self, data: bytes, mode: str) -> None:
        ...

    async def bootstrap(self) -> None:
        ...

    async def kubeconfig(self) -> bytes:
        ...

    async def service_state(self, service_id: str) -> Optional[str]:
        ...

    async def reset(self, graceful: bool, reboot: bool) -> None:
        ...


class AsyncMachineClient:
    """Client for one machine endpoint."""

    def __init__(
        self,
        endpoint: str,
        ssl_context: ssl.SSLContext,
        *,
        server_hostname: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        """
        Args:
            endpoint (str): "host:port" of the machine API.
            ssl_context (ssl.SSLContext): Context from machine.tls.
            server_hostname (Optional[str]): Identity the server certificate
                must match. None for maintenance mode.
            timeout (float): Total time budget of each call, in seconds.
        """
        self._endpoint = endpoint
        self._ssl_context = ssl_context
        self._server_hostname = server_hostname
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> AsyncMachineClient:
        connector = aiohttp.TCPConnector(limit=1, ssl=self._ssl_context)
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self._timeout),
        )
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST `payload` to `method` and return the decoded JSON answer.

        Raises:
            MachineAPIError: On a non-2xx answer.
            MachineTransportError: On connection failures, timeouts or an
                undecodable answer.
        """
        if self._session is None:
            raise RuntimeError("AsyncMachineClient used outside its context.")

        url = f"https://{self._endpoint}/{SERVICE_PATH}/{method}"
        logger.debug("Calling %s on %s", method, self._endpoint)
        try:
            async with self._session.post(
                url, json=payload, server_hostname=self._server_hostname
            ) as resp:
                body = await resp.text()
                if not 200 <= resp.status < 300:
                    raise MachineAPIError(method, resp.status, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise MachineTransportError(
                f"{method} on {self._endpoint} failed: {exc!r}"
            ) from exc

        if not body.strip():
            return {}
        try:
            return validate_type(json.loads(body), Dict[str, Any], what=method)
        except ValueError as exc:
            raise MachineTransportError(
                f"{method} on {self._endpoint} returned an unreadable answer"
            ) from exc

    async def apply_configuration(self, data: bytes, mode: str) -> None:
        await self._call(
            "ApplyConfiguration",
            {"data": base64.b64encode(data).decode("ascii"), "mode": mode},
        )

    async def bootstrap(self) -> None:
        await self._call("Bootstrap", {})

    async def kubeconfig(self) -> bytes:
        answer = await self._call("Kubeconfig", {})
        encoded = answer.get("kubeconfig")
        if not isinstance(encoded, str):
            raise MachineTransportError("Kubeconfig answer carries no kubeconfig")
        return base64.b64decode(encoded)

    async def service_state(self, service_id: str) -> Optional[str]:
        """State of a system service (e.g. "Running"), or None if not listed."""
        answer = await self._call("ServiceList", {})
        for service in answer.get("services", []):
            if isinstance(service, dict) and service.get("id") == service_id:
                state = service.get("state")
                return str(state) if state is not None else None
        return None

    async def reset(self, graceful: bool, reboot: bool) -> None:
        await self._call("Reset", {"graceful": graceful, "reboot": reboot})
