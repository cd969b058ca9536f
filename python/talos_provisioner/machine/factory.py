"""
talos_provisioner/machine/factory.py

Produces machine clients for a target and a credential bundle, choosing the
maintenance or authenticated transport from the bundle.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Protocol

from talos_provisioner.machine.client import AsyncMachineClient, MachineClient
from talos_provisioner.machine.tls import authenticated_context, insecure_context
from talos_provisioner.models.credentials import CredentialBundle
from talos_provisioner.models.target import (
    DEFAULT_MACHINE_PORT,
    MachineTargetParameters,
)

logger = logging.getLogger(__name__)


class ClientFactory(Protocol):
    def connect(
        self, target: MachineTargetParameters, bundle: CredentialBundle
    ) -> AsyncContextManager[MachineClient]:
        ...


class MachineClientFactory:
    def __init__(
        self,
        *,
        default_port: int = DEFAULT_MACHINE_PORT,
        rpc_timeout: float = 30.0,
        scratch_dir: str = "/dev/shm",
    ) -> None:
        self._default_port = default_port
        self._rpc_timeout = rpc_timeout
        self._scratch_dir = scratch_dir

    @asynccontextmanager
    async def connect(
        self, target: MachineTargetParameters, bundle: CredentialBundle
    ) -> AsyncIterator[MachineClient]:
        """
        Yield a client for `target`, closed when the block exits.

        Raises:
            CredentialError: If the bundle is neither insecure nor valid PEM.
        """
        endpoint = target.rpc_endpoint(self._default_port)
        if bundle.insecure:
            logger.debug("Using maintenance transport for %s", endpoint)
            context = insecure_context()
            server_hostname = None
        else:
            context = await authenticated_context(
                bundle, scratch_dir=self._scratch_dir
            )
            server_hostname = target.node

        async with AsyncMachineClient(
            endpoint,
            context,
            server_hostname=server_hostname,
            timeout=self._rpc_timeout,
        ) as client:
            yield client
