"""
talos_provisioner/stages/base.py

The contract every stage implements for the reconciliation driver:

 - a Connector turns a record into an ExternalClient for one pass
 - the ExternalClient answers observe / create / update / delete for that
   record and is always disconnected at the end of the pass

Stages that talk to a machine derive from MachineExternal, which holds the
machine client opened by `connect` and closes it on `disconnect`.
"""

from __future__ import annotations

from contextlib import AsyncExitStack
from typing import Dict, Generic, Optional, Protocol, Tuple, TypeVar

from pydantic import BaseModel, Field

from talos_provisioner.machine.client import MachineClient
from talos_provisioner.machine.factory import ClientFactory
from talos_provisioner.models.resource import ManagedResource
from talos_provisioner.models.target import MachineTargetParameters
from talos_provisioner.secrets.credentials import CredentialResolver, credentials_for

R = TypeVar("R", bound=ManagedResource)
R_contra = TypeVar("R_contra", bound=ManagedResource, contravariant=True)

ConnectionDetails = Dict[str, str]


class ExternalObservation(BaseModel):
    """
    Attributes:
        resource_exists: The external resource (or local artifact) exists.
        resource_up_to_date: It matches the record's desired state.
        connection_details: Details to publish under the record's artifact name.
    """

    resource_exists: bool = False
    resource_up_to_date: bool = False
    connection_details: ConnectionDetails = Field(default_factory=dict)


class ExternalCreation(BaseModel):
    connection_details: ConnectionDetails = Field(default_factory=dict)


class ExternalUpdate(BaseModel):
    connection_details: ConnectionDetails = Field(default_factory=dict)


class ExternalClient(Protocol[R_contra]):
    async def observe(self, resource: R_contra) -> ExternalObservation:
        ...

    async def create(self, resource: R_contra) -> ExternalCreation:
        ...

    async def update(self, resource: R_contra) -> ExternalUpdate:
        ...

    async def delete(self, resource: R_contra) -> None:
        ...

    async def disconnect(self) -> None:
        ...


class Connector(Protocol[R]):
    async def connect(self, resource: R) -> ExternalClient[R]:
        ...


class LocalExternal(Generic[R]):
    """Base for stages that never leave the process."""

    async def disconnect(self) -> None:
        return None


class MachineExternal(Generic[R]):
    """Base for stages holding a machine client for the duration of one pass."""

    def __init__(self, client: MachineClient, stack: AsyncExitStack) -> None:
        self.client = client
        self._stack = stack

    async def disconnect(self) -> None:
        await self._stack.aclose()


async def open_machine_client(
    params: MachineTargetParameters,
    resolver: CredentialResolver,
    factory: ClientFactory,
    *,
    stage: Optional[str] = None,
) -> Tuple[MachineClient, AsyncExitStack]:
    """
    Resolve the credentials of `params` and open a machine client.

    Returns the client and the exit stack that closes it. Nothing is left open
    if resolution or the client construction fails.
    """
    bundle = await credentials_for(params, resolver, stage=stage)
    stack = AsyncExitStack()
    try:
        client = await stack.enter_async_context(factory.connect(params, bundle))
    except BaseException:
        await stack.aclose()
        raise
    return client, stack
