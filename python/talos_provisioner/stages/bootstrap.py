"""
talos_provisioner/stages/bootstrap.py

Bootstrap stage: issues the single-fire bootstrap RPC to one control-plane
machine.

The bootstrap RPC has no idempotency key, so the stage records an intent in
the store before sending it:

 - a definitive refusal from the machine clears the intent
 - a transport failure, timeout or cancellation keeps it
 - while an intent is held without `bootstrapped`, Observe asks the machine
   for the etcd service state before anything is re-sent. Running etcd means
   the earlier RPC took effect; etcd still starting means the outcome is not
   known yet; anything else means it did not take effect and the intent is
   dropped.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import Awaitable, Callable

from talos_provisioner.errors import (
    AmbiguousBootstrapError,
    DependencyNotReadyError,
    RemoteBootstrapError,
)
from talos_provisioner.machine.client import (
    MachineAPIError,
    MachineClient,
    MachineTransportError,
)
from talos_provisioner.machine.factory import ClientFactory
from talos_provisioner.models.bootstrap import Bootstrap
from talos_provisioner.models.configuration_apply import ConfigurationApply
from talos_provisioner.models.resource import ManagedResource, utc_now
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.secrets.credentials import CredentialResolver
from talos_provisioner.stages.base import (
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    MachineExternal,
    open_machine_client,
)

logger = logging.getLogger(__name__)

STAGE = "Bootstrap"

ETCD_SERVICE = "etcd"
ETCD_RUNNING = "Running"
ETCD_PENDING = frozenset({"Starting", "Preparing", "Waiting"})

StatusWriter = Callable[[ManagedResource], Awaitable[bool]]


class BootstrapExternal(MachineExternal[Bootstrap]):
    def __init__(
        self,
        client: MachineClient,
        stack: AsyncExitStack,
        store: ResourceStore,
        write_status: StatusWriter,
    ) -> None:
        super().__init__(client, stack)
        self._store = store
        self._write_status = write_status

    async def observe(self, resource: Bootstrap) -> ExternalObservation:
        status = resource.status
        if status.bootstrapped and status.bootstrap_time is not None:
            return ExternalObservation(resource_exists=True, resource_up_to_date=True)
        if status.intent_issued_time is None:
            return ExternalObservation()
        if resource.metadata.deletion_requested:
            return ExternalObservation(resource_exists=True)

        node = resource.spec.node
        try:
            state = await self.client.service_state(ETCD_SERVICE)
        except (MachineAPIError, MachineTransportError) as exc:
            raise AmbiguousBootstrapError(
                f"bootstrap was issued at {status.intent_issued_time.isoformat()} "
                f"and its outcome cannot be confirmed: {exc}",
                stage=STAGE,
                node=node,
            ) from exc

        if state == ETCD_RUNNING:
            logger.info("Confirmed earlier bootstrap of %s from etcd state", node)
            status.bootstrapped = True
            status.bootstrap_time = utc_now()
            status.intent_issued_time = None
            return ExternalObservation(resource_exists=True, resource_up_to_date=True)
        if state in ETCD_PENDING:
            raise AmbiguousBootstrapError(
                f"etcd is {state}; waiting before deciding on bootstrap. If the "
                "bootstrap never reached the machine, delete and recreate this "
                "record to issue it again",
                stage=STAGE,
                node=node,
            )

        logger.warning(
            "Earlier bootstrap of %s did not take effect (etcd %s)", node, state
        )
        status.intent_issued_time = None
        return ExternalObservation()

    def _check_applied(self, resource: Bootstrap) -> None:
        ref = resource.spec.configuration_apply_ref
        if ref is None:
            return
        applied = self._store.get("ConfigurationApply", ref)
        if not isinstance(applied, ConfigurationApply) or not applied.status.applied:
            raise DependencyNotReadyError(
                f"configuration apply '{ref}' has not been applied yet",
                stage=STAGE,
                node=resource.spec.node,
            )

    async def create(self, resource: Bootstrap) -> ExternalCreation:
        self._check_applied(resource)
        node = resource.spec.node

        resource.status.intent_issued_time = utc_now()
        await self._write_status(resource)
        logger.info("Bootstrapping cluster on %s", node)
        try:
            await self.client.bootstrap()
        except MachineAPIError as exc:
            resource.status.intent_issued_time = None
            await self._write_status(resource)
            raise RemoteBootstrapError(
                f"bootstrap refused: {exc}", stage=STAGE, node=node
            ) from exc
        except MachineTransportError as exc:
            raise RemoteBootstrapError(
                f"bootstrap outcome unknown: {exc}", stage=STAGE, node=node
            ) from exc

        resource.status.bootstrapped = True
        resource.status.bootstrap_time = utc_now()
        resource.status.intent_issued_time = None
        return ExternalCreation()

    async def update(self, resource: Bootstrap) -> ExternalUpdate:
        logger.info(
            "Bootstrap of %s is already done; desired-state change ignored",
            resource.spec.node,
        )
        return ExternalUpdate()

    async def delete(self, resource: Bootstrap) -> None:
        logger.info(
            "Forgetting bootstrap record %s; the cluster on %s is left as is",
            resource.name,
            resource.spec.node,
        )


class BootstrapConnector:
    def __init__(
        self,
        store: ResourceStore,
        resolver: CredentialResolver,
        factory: ClientFactory,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._factory = factory

    async def connect(self, resource: Bootstrap) -> BootstrapExternal:
        client, stack = await open_machine_client(
            resource.spec, self._resolver, self._factory, stage=STAGE
        )
        return BootstrapExternal(client, stack, self._store, self._store.write_status)
