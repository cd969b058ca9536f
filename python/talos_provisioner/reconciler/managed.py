"""
talos_provisioner/reconciler/managed.py

One reconciliation pass over one record:

    connect -> observe -> delete | create | update | nothing
            -> publish connection details -> write status and conditions

The stage works on a copy of the record. Status is written back only after
the pass succeeds, so a failing Create or Update leaves the stored status as
it was; only the Synced condition records the error. The external client is
disconnected on every exit path, including timeout and cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from talos_provisioner.errors import ProvisionerError
from talos_provisioner.models.resource import (
    ManagedResource,
    available,
    deleting,
    reconcile_error,
    reconcile_success,
    unavailable,
)
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.stages.base import (
    ConnectionDetails,
    Connector,
    ExternalClient,
)

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"
    GONE = "gone"


class Result(BaseModel):
    outcome: Outcome
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.outcome in (Outcome.TRANSIENT_ERROR, Outcome.FATAL_ERROR)


class ManagedReconciler:
    def __init__(
        self,
        kind: str,
        connector: Connector[Any],
        store: ResourceStore,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Args:
            kind (str): Resource kind handled by this reconciler.
            connector (Connector): The stage's connector.
            store (ResourceStore): Source of records and sink for status.
            timeout (Optional[float]): Upper bound for one pass, in seconds.
        """
        self.kind = kind
        self._connector = connector
        self._store = store
        self._timeout = timeout

    async def reconcile(self, name: str) -> Result:
        """Run one pass over record `name` and classify the outcome."""
        try:
            return await asyncio.wait_for(self._reconcile(name), self._timeout)
        except asyncio.TimeoutError:
            err = ProvisionerError(
                f"reconciliation did not finish within {self._timeout}s",
                stage=self.kind,
            )
            return await self._failed(name, err)
        except ProvisionerError as err:
            return await self._failed(name, err)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            logger.exception("Unexpected failure reconciling %s/%s", self.kind, name)
            return await self._failed(name, err)

    async def _reconcile(self, name: str) -> Result:
        resource = self._store.get(self.kind, name)
        if resource is None:
            return Result(outcome=Outcome.GONE)

        try:
            external: ExternalClient[Any] = await self._connector.connect(resource)
        except ProvisionerError as err:
            if not resource.metadata.deletion_requested:
                raise
            # A deleted record never waits on unresolvable credentials.
            logger.warning(
                "Removing %s/%s without external cleanup: %s",
                self.kind,
                resource.name,
                err,
            )
            return await self._finish_deletion(resource)
        try:
            return await self._reconcile_connected(resource, external)
        finally:
            await external.disconnect()

    async def _finish_deletion(self, resource: ManagedResource) -> Result:
        await self._store.delete_artifact(resource.connection_secret_name)
        await self._store.remove(self.kind, resource.name)
        return Result(outcome=Outcome.GONE)

    async def _reconcile_connected(
        self, resource: ManagedResource, external: ExternalClient[Any]
    ) -> Result:
        observation = await external.observe(resource)
        details: ConnectionDetails = dict(observation.connection_details)

        if resource.metadata.deletion_requested:
            resource.set_conditions(deleting())
            await self._store.write_status(resource)
            if observation.resource_exists:
                logger.info("Deleting %s/%s", self.kind, resource.name)
                await external.delete(resource)
            return await self._finish_deletion(resource)

        if not observation.resource_exists:
            logger.info("Creating %s/%s", self.kind, resource.name)
            creation = await external.create(resource)
            details.update(creation.connection_details)
        elif not observation.resource_up_to_date:
            logger.info("Updating %s/%s", self.kind, resource.name)
            update = await external.update(resource)
            details.update(update.connection_details)
        else:
            logger.debug("%s/%s is up to date", self.kind, resource.name)

        if details:
            await self._store.publish_artifact(resource.connection_secret_name, details)
        resource.set_conditions(available(), reconcile_success())
        await self._store.write_status(resource)
        return Result(outcome=Outcome.SUCCESS)

    async def _failed(self, name: str, err: BaseException) -> Result:
        retryable = not isinstance(err, ProvisionerError) or err.retryable
        if retryable:
            logger.warning("Reconciling %s/%s failed: %s", self.kind, name, err)
        else:
            logger.error(
                "Reconciling %s/%s failed and needs a desired-state change: %s",
                self.kind,
                name,
                err,
            )

        current = self._store.get(self.kind, name)
        if current is not None:
            current.set_conditions(reconcile_error(err))
            if not current.is_ready():
                current.set_conditions(unavailable())
            await self._store.write_status(current)

        return Result(
            outcome=Outcome.TRANSIENT_ERROR if retryable else Outcome.FATAL_ERROR,
            message=str(err),
        )
