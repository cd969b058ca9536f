"""
talos_provisioner/stages/kubeconfig.py

Kubeconfig stage: once the referenced Bootstrap record reports success,
retrieves the cluster admin kubeconfig from the machine and shapes it into a
KubernetesClientConfiguration. Retrieval is a read and safe to repeat.
"""

from __future__ import annotations

import base64
import binascii
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict

import yaml

from talos_provisioner.errors import DependencyNotReadyError, RemoteRetrievalError
from talos_provisioner.machine.client import (
    MachineAPIError,
    MachineClient,
    MachineTransportError,
)
from talos_provisioner.machine.factory import ClientFactory
from talos_provisioner.models.bootstrap import Bootstrap
from talos_provisioner.models.kubeconfig import (
    Kubeconfig,
    KubernetesClientConfiguration,
)
from talos_provisioner.models.resource import utc_now
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.secrets.credentials import CredentialResolver
from talos_provisioner.stages.base import (
    ConnectionDetails,
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    MachineExternal,
    open_machine_client,
)
from talos_provisioner.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

STAGE = "Kubeconfig"


def parse_kubeconfig(raw: bytes) -> KubernetesClientConfiguration:
    """
    Extract server, CA and client credentials (decoded to PEM) from the first
    cluster and user of a kubeconfig.

    Raises:
        ValueError: If the document lacks any of them.
    """
    try:
        doc = yaml.safe_load(raw.decode("utf-8"))
        cluster: Dict[str, Any] = doc["clusters"][0]["cluster"]
        user: Dict[str, Any] = doc["users"][0]["user"]

        def decode(section: Dict[str, Any], key: str) -> str:
            return base64.b64decode(section[key], validate=True).decode("utf-8")

        return KubernetesClientConfiguration(
            host=str(cluster["server"]),
            ca_certificate=decode(cluster, "certificate-authority-data"),
            client_certificate=decode(user, "client-certificate-data"),
            client_key=decode(user, "client-key-data"),
        )
    except (
        yaml.YAMLError,
        UnicodeDecodeError,
        binascii.Error,
        KeyError,
        IndexError,
        TypeError,
    ) as exc:
        raise ValueError(f"kubeconfig is incomplete: {exc!r}") from exc


def connection_details(resource: Kubeconfig) -> ConnectionDetails:
    config = resource.status.kubernetes_client_configuration
    assert config is not None
    return {
        "kubeconfig": resource.status.kubeconfig_raw or "",
        "host": config.host,
        "ca_certificate": config.ca_certificate,
        "client_certificate": config.client_certificate,
        "client_key": config.client_key,
    }


class KubeconfigExternal(MachineExternal[Kubeconfig]):
    def __init__(
        self, client: MachineClient, stack: AsyncExitStack, store: ResourceStore
    ) -> None:
        super().__init__(client, stack)
        self._store = store

    async def observe(self, resource: Kubeconfig) -> ExternalObservation:
        if resource.status.kubernetes_client_configuration is None:
            return ExternalObservation()
        return ExternalObservation(
            resource_exists=True,
            resource_up_to_date=resource.status.observed_generation
            == resource.metadata.generation,
            connection_details=connection_details(resource),
        )

    def _check_bootstrapped(self, resource: Kubeconfig) -> None:
        ref = resource.spec.bootstrap_ref
        if ref is None:
            return
        bootstrap = self._store.get("Bootstrap", ref)
        if not isinstance(bootstrap, Bootstrap) or not bootstrap.status.bootstrapped:
            raise DependencyNotReadyError(
                f"bootstrap '{ref}' has not completed yet",
                stage=STAGE,
                node=resource.spec.node,
            )

    @async_retry(retries=3, delay=1.0, backoff=2.0, retry_on=(MachineTransportError,))
    async def _fetch(self) -> bytes:
        return await self.client.kubeconfig()

    async def _retrieve(self, resource: Kubeconfig) -> ConnectionDetails:
        self._check_bootstrapped(resource)
        node = resource.spec.node
        try:
            raw = await self._fetch()
        except (MachineAPIError, MachineTransportError) as exc:
            raise RemoteRetrievalError(
                f"kubeconfig retrieval failed: {exc}", stage=STAGE, node=node
            ) from exc
        try:
            config = parse_kubeconfig(raw)
        except ValueError as exc:
            raise RemoteRetrievalError(str(exc), stage=STAGE, node=node) from exc

        resource.status.kubernetes_client_configuration = config
        resource.status.kubeconfig_raw = raw.decode("utf-8")
        resource.status.retrieved_time = utc_now()
        resource.status.observed_generation = resource.metadata.generation
        logger.info("Retrieved kubeconfig for %s from %s", config.host, node)
        return connection_details(resource)

    async def create(self, resource: Kubeconfig) -> ExternalCreation:
        return ExternalCreation(connection_details=await self._retrieve(resource))

    async def update(self, resource: Kubeconfig) -> ExternalUpdate:
        return ExternalUpdate(connection_details=await self._retrieve(resource))

    async def delete(self, resource: Kubeconfig) -> None:
        resource.status.kubernetes_client_configuration = None
        resource.status.kubeconfig_raw = None


class KubeconfigConnector:
    def __init__(
        self,
        store: ResourceStore,
        resolver: CredentialResolver,
        factory: ClientFactory,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._factory = factory

    async def connect(self, resource: Kubeconfig) -> KubeconfigExternal:
        client, stack = await open_machine_client(
            resource.spec, self._resolver, self._factory, stage=STAGE
        )
        return KubeconfigExternal(client, stack, self._store)
