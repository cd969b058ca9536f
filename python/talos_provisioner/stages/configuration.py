"""
talos_provisioner/stages/configuration.py

Configuration stage: renders the machine configuration document for one node
from the Secrets artifact it references. Purely local; the rendered document
is stored in the record's status together with an explicit document state.
"""

from __future__ import annotations

import base64
import logging
from typing import Dict, Optional

from pydantic import ValidationError

from talos_provisioner.errors import (
    ConfigPatchError,
    CredentialError,
    DependencyNotReadyError,
)
from talos_provisioner.models.configuration import (
    Configuration,
    ConfigurationParameters,
    DocumentState,
    MachineType,
    RenderDefaults,
)
from talos_provisioner.models.machine_config import (
    ClusterNetworkSpec,
    ClusterSpec,
    ControlPlaneSpec,
    EtcdSpec,
    InstallSpec,
    KubeletSpec,
    MachineConfigurationDocument,
    MachineSpec,
    PemPair,
    ServiceAccountSpec,
    dump_document,
)
from talos_provisioner.models.resource import utc_now
from talos_provisioner.models.secrets import CertAndKey, MachineSecretsData
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.stages.base import (
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    LocalExternal,
)
from talos_provisioner.utils.patches import PatchFormatError, apply_patches

logger = logging.getLogger(__name__)

STAGE = "Configuration"

# Marks a document that was never filled in. Its presence makes a document
# unfit to apply.
PLACEHOLDER_MARKER = "# This should be populated"


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _pair(material: CertAndKey, *, with_key: bool) -> PemPair:
    return PemPair(
        crt=_b64(material.crt),
        key=_b64(material.key) if with_key and material.key else None,
    )


def build_document(
    params: ConfigurationParameters,
    secrets: MachineSecretsData,
    defaults: RenderDefaults,
) -> MachineConfigurationDocument:
    """Assemble the typed document, applying `defaults` for empty fields."""
    controlplane = params.machine_type == MachineType.CONTROLPLANE
    talos_version = params.talos_version or defaults.talos_version
    kubernetes_version = params.kubernetes_version or defaults.kubernetes_version

    machine = MachineSpec(
        type=params.machine_type.value,
        token=secrets.trustd_token,
        ca=_pair(secrets.os_ca, with_key=controlplane),
        cert_sans=[params.node],
        kubelet=KubeletSpec(
            image=defaults.kubelet_image.format(kubernetes_version=kubernetes_version)
        ),
        install=InstallSpec(
            disk=params.install_disk or defaults.install_disk,
            image=defaults.installer_image.format(talos_version=talos_version),
        ),
    )
    cluster = ClusterSpec(
        id=secrets.cluster.id,
        secret=secrets.cluster.secret,
        control_plane=ControlPlaneSpec(
            endpoint=params.cluster_endpoint or defaults.cluster_endpoint
        ),
        cluster_name=params.cluster_name or defaults.cluster_name,
        network=ClusterNetworkSpec(
            dns_domain=defaults.dns_domain,
            pod_subnets=list(defaults.pod_subnets),
            service_subnets=list(defaults.service_subnets),
        ),
        token=secrets.bootstrap_token,
        ca=_pair(secrets.k8s_ca, with_key=controlplane),
    )
    if controlplane:
        cluster.secretbox_encryption_secret = secrets.secretbox_encryption_secret
        cluster.aggregator_ca = _pair(secrets.k8s_aggregator_ca, with_key=True)
        cluster.service_account = ServiceAccountSpec(
            key=_b64(secrets.k8s_service_account_key)
        )
        cluster.etcd = EtcdSpec(ca=_pair(secrets.etcd_ca, with_key=True))
    return MachineConfigurationDocument(machine=machine, cluster=cluster)


def render_configuration(
    params: ConfigurationParameters,
    secrets: MachineSecretsData,
    defaults: Optional[RenderDefaults] = None,
) -> str:
    """
    Render the YAML document for `params`. Identical inputs give identical
    bytes.

    Raises:
        ConfigPatchError: If a config patch is not a YAML mapping.
    """
    document = build_document(params, secrets, defaults or RenderDefaults())
    try:
        data = apply_patches(document.to_dict(), params.config_patches)
    except PatchFormatError as exc:
        raise ConfigPatchError(str(exc), stage=STAGE, node=params.node) from exc
    return dump_document(data)


def has_placeholder(document: str) -> bool:
    return PLACEHOLDER_MARKER in document


def machine_secrets_from_artifact(
    details: Optional[Dict[str, str]], artifact_name: str
) -> MachineSecretsData:
    """
    The machine secrets inside a published Secrets artifact.

    Raises:
        DependencyNotReadyError: If the artifact is not published (yet).
        CredentialError: If it is published but unreadable.
    """
    if details is None or not details.get("machine_secrets"):
        raise DependencyNotReadyError(
            f"machine secrets artifact '{artifact_name}' is not published yet",
            stage=STAGE,
        )
    try:
        return MachineSecretsData.model_validate_json(details["machine_secrets"])
    except ValidationError as exc:
        raise CredentialError(
            f"machine secrets artifact '{artifact_name}' is malformed",
            stage=STAGE,
        ) from exc


def load_machine_secrets(store: ResourceStore, artifact_name: str) -> MachineSecretsData:
    return machine_secrets_from_artifact(store.get_artifact(artifact_name), artifact_name)


class ConfigurationExternal(LocalExternal[Configuration]):
    def __init__(self, store: ResourceStore, defaults: RenderDefaults) -> None:
        self._store = store
        self._defaults = defaults

    async def observe(self, resource: Configuration) -> ExternalObservation:
        status = resource.status
        exists = status.document_state == DocumentState.RENDERED and bool(
            status.machine_configuration
        )
        return ExternalObservation(
            resource_exists=exists,
            resource_up_to_date=exists
            and status.observed_generation == resource.metadata.generation,
        )

    async def _render(self, resource: Configuration) -> None:
        secrets = load_machine_secrets(self._store, resource.spec.machine_secrets_ref)
        document = render_configuration(resource.spec, secrets, self._defaults)
        resource.status.machine_configuration = document
        resource.status.document_state = DocumentState.RENDERED
        resource.status.generated_time = utc_now()
        resource.status.observed_generation = resource.metadata.generation
        logger.info(
            "Rendered %s configuration for %s (generation %d)",
            resource.spec.machine_type.value,
            resource.spec.node,
            resource.metadata.generation,
        )

    async def create(self, resource: Configuration) -> ExternalCreation:
        await self._render(resource)
        return ExternalCreation()

    async def update(self, resource: Configuration) -> ExternalUpdate:
        await self._render(resource)
        return ExternalUpdate()

    async def delete(self, resource: Configuration) -> None:
        resource.status.machine_configuration = ""
        resource.status.document_state = DocumentState.UNSET


class ConfigurationConnector:
    def __init__(
        self, store: ResourceStore, defaults: Optional[RenderDefaults] = None
    ) -> None:
        self._store = store
        self._defaults = defaults or RenderDefaults()

    async def connect(self, resource: Configuration) -> ConfigurationExternal:
        return ConfigurationExternal(self._store, self._defaults)
