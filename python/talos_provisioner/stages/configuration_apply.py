"""
talos_provisioner/stages/configuration_apply.py

Configuration-Apply stage: pushes a rendered machine configuration document to
a machine. The document comes either inline from the spec or from the status
of a referenced Configuration record.

A record is only up to date when it was applied, the desired document is
valid (rendered, non-empty, free of placeholder content) and the bytes that
would be pushed now match the digest of the bytes pushed last time.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import AsyncExitStack
from typing import Tuple

import yaml

from talos_provisioner.errors import (
    ConfigPatchError,
    PlaceholderInputError,
    RemoteApplyError,
)
from talos_provisioner.machine.client import (
    MachineAPIError,
    MachineClient,
    MachineTransportError,
)
from talos_provisioner.machine.factory import ClientFactory
from talos_provisioner.models.configuration import Configuration, DocumentState
from talos_provisioner.models.configuration_apply import ConfigurationApply
from talos_provisioner.models.machine_config import dump_document
from talos_provisioner.models.resource import utc_now
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.secrets.credentials import CredentialResolver
from talos_provisioner.stages.base import (
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    MachineExternal,
    open_machine_client,
)
from talos_provisioner.stages.configuration import has_placeholder
from talos_provisioner.utils.patches import PatchFormatError, apply_patches

logger = logging.getLogger(__name__)

STAGE = "ConfigurationApply"


def digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def desired_document(
    resource: ConfigurationApply, store: ResourceStore
) -> Tuple[str, bool]:
    """
    The document this record wants applied, and whether it is fit to apply.

    An inline document is valid when non-empty and free of placeholder content.
    A referenced document must additionally be in the Rendered state.
    """
    spec = resource.spec
    if spec.machine_configuration_ref is not None:
        ref = store.get("Configuration", spec.machine_configuration_ref)
        if not isinstance(ref, Configuration):
            return "", False
        document = ref.status.machine_configuration
        rendered = ref.status.document_state == DocumentState.RENDERED
    else:
        document = spec.machine_configuration_input or ""
        rendered = True
    valid = rendered and bool(document.strip()) and not has_placeholder(document)
    return document, valid


def payload(resource: ConfigurationApply, document: str) -> bytes:
    """
    The exact bytes to push: the document itself, or the document with the
    record's patches merged in.

    Raises:
        ConfigPatchError: If the document is not a mapping or a patch is invalid.
    """
    patches = resource.spec.config_patches
    if not patches:
        return document.encode("utf-8")
    try:
        base = yaml.safe_load(document)
        if not isinstance(base, dict):
            raise PatchFormatError("configuration document is not a YAML mapping")
        return dump_document(apply_patches(base, patches)).encode("utf-8")
    except (PatchFormatError, yaml.YAMLError) as exc:
        raise ConfigPatchError(
            str(exc), stage=STAGE, node=resource.spec.node
        ) from exc


class ConfigurationApplyExternal(MachineExternal[ConfigurationApply]):
    def __init__(
        self, client: MachineClient, stack: AsyncExitStack, store: ResourceStore
    ) -> None:
        super().__init__(client, stack)
        self._store = store

    async def observe(self, resource: ConfigurationApply) -> ExternalObservation:
        status = resource.status
        if not status.applied:
            return ExternalObservation()

        document, valid = desired_document(resource, self._store)
        up_to_date = valid and status.last_applied_digest == digest(
            payload(resource, document)
        )
        return ExternalObservation(resource_exists=True, resource_up_to_date=up_to_date)

    async def _apply(self, resource: ConfigurationApply) -> None:
        spec = resource.spec
        document, valid = desired_document(resource, self._store)
        if not valid:
            source = (
                f"configuration '{spec.machine_configuration_ref}'"
                if spec.machine_configuration_ref is not None
                else "inline configuration"
            )
            raise PlaceholderInputError(
                f"{source} is not rendered or still holds placeholder content",
                stage=STAGE,
                node=spec.node,
            )

        data = payload(resource, document)
        try:
            await self.client.apply_configuration(data, spec.apply_mode.wire_name)
        except (MachineAPIError, MachineTransportError) as exc:
            raise RemoteApplyError(
                f"apply-configuration failed: {exc}", stage=STAGE, node=spec.node
            ) from exc

        resource.status.applied = True
        resource.status.last_applied_time = utc_now()
        resource.status.last_applied_digest = digest(data)
        resource.status.last_applied_generation = resource.metadata.generation
        logger.info(
            "Applied configuration to %s (mode %s)", spec.node, spec.apply_mode.value
        )

    async def create(self, resource: ConfigurationApply) -> ExternalCreation:
        await self._apply(resource)
        return ExternalCreation()

    async def update(self, resource: ConfigurationApply) -> ExternalUpdate:
        await self._apply(resource)
        return ExternalUpdate()

    async def delete(self, resource: ConfigurationApply) -> None:
        on_destroy = resource.spec.on_destroy
        if on_destroy is None or not on_destroy.reset:
            return
        logger.warning(
            "Resetting %s (graceful=%s, reboot=%s)",
            resource.spec.node,
            on_destroy.graceful,
            on_destroy.reboot,
        )
        try:
            await self.client.reset(on_destroy.graceful, on_destroy.reboot)
        except (MachineAPIError, MachineTransportError) as exc:
            raise RemoteApplyError(
                f"reset failed: {exc}", stage=STAGE, node=resource.spec.node
            ) from exc
        resource.status.applied = False


class ConfigurationApplyConnector:
    def __init__(
        self,
        store: ResourceStore,
        resolver: CredentialResolver,
        factory: ClientFactory,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._factory = factory

    async def connect(self, resource: ConfigurationApply) -> ConfigurationApplyExternal:
        client, stack = await open_machine_client(
            resource.spec, self._resolver, self._factory, stage=STAGE
        )
        return ConfigurationApplyExternal(client, stack, self._store)
