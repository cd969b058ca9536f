"""
talos_provisioner/stages/secrets.py

Secrets stage: generates the cluster PKI once and publishes it as a credential
artifact. Purely local, and immutable after generation.
"""

from __future__ import annotations

import logging

from talos_provisioner.errors import ConflictError
from talos_provisioner.models.credentials import CredentialArtifact, CredentialBundle
from talos_provisioner.models.resource import utc_now
from talos_provisioner.models.secrets import Secrets
from talos_provisioner.secrets.pki import generate_machine_secrets, issue_admin_client
from talos_provisioner.secrets.talosconfig import build_talos_config
from talos_provisioner.stages.base import (
    ConnectionDetails,
    ExternalCreation,
    ExternalObservation,
    ExternalUpdate,
    LocalExternal,
)

logger = logging.getLogger(__name__)

STAGE = "Secrets"


def connection_details(resource: Secrets) -> ConnectionDetails:
    """The artifact published for a record whose secrets have been generated."""
    status = resource.status
    assert status.machine_secrets is not None
    assert status.client_configuration is not None
    bundle = status.client_configuration
    return CredentialArtifact(
        ca_certificate=bundle.ca_certificate,
        client_certificate=bundle.client_certificate,
        client_key=bundle.client_key,
        talos_config=status.talos_config or "",
        machine_secrets=status.machine_secrets.model_dump_json(),
    ).model_dump(exclude_none=True)


class SecretsExternal(LocalExternal[Secrets]):
    async def observe(self, resource: Secrets) -> ExternalObservation:
        status = resource.status
        if status.machine_secrets is None or status.client_configuration is None:
            return ExternalObservation()
        return ExternalObservation(
            resource_exists=True,
            resource_up_to_date=status.observed_generation
            == resource.metadata.generation,
            connection_details=connection_details(resource),
        )

    async def create(self, resource: Secrets) -> ExternalCreation:
        machine_secrets = generate_machine_secrets()
        admin = issue_admin_client(machine_secrets.os_ca)
        bundle = CredentialBundle(
            ca_certificate=machine_secrets.os_ca.crt,
            client_certificate=admin.crt,
            client_key=admin.key,
        )
        endpoints = [resource.spec.node] if resource.spec.node else []
        talos_config = build_talos_config(resource.name, bundle, endpoints)

        resource.status.machine_secrets = machine_secrets
        resource.status.client_configuration = bundle
        resource.status.talos_config = talos_config.to_yaml()
        resource.status.generated_time = utc_now()
        resource.status.observed_generation = resource.metadata.generation
        logger.info("Generated machine secrets for %s", resource.name)
        return ExternalCreation(connection_details=connection_details(resource))

    async def update(self, resource: Secrets) -> ExternalUpdate:
        raise ConflictError(
            "machine secrets are immutable once generated; delete and recreate "
            "the record to rotate them",
            stage=STAGE,
        )

    async def delete(self, resource: Secrets) -> None:
        logger.info("Discarding machine secrets of %s", resource.name)
        resource.status.machine_secrets = None
        resource.status.client_configuration = None
        resource.status.talos_config = None


class SecretsConnector:
    async def connect(self, resource: Secrets) -> SecretsExternal:
        return SecretsExternal()
