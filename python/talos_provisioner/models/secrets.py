"""
talos_provisioner/models/secrets.py

Pydantic models for the Secrets stage:
 - MachineSecretsData: cluster-wide PKI material and tokens
 - SecretsParameters / SecretsObservation
 - Secrets: the managed record
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from talos_provisioner.models.credentials import CredentialBundle
from talos_provisioner.models.resource import ManagedResource


class CertAndKey(BaseModel):
    """A PEM certificate with its PEM private key (key may be empty)."""

    crt: str
    key: str = ""


class ClusterSecrets(BaseModel):
    id: str
    secret: str


class MachineSecretsData(BaseModel):
    """
    Everything generated once per cluster lifetime. Never regenerated: a new
    bundle would invalidate every machine configuration already applied.
    """

    cluster: ClusterSecrets
    bootstrap_token: str
    trustd_token: str
    secretbox_encryption_secret: str
    os_ca: CertAndKey
    k8s_ca: CertAndKey
    k8s_aggregator_ca: CertAndKey
    etcd_ca: CertAndKey
    k8s_service_account_key: str


class SecretsParameters(BaseModel):
    """
    Attributes:
        node: Optional node written into the client-config endpoints.
        talos_version: Optional OS version the secrets are generated for.
    """

    node: Optional[str] = None
    talos_version: Optional[str] = None


class SecretsObservation(BaseModel):
    machine_secrets: Optional[MachineSecretsData] = None
    client_configuration: Optional[CredentialBundle] = None
    talos_config: Optional[str] = None
    generated_time: Optional[datetime] = None
    observed_generation: Optional[int] = None


class Secrets(ManagedResource):
    """Generates and holds the machine secrets of one cluster."""

    kind: Literal["Secrets"] = "Secrets"
    spec: SecretsParameters = Field(default_factory=SecretsParameters)
    status: SecretsObservation = Field(default_factory=SecretsObservation)
