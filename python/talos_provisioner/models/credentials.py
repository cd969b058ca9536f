"""
talos_provisioner/models/credentials.py

Defines the credential bundle used to reach a machine's RPC endpoint and the
artifact the Secrets stage publishes for downstream stages and operators.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

INSECURE = "insecure"


class CredentialBundle(BaseModel):
    """
    CA certificate, client certificate and client key, each PEM-encoded, or
    the literal "insecure" to reach a machine still in maintenance mode.

    Both snake_case and camelCase keys are accepted, since bundles come from
    operator manifests as well as from published artifacts.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    ca_certificate: str = Field(alias="caCertificate")
    client_certificate: str = Field(alias="clientCertificate")
    client_key: str = Field(default="", alias="clientKey")

    @property
    def insecure(self) -> bool:
        """True when the bundle asks for an unauthenticated maintenance channel."""
        return INSECURE in (self.client_certificate, self.ca_certificate)

    @classmethod
    def maintenance(cls) -> CredentialBundle:
        """Bundle for a freshly imaged machine that has no certificates yet."""
        return cls(
            ca_certificate=INSECURE, client_certificate=INSECURE, client_key=INSECURE
        )


class CredentialArtifact(BaseModel):
    """
    The named hand-off bundle published by the Secrets stage.

    Attributes:
        ca_certificate: PEM CA certificate of the machine API.
        client_certificate: PEM admin client certificate.
        client_key: PEM admin client key.
        talos_config: Serialized client-config document (YAML).
        machine_secrets: JSON of the full machine secrets bundle, if published.
    """

    ca_certificate: str
    client_certificate: str
    client_key: str
    talos_config: str
    machine_secrets: Optional[str] = None

    def bundle(self) -> CredentialBundle:
        return CredentialBundle(
            ca_certificate=self.ca_certificate,
            client_certificate=self.client_certificate,
            client_key=self.client_key,
        )
