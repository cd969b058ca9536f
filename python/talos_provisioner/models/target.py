"""
talos_provisioner/models/target.py

Desired-state fields shared by every stage that talks to a machine: the node,
an optional endpoint override and the credentials used to reach it.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.functional_validators import model_validator

from talos_provisioner.models.credentials import CredentialBundle

DEFAULT_MACHINE_PORT = 50000


class MachineTargetParameters(BaseModel):
    """
    Attributes:
        node: Address of the target machine (IP or hostname).
        endpoint: Optional "host:port" override for the RPC endpoint.
        client_configuration: Inline credential bundle.
        credentials_ref: Reference handed to the credential resolver instead,
            e.g. "artifact:cluster-secrets" or "file:/etc/talos/creds.yaml".
    """

    node: str = Field(..., min_length=1)
    endpoint: Optional[str] = None
    client_configuration: Optional[CredentialBundle] = None
    credentials_ref: Optional[str] = None

    @model_validator(mode="after")
    def check_credentials_source(self) -> MachineTargetParameters:
        """Exactly one of client_configuration and credentials_ref must be set."""
        if (self.client_configuration is None) == (self.credentials_ref is None):
            raise ValueError(
                "exactly one of client_configuration and credentials_ref is required."
            )
        return self

    def rpc_endpoint(self, default_port: int = DEFAULT_MACHINE_PORT) -> str:
        """The endpoint override if present, otherwise <node>:<default_port>."""
        if self.endpoint:
            return self.endpoint
        if ":" in self.node and not self.node.startswith("["):
            return f"[{self.node}]:{default_port}"
        return f"{self.node}:{default_port}"
