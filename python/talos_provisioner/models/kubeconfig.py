"""
talos_provisioner/models/kubeconfig.py

Pydantic models for the Kubeconfig (cluster access) stage.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from talos_provisioner.models.resource import ManagedResource
from talos_provisioner.models.target import MachineTargetParameters


class KubeconfigParameters(MachineTargetParameters):
    """
    Attributes:
        bootstrap_ref: Optional Bootstrap record that must report bootstrapped
            before credentials are requested. Without it retrieval is ungated:
            the request is sent on every pass until the machine stops refusing
            it, and each refusal is retried as a RemoteRetrievalError.
    """

    bootstrap_ref: Optional[str] = None


class KubernetesClientConfiguration(BaseModel):
    """A ready-to-use cluster access bundle."""

    host: str
    ca_certificate: str
    client_certificate: str
    client_key: str


class KubeconfigObservation(BaseModel):
    kubernetes_client_configuration: Optional[KubernetesClientConfiguration] = None
    kubeconfig_raw: Optional[str] = None
    retrieved_time: Optional[datetime] = None
    observed_generation: Optional[int] = None


class Kubeconfig(ManagedResource):
    """Retrieves cluster access credentials from a bootstrapped cluster."""

    kind: Literal["Kubeconfig"] = "Kubeconfig"
    spec: KubeconfigParameters
    status: KubeconfigObservation = Field(default_factory=KubeconfigObservation)
