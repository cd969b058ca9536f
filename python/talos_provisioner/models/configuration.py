"""
talos_provisioner/models/configuration.py

Pydantic models for the Configuration stage, plus the injectable defaults used
when rendering a machine configuration document.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from talos_provisioner.models.resource import ManagedResource


class MachineType(str, Enum):
    CONTROLPLANE = "controlplane"
    WORKER = "worker"


class DocumentState(str, Enum):
    """Whether a configuration document is fit to be applied."""

    UNSET = "Unset"
    RENDERED = "Rendered"


class RenderDefaults(BaseModel):
    """
    Values used when a Configuration spec leaves a field empty. Passed into the
    renderer explicitly so tests and callers can override any of them.
    """

    cluster_name: str = "talos-default"
    cluster_endpoint: str = "https://127.0.0.1:6443"
    talos_version: str = "v1.7.6"
    kubernetes_version: str = "1.30.3"
    install_disk: str = "/dev/sda"
    installer_image: str = "ghcr.io/siderolabs/installer:{talos_version}"
    kubelet_image: str = "ghcr.io/siderolabs/kubelet:v{kubernetes_version}"
    dns_domain: str = "cluster.local"
    pod_subnets: List[str] = Field(default_factory=lambda: ["10.244.0.0/16"])
    service_subnets: List[str] = Field(default_factory=lambda: ["10.96.0.0/12"])


class ConfigurationParameters(BaseModel):
    """
    Attributes:
        node: The machine this configuration is meant for (added to certSANs).
        cluster_name: Kubernetes cluster name; default applied when empty.
        machine_type: controlplane or worker.
        cluster_endpoint: Kubernetes API endpoint; default applied when empty.
        machine_secrets_ref: Name of the artifact published by a Secrets record.
        talos_version: OS version used for the installer image.
        kubernetes_version: Kubernetes version used for the kubelet image.
        install_disk: Target install disk.
        config_patches: YAML mappings deep-merged into the rendered document.
    """

    node: str = Field(..., min_length=1)
    cluster_name: str = ""
    machine_type: MachineType
    cluster_endpoint: str = ""
    machine_secrets_ref: str = Field(..., min_length=1)
    talos_version: Optional[str] = None
    kubernetes_version: Optional[str] = None
    install_disk: Optional[str] = None
    config_patches: List[str] = Field(default_factory=list)


class ConfigurationObservation(BaseModel):
    machine_configuration: str = ""
    document_state: DocumentState = DocumentState.UNSET
    generated_time: Optional[datetime] = None
    observed_generation: Optional[int] = None


class Configuration(ManagedResource):
    """Renders the machine configuration document for one node."""

    kind: Literal["Configuration"] = "Configuration"
    spec: ConfigurationParameters
    status: ConfigurationObservation = Field(default_factory=ConfigurationObservation)
