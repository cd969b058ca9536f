"""
talos_provisioner/models/machine_config.py

The machine configuration document (version v1alpha1) rendered by the
Configuration stage. Field aliases give the camelCase keys the machine expects;
PEM material is carried base64-encoded, as machines read it.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


class _DocumentModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PemPair(_DocumentModel):
    crt: str
    key: Optional[str] = None


class InstallSpec(_DocumentModel):
    disk: str
    image: str
    wipe: bool = False


class KubeletSpec(_DocumentModel):
    image: str


class FeaturesSpec(_DocumentModel):
    rbac: bool = True


class MachineSpec(_DocumentModel):
    type: str
    token: str
    ca: PemPair
    cert_sans: List[str] = Field(default_factory=list, alias="certSANs")
    kubelet: KubeletSpec
    network: Dict[str, Any] = Field(default_factory=dict)
    install: InstallSpec
    features: FeaturesSpec = Field(default_factory=FeaturesSpec)


class ControlPlaneSpec(_DocumentModel):
    endpoint: str


class ClusterNetworkSpec(_DocumentModel):
    dns_domain: str = Field(alias="dnsDomain")
    pod_subnets: List[str] = Field(alias="podSubnets")
    service_subnets: List[str] = Field(alias="serviceSubnets")


class EtcdSpec(_DocumentModel):
    ca: PemPair


class ServiceAccountSpec(_DocumentModel):
    key: str


class ClusterSpec(_DocumentModel):
    id: str
    secret: str
    control_plane: ControlPlaneSpec = Field(alias="controlPlane")
    cluster_name: str = Field(alias="clusterName")
    network: ClusterNetworkSpec
    token: str
    secretbox_encryption_secret: Optional[str] = Field(
        default=None, alias="secretboxEncryptionSecret"
    )
    ca: PemPair
    aggregator_ca: Optional[PemPair] = Field(default=None, alias="aggregatorCA")
    service_account: Optional[ServiceAccountSpec] = Field(
        default=None, alias="serviceAccount"
    )
    etcd: Optional[EtcdSpec] = None


class MachineConfigurationDocument(_DocumentModel):
    version: str = "v1alpha1"
    debug: bool = False
    persist: bool = True
    machine: MachineSpec
    cluster: ClusterSpec

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping with the document's wire keys, optional gaps omitted."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def dump_document(data: Dict[str, Any]) -> str:
    """
    Serialize a document mapping to YAML. Key order follows insertion order,
    so identical inputs always give identical bytes.
    """
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
