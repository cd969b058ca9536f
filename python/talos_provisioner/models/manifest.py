"""
talos_provisioner/models/manifest.py

The closed set of resource kinds, and helpers to read and write them as YAML
manifests. Each manifest document is dispatched on its `kind` field.
"""

from __future__ import annotations

from typing import Any, Dict, List, Type, Union

import yaml
from pydantic import Field
from typing_extensions import Annotated

from talos_provisioner.models.bootstrap import Bootstrap
from talos_provisioner.models.configuration import Configuration
from talos_provisioner.models.configuration_apply import ConfigurationApply
from talos_provisioner.models.kubeconfig import Kubeconfig
from talos_provisioner.models.resource import ManagedResource
from talos_provisioner.models.secrets import Secrets
from talos_provisioner.models.validator import validate_type

AnyResource = Annotated[
    Union[Secrets, Configuration, ConfigurationApply, Bootstrap, Kubeconfig],
    Field(discriminator="kind"),
]

RESOURCE_TYPES: Dict[str, Type[ManagedResource]] = {
    "Secrets": Secrets,
    "Configuration": Configuration,
    "ConfigurationApply": ConfigurationApply,
    "Bootstrap": Bootstrap,
    "Kubeconfig": Kubeconfig,
}

# Downstream order of the lifecycle.
KIND_ORDER: List[str] = list(RESOURCE_TYPES)


def parse_resource(obj: Any, *, source: str = "manifest") -> ManagedResource:
    """
    Validate one decoded manifest into its resource kind.

    Raises:
        ValueError: If the document is not a known, valid resource.
    """
    return validate_type(obj, AnyResource, what=source)  # type: ignore[arg-type]


def parse_manifests(text: str, *, source: str = "manifest") -> List[ManagedResource]:
    """
    Parse a (possibly multi-document) YAML string into resources. Empty
    documents are skipped.
    """
    return [
        parse_resource(doc, source=f"{source}[{idx}]")
        for idx, doc in enumerate(yaml.safe_load_all(text))
        if doc is not None
    ]


def resource_to_yaml(resource: ManagedResource) -> str:
    """Serialize a resource (spec, status and conditions) to YAML."""
    return yaml.safe_dump(resource.model_dump(mode="json"), sort_keys=False)
