"""
talos_provisioner/secrets/talosconfig.py

Builds the client-config document operators (and tooling) use to talk to the
machine API: a named context holding endpoints and base64-encoded PEM material.
"""

from __future__ import annotations

import base64
from typing import Dict, List

import yaml
from pydantic import BaseModel, Field

from talos_provisioner.models.credentials import CredentialBundle


class TalosContext(BaseModel):
    endpoints: List[str] = Field(default_factory=list)
    nodes: List[str] = Field(default_factory=list)
    ca: str
    crt: str
    key: str


class TalosConfig(BaseModel):
    context: str
    contexts: Dict[str, TalosContext]

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(), sort_keys=False)

    @classmethod
    def from_yaml(cls, text: str) -> TalosConfig:
        return cls.model_validate(yaml.safe_load(text))


def _b64(pem: str) -> str:
    return base64.b64encode(pem.encode("utf-8")).decode("ascii")


def build_talos_config(
    context_name: str,
    bundle: CredentialBundle,
    endpoints: List[str],
) -> TalosConfig:
    """
    Args:
        context_name: Name of the single context, also made current.
        bundle: CA, client certificate and key to embed.
        endpoints: Machine endpoints; also used as the default target nodes.
    """
    return TalosConfig(
        context=context_name,
        contexts={
            context_name: TalosContext(
                endpoints=list(endpoints),
                nodes=list(endpoints),
                ca=_b64(bundle.ca_certificate),
                crt=_b64(bundle.client_certificate),
                key=_b64(bundle.client_key),
            )
        },
    )
