"""
talos_provisioner/secrets/credentials.py

Credential resolution: turns a reference into raw bytes, then into a
CredentialBundle. Supported reference schemes:

 - artifact:<name>  a connection artifact published by another record
 - file:<path>      a JSON or YAML file on disk
 - env:<VAR>        an environment variable holding JSON or YAML
"""

from __future__ import annotations

import json
import os
from typing import Dict, Optional, Protocol

import aiofiles
import yaml

from talos_provisioner.errors import (
    CredentialError,
    DependencyNotReadyError,
    ProvisionerError,
)
from talos_provisioner.models.credentials import CredentialBundle
from talos_provisioner.models.target import MachineTargetParameters
from talos_provisioner.models.validator import validate_type


class ArtifactSource(Protocol):
    def get_artifact(self, name: str) -> Optional[Dict[str, str]]:
        ...


class CredentialResolver(Protocol):
    async def resolve(self, reference: str) -> bytes:
        """Return the raw credential bytes behind `reference`."""
        ...


class SchemeCredentialResolver:
    """Resolves `artifact:`, `file:` and `env:` references."""

    def __init__(self, artifacts: Optional[ArtifactSource] = None) -> None:
        self._artifacts = artifacts

    async def resolve(self, reference: str) -> bytes:
        scheme, sep, target = reference.partition(":")
        if not sep or not target:
            raise CredentialError(f"credential reference '{reference}' has no scheme")

        if scheme == "artifact":
            if self._artifacts is None:
                raise CredentialError("no artifact source configured")
            details = self._artifacts.get_artifact(target)
            if details is None:
                raise DependencyNotReadyError(f"artifact '{target}' is not published")
            return json.dumps(details).encode("utf-8")

        if scheme == "file":
            try:
                async with aiofiles.open(target, "rb") as handle:
                    return await handle.read()
            except OSError as exc:
                raise CredentialError(
                    f"cannot read credentials file '{target}': {exc.strerror}"
                ) from exc

        if scheme == "env":
            value = os.environ.get(target)
            if value is None:
                raise CredentialError(f"environment variable '{target}' is not set")
            return value.encode("utf-8")

        raise CredentialError(f"unsupported credential scheme '{scheme}'")


def parse_credential_bundle(raw: bytes) -> CredentialBundle:
    """
    Decode raw JSON/YAML bytes into a CredentialBundle.

    Raises:
        CredentialError: If the bytes are not a mapping with the bundle fields.
    """
    try:
        loaded = yaml.safe_load(raw.decode("utf-8"))
    except (UnicodeDecodeError, yaml.YAMLError) as exc:
        raise CredentialError(f"credential bundle is not valid YAML/JSON: {exc}") from exc
    try:
        return validate_type(loaded, CredentialBundle, what="credential bundle")
    except ValueError as exc:
        raise CredentialError(str(exc)) from exc


async def credentials_for(
    params: MachineTargetParameters,
    resolver: CredentialResolver,
    *,
    stage: Optional[str] = None,
) -> CredentialBundle:
    """
    The inline bundle of `params`, or the resolved `credentials_ref`.

    Resolution failures are re-raised with `stage` and the target node attached.
    """
    if params.client_configuration is not None:
        return params.client_configuration
    assert params.credentials_ref is not None
    try:
        raw = await resolver.resolve(params.credentials_ref)
        return parse_credential_bundle(raw)
    except ProvisionerError as exc:
        if exc.stage is not None or exc.node is not None:
            raise
        raise type(exc)(exc.reason, stage=stage, node=params.node) from exc
