#!/usr/bin/env python3
"""
talos_provisioner/cli/render.py

Renders the machine configuration of a Configuration manifest against a
secrets artifact file (as written by `talos-provisioner secrets generate`)
and prints the document.
"""

from __future__ import annotations

import argparse
import sys
from typing import Dict, List

import yaml

from talos_provisioner.errors import ProvisionerError
from talos_provisioner.models.configuration import Configuration
from talos_provisioner.models.manifest import parse_manifests
from talos_provisioner.models.validator import validate_type
from talos_provisioner.stages.configuration import (
    machine_secrets_from_artifact,
    render_configuration,
)


def _select(configurations: List[Configuration], name: str) -> Configuration:
    if name:
        for configuration in configurations:
            if configuration.name == name:
                return configuration
        raise ValueError(f"no Configuration named '{name}' in the manifest")
    if len(configurations) != 1:
        raise ValueError(
            f"manifest holds {len(configurations)} Configuration records; use --name"
        )
    return configurations[0]


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="talos-provisioner render",
        description="Render a machine configuration document.",
    )
    parser.add_argument("manifest", help="YAML manifest holding Configuration records.")
    parser.add_argument(
        "--secrets", required=True, help="Secrets artifact file (YAML or JSON)."
    )
    parser.add_argument("--name", default="", help="Configuration record to render.")
    args = parser.parse_args()

    try:
        with open(args.manifest, "r", encoding="utf-8") as handle:
            resources = parse_manifests(handle.read(), source=args.manifest)
        configuration = _select(
            [r for r in resources if isinstance(r, Configuration)], args.name
        )
        with open(args.secrets, "r", encoding="utf-8") as handle:
            artifact: Dict[str, str] = validate_type(
                yaml.safe_load(handle), Dict[str, str], what=args.secrets
            )
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        secrets = machine_secrets_from_artifact(
            artifact, configuration.spec.machine_secrets_ref
        )
        sys.stdout.write(render_configuration(configuration.spec, secrets))
    except ProvisionerError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
