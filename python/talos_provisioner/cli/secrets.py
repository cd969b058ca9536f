#!/usr/bin/env python3
"""
talos_provisioner/cli/secrets.py

Generates a machine secrets artifact outside the daemon, in the same form the
Secrets stage publishes, and writes it as YAML (mode 0600).

  talos-provisioner secrets generate --name demo --node 10.0.0.9 -o demo.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

import yaml

from talos_provisioner.models.resource import ObjectMeta
from talos_provisioner.models.secrets import Secrets, SecretsParameters
from talos_provisioner.stages.secrets import SecretsExternal


async def run_generate(args: argparse.Namespace) -> None:
    record = Secrets(
        metadata=ObjectMeta(name=args.name),
        spec=SecretsParameters(node=args.node),
    )
    creation = await SecretsExternal().create(record)
    text = yaml.safe_dump(creation.connection_details, sort_keys=True)

    if args.output == "-":
        sys.stdout.write(text)
        return
    fd = os.open(args.output, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(text)
    print(f"Wrote secrets artifact '{args.name}' to {args.output}", file=sys.stderr)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="talos-provisioner secrets",
        description="Machine secrets operations.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate_parser = subparsers.add_parser(
        "generate", help="Generate a fresh secrets artifact."
    )
    generate_parser.add_argument("--name", required=True, help="Context name.")
    generate_parser.add_argument("--node", help="Node written into the client config.")
    generate_parser.add_argument(
        "-o", "--output", default="-", help="Output file, or '-' for stdout."
    )
    generate_parser.set_defaults(func=run_generate)

    args = parser.parse_args()
    try:
        asyncio.run(args.func(args))
    except FileExistsError:
        print(f"Error: '{args.output}' already exists.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
