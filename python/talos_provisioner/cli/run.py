#!/usr/bin/env python3
"""
talos_provisioner/cli/run.py

Runs the provisioning daemon in the foreground. Command-line flags override
the TALOS_PROVISIONER_* environment settings.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict

from pydantic import ValidationError

from talos_provisioner.daemon import configure_logging, run_daemon
from talos_provisioner.models.settings import ProvisionerSettings


def build_settings(args: argparse.Namespace) -> ProvisionerSettings:
    overrides: Dict[str, Any] = {
        field: value
        for field, value in (
            ("manifest_dir", args.manifest_dir),
            ("state_dir", args.state_dir),
            ("poll_interval", args.poll_interval),
            ("workers", args.workers),
            ("log_level", args.log_level),
        )
        if value is not None
    }
    return ProvisionerSettings(**overrides)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="talos-provisioner run",
        description="Reconcile machine provisioning records until interrupted.",
    )
    parser.add_argument("--manifest-dir", help="Directory of YAML manifests to submit.")
    parser.add_argument("--state-dir", help="Directory where records are persisted.")
    parser.add_argument("--poll-interval", type=float, help="Seconds between passes.")
    parser.add_argument("--workers", type=int, help="Workers per resource kind.")
    parser.add_argument("--log-level", help="Logging level, e.g. DEBUG or INFO.")
    args = parser.parse_args()

    try:
        settings = build_settings(args)
    except ValidationError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        sys.exit(2)

    configure_logging(settings.log_level)
    try:
        asyncio.run(run_daemon(settings))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
