"""
talos_provisioner/daemon.py

The provisioning daemon:
  1) Configures logging from the settings.
  2) Builds the record store, reloading persisted state when a state
     directory is configured.
  3) Submits every manifest found in the manifest directory, if any.
  4) Builds the credential resolver, the machine client factory and one
     controller per resource kind.
  5) Runs the controllers until cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

import aiofiles

from talos_provisioner.machine.factory import MachineClientFactory
from talos_provisioner.models.configuration import RenderDefaults
from talos_provisioner.models.manifest import parse_manifests
from talos_provisioner.models.settings import ProvisionerSettings
from talos_provisioner.reconciler.manager import Manager
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.secrets.credentials import SchemeCredentialResolver

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MANIFEST_SUFFIXES = (".yaml", ".yml")


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


async def submit_manifest_file(store: ResourceStore, path: str) -> int:
    """Parse one manifest file and submit every record in it."""
    async with aiofiles.open(path, "r") as handle:
        text = await handle.read()
    resources = parse_manifests(text, source=path)
    for resource in resources:
        await store.apply(resource)
    return len(resources)


async def submit_manifest_dir(store: ResourceStore, manifest_dir: str) -> int:
    """Submit every *.yaml / *.yml file directly under `manifest_dir`."""
    count = 0
    for filename in sorted(os.listdir(manifest_dir)):
        if filename.endswith(MANIFEST_SUFFIXES):
            count += await submit_manifest_file(
                store, os.path.join(manifest_dir, filename)
            )
    logger.info("Submitted %d records from %s", count, manifest_dir)
    return count


async def run_daemon(
    settings: ProvisionerSettings,
    defaults: Optional[RenderDefaults] = None,
) -> None:
    """Main daemon logic. Returns only when cancelled or a controller fails."""
    store = ResourceStore(settings.state_dir)
    await store.load()
    if settings.manifest_dir:
        await submit_manifest_dir(store, settings.manifest_dir)

    resolver = SchemeCredentialResolver(store)
    factory = MachineClientFactory(
        default_port=settings.default_port,
        rpc_timeout=settings.rpc_timeout,
        scratch_dir=settings.scratch_dir,
    )
    manager = Manager.build(settings, store, resolver, factory, defaults)

    logger.info("Provisioner starting (poll interval %.0fs)", settings.poll_interval)
    try:
        await manager.run()
    finally:
        logger.info("Provisioner stopped.")


def main() -> None:
    settings = ProvisionerSettings()
    configure_logging(settings.log_level)
    asyncio.run(run_daemon(settings))


if __name__ == "__main__":
    main()
