"""
talos_provisioner/reconciler/manager.py

Wires one controller per resource kind and runs them together.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from talos_provisioner.machine.factory import ClientFactory
from talos_provisioner.models.configuration import RenderDefaults
from talos_provisioner.models.manifest import KIND_ORDER
from talos_provisioner.models.settings import ProvisionerSettings
from talos_provisioner.reconciler.controller import Controller
from talos_provisioner.reconciler.managed import ManagedReconciler
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.reconciler.workqueue import WorkQueue
from talos_provisioner.secrets.credentials import CredentialResolver
from talos_provisioner.stages.base import Connector
from talos_provisioner.stages.bootstrap import BootstrapConnector
from talos_provisioner.stages.configuration import ConfigurationConnector
from talos_provisioner.stages.configuration_apply import ConfigurationApplyConnector
from talos_provisioner.stages.kubeconfig import KubeconfigConnector
from talos_provisioner.stages.secrets import SecretsConnector
from talos_provisioner.utils.ratelimit import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
)

logger = logging.getLogger(__name__)


def build_connectors(
    store: ResourceStore,
    resolver: CredentialResolver,
    factory: ClientFactory,
    defaults: Optional[RenderDefaults] = None,
) -> Dict[str, Connector[Any]]:
    """One connector per kind, in lifecycle order."""
    return {
        "Secrets": SecretsConnector(),
        "Configuration": ConfigurationConnector(store, defaults),
        "ConfigurationApply": ConfigurationApplyConnector(store, resolver, factory),
        "Bootstrap": BootstrapConnector(store, resolver, factory),
        "Kubeconfig": KubeconfigConnector(store, resolver, factory),
    }


class Manager:
    def __init__(self, controllers: List[Controller]) -> None:
        self.controllers = controllers

    @classmethod
    def build(
        cls,
        settings: ProvisionerSettings,
        store: ResourceStore,
        resolver: CredentialResolver,
        factory: ClientFactory,
        defaults: Optional[RenderDefaults] = None,
    ) -> Manager:
        """
        A controller per kind. Every kind gets its own per-record backoff; the
        token bucket capping retries is shared by all of them.
        """
        bucket = BucketRateLimiter(settings.global_qps, settings.global_burst)
        connectors = build_connectors(store, resolver, factory, defaults)
        controllers = []
        for kind in KIND_ORDER:
            limiter = MaxOfRateLimiter(
                ItemExponentialFailureRateLimiter(
                    settings.base_delay, settings.max_delay
                ),
                bucket,
            )
            reconciler = ManagedReconciler(
                kind, connectors[kind], store, timeout=settings.reconcile_timeout
            )
            controllers.append(
                Controller(
                    reconciler,
                    store,
                    WorkQueue(limiter),
                    workers=settings.workers,
                    poll_interval=settings.poll_interval,
                )
            )
        return cls(controllers)

    async def run(self) -> None:
        """Run every controller until cancelled, or until one of them fails."""
        tasks = [asyncio.create_task(c.run()) for c in self.controllers]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
