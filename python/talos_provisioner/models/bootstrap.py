"""
talos_provisioner/models/bootstrap.py

Pydantic models for the Bootstrap stage.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from talos_provisioner.models.resource import ManagedResource
from talos_provisioner.models.target import MachineTargetParameters


class BootstrapParameters(MachineTargetParameters):
    """
    Attributes:
        configuration_apply_ref: Optional ConfigurationApply record that must
            report applied before bootstrap is attempted.
    """

    configuration_apply_ref: Optional[str] = None


class BootstrapObservation(BaseModel):
    """
    Attributes:
        bootstrapped: True once the bootstrap RPC is known to have succeeded.
        bootstrap_time: When that happened.
        intent_issued_time: Set just before the RPC is sent and cleared when
            the remote side definitively refuses it. While set without
            `bootstrapped`, the outcome is ambiguous and must be confirmed
            remotely before the RPC may be sent again.
    """

    bootstrapped: bool = False
    bootstrap_time: Optional[datetime] = None
    intent_issued_time: Optional[datetime] = None


class Bootstrap(ManagedResource):
    """Initializes the cluster on one designated control-plane machine."""

    kind: Literal["Bootstrap"] = "Bootstrap"
    spec: BootstrapParameters
    status: BootstrapObservation = Field(default_factory=BootstrapObservation)
