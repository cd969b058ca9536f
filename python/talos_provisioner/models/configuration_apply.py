"""
talos_provisioner/models/configuration_apply.py

Pydantic models for the Configuration-Apply stage.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.functional_validators import model_validator

from talos_provisioner.models.resource import ManagedResource
from talos_provisioner.models.target import MachineTargetParameters


class ApplyMode(str, Enum):
    AUTO = "auto"
    REBOOT = "reboot"
    NO_REBOOT = "no_reboot"
    STAGED = "staged"

    @property
    def wire_name(self) -> str:
        return self.value.upper()


class OnDestroy(BaseModel):
    """Optional remote action when the record is deleted."""

    reset: bool = False
    graceful: bool = True
    reboot: bool = False


class ConfigurationApplyParameters(MachineTargetParameters):
    """
    Attributes:
        apply_mode: How the machine takes the new configuration.
        machine_configuration_input: Inline rendered document.
        machine_configuration_ref: Name of a Configuration record whose
            rendered document is applied instead.
        config_patches: YAML mappings merged into the document before apply.
        on_destroy: Remote reset to request when the record is deleted.
    """

    apply_mode: ApplyMode = ApplyMode.NO_REBOOT
    machine_configuration_input: Optional[str] = None
    machine_configuration_ref: Optional[str] = None
    config_patches: List[str] = Field(default_factory=list)
    on_destroy: Optional[OnDestroy] = None

    @model_validator(mode="after")
    def check_document_source(self) -> ConfigurationApplyParameters:
        if self.machine_configuration_input and self.machine_configuration_ref:
            raise ValueError(
                "machine_configuration_input and machine_configuration_ref are mutually exclusive."
            )
        return self


class ConfigurationApplyObservation(BaseModel):
    applied: bool = False
    last_applied_time: Optional[datetime] = None
    last_applied_digest: Optional[str] = None
    last_applied_generation: Optional[int] = None


class ConfigurationApply(ManagedResource):
    """Pushes a rendered configuration document to one machine."""

    kind: Literal["ConfigurationApply"] = "ConfigurationApply"
    spec: ConfigurationApplyParameters
    status: ConfigurationApplyObservation = Field(
        default_factory=ConfigurationApplyObservation
    )
