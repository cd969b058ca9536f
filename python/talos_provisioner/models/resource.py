"""
talos_provisioner/models/resource.py

Defines the pieces every managed record shares:
 - ObjectMeta: identity, generation and deletion marker
 - Condition: the Ready / Synced tri-state conditions
 - ManagedResource: base model each resource kind extends with its own
   `kind`, `spec` and `status`
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConditionType(str, Enum):
    READY = "Ready"
    SYNCED = "Synced"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BaseModel):
    """A single observed condition of a record."""

    type: ConditionType
    status: ConditionStatus
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utc_now)

    def equivalent(self, other: Condition) -> bool:
        """True if both conditions say the same thing, ignoring timestamps."""
        return (self.type, self.status, self.reason, self.message) == (
            other.type,
            other.status,
            other.reason,
            other.message,
        )


def available() -> Condition:
    return Condition(
        type=ConditionType.READY, status=ConditionStatus.TRUE, reason="Available"
    )


def unavailable() -> Condition:
    return Condition(
        type=ConditionType.READY, status=ConditionStatus.FALSE, reason="Unavailable"
    )


def creating() -> Condition:
    return Condition(
        type=ConditionType.READY, status=ConditionStatus.FALSE, reason="Creating"
    )


def deleting() -> Condition:
    return Condition(
        type=ConditionType.READY, status=ConditionStatus.FALSE, reason="Deleting"
    )


def reconcile_success() -> Condition:
    return Condition(
        type=ConditionType.SYNCED,
        status=ConditionStatus.TRUE,
        reason="ReconcileSuccess",
    )


def reconcile_error(err: BaseException) -> Condition:
    return Condition(
        type=ConditionType.SYNCED,
        status=ConditionStatus.FALSE,
        reason="ReconcileError",
        message=str(err),
    )


class ObjectMeta(BaseModel):
    """
    Identity of a record. Records are cluster-scoped, so the name alone is the
    identity within a kind.

    Attributes:
        name: Unique name within the kind.
        generation: Bumped on every desired-state change, never on status writes.
        creation_time: When the record was first submitted.
        deletion_requested: Set by an operator delete; the control loop then
            runs the stage's Delete and removes the record.
    """

    name: str = Field(..., min_length=1)
    generation: int = 1
    creation_time: datetime = Field(default_factory=utc_now)
    deletion_requested: bool = False


class ManagedResource(BaseModel):
    """
    Base for every resource kind. Subclasses add a `kind` literal, a `spec`
    owned by the operator and a `status` owned by the stage's control loop.
    """

    metadata: ObjectMeta
    conditions: List[Condition] = Field(default_factory=list)
    write_connection_secret_to: Optional[str] = None

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def connection_secret_name(self) -> str:
        """Name under which this record's connection details are published."""
        return self.write_connection_secret_to or self.metadata.name

    def get_condition(self, ctype: ConditionType) -> Optional[Condition]:
        return next((c for c in self.conditions if c.type == ctype), None)

    def set_conditions(self, *conditions: Condition) -> None:
        """
        Replace conditions by type. The transition time of an existing condition
        is kept when its status does not change.
        """
        for new in conditions:
            old = self.get_condition(new.type)
            if old is not None and old.equivalent(new):
                continue
            if old is not None and old.status == new.status:
                new = new.model_copy(
                    update={"last_transition_time": old.last_transition_time}
                )
            self.conditions = [c for c in self.conditions if c.type != new.type] + [
                new
            ]

    def is_ready(self) -> bool:
        cond = self.get_condition(ConditionType.READY)
        return cond is not None and cond.status == ConditionStatus.TRUE
