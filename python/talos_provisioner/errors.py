"""
talos_provisioner/errors.py

Error taxonomy shared by every stage and by the reconciliation driver.

Each error may carry the stage name and target node so that the message placed
on a record's Synced condition says where the failure happened. The `retryable`
class attribute tells the driver whether the failure earns a backoff retry or
has to wait for an operator to change the desired state.
"""

from __future__ import annotations

from typing import Optional


class ProvisionerError(Exception):
    """Base class for all provisioning failures.

    Attributes:
        stage (Optional[str]): The stage (resource kind) that failed.
        node (Optional[str]): The machine the stage was talking to, if any.
    """

    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        node: Optional[str] = None,
    ) -> None:
        """
        Initialize a ProvisionerError.

        Args:
            message (str): Human-readable description of the failure.
            stage (Optional[str]): The stage name, prefixed to the message.
            node (Optional[str]): The target node, prefixed to the message.
        """
        self.stage = stage
        self.node = node
        self.reason = message
        super().__init__(self._render(message))

    def _render(self, message: str) -> str:
        context = [
            f"{label}={value}"
            for label, value in (("stage", self.stage), ("node", self.node))
            if value
        ]
        if not context:
            return message
        return f"[{' '.join(context)}] {message}"


class CredentialError(ProvisionerError):
    """Missing or malformed certificate material. Needs operator intervention."""

    retryable = False


class DependencyNotReadyError(ProvisionerError):
    """An upstream artifact is absent or not yet usable. Retried on the next poll."""


class PlaceholderInputError(DependencyNotReadyError):
    """A configuration document is still unrendered or carries placeholder content."""


class RemoteApplyError(ProvisionerError):
    """The apply-configuration RPC failed."""


class RemoteBootstrapError(ProvisionerError):
    """The bootstrap RPC failed."""


class AmbiguousBootstrapError(RemoteBootstrapError):
    """A bootstrap intent was recorded but its outcome cannot be confirmed yet."""


class RemoteRetrievalError(ProvisionerError):
    """Retrieving cluster access credentials failed."""


class ConflictError(ProvisionerError):
    """Attempted mutation of an immutable record. Requires delete and recreate."""

    retryable = False


class ConfigPatchError(ProvisionerError):
    """A configuration patch is not a YAML mapping or cannot be parsed."""

    retryable = False
