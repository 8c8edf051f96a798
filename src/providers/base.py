"""Provider-call abstraction.

A provider turns a node's resolved inputs into a real resource and
returns its outputs. apply() must be idempotent: re-invoking it for the
same node_id after an unknown outcome converges on one resource.
"""

import threading
from typing import Any, Optional, Protocol, runtime_checkable

from manifest_opr.rotation import CredentialMaterial


class ProviderError(Exception):
    """Provider call failed.

    Attributes:
        retryable: True for transient failures (transport, throttling, 5xx)
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider implementations."""

    name: str

    def apply(
        self,
        kind: str,
        inputs: dict[str, Any],
        *,
        node_id: str,
        credential: Optional[CredentialMaterial] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> dict[str, Any]:
        """Create or update the resource; return its outputs."""

    def destroy(
        self,
        kind: str,
        outputs: dict[str, Any],
        *,
        node_id: str,
        credential: Optional[CredentialMaterial] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Remove the resource. Removing an absent resource succeeds."""

    def issue_credential(
        self,
        purpose: str,
        *,
        credential: Optional[CredentialMaterial] = None,
        auth_outputs: Optional[dict[str, Any]] = None,
    ) -> CredentialMaterial:
        """Issue new credential material (optionally for an auth method)."""


def is_retryable(error: BaseException) -> bool:
    """True if a provider error is worth retrying."""
    return bool(getattr(error, 'retryable', False))
