"""Error taxonomy for manifest orchestration.

Graph errors are raised before any provider call is made. Policy errors
(stale credentials, dangling dependents) are fatal and never bypassed.
"""

from typing import Optional


class DriverError(Exception):
    """Base class for orchestration errors.

    Attributes:
        node: Offending node identifier, if any
        chain: Dependency path that produced the error, if any
    """

    def __init__(self, message: str, node: Optional[str] = None,
                 chain: Optional[list[str]] = None):
        self.message = message
        self.node = node
        self.chain = list(chain or [])
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [self.message]
        if self.node and f"'{self.node}'" not in self.message:
            parts.append(f"(node '{self.node}')")
        if self.chain:
            parts.append(f"[chain: {' -> '.join(self.chain)}]")
        return ' '.join(parts)


class GraphError(DriverError):
    """Manifest graph could not be built."""


class CycleDetected(GraphError):
    """Dependency cycle in the manifest graph."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Cycle detected in node graph: {' -> '.join(self.cycle)}",
            node=self.cycle[0] if self.cycle else None,
        )


class UnresolvedReference(GraphError):
    """Reference to a node or attribute that does not exist."""

    def __init__(self, source: str, target: str, reason: str = 'unknown node'):
        self.source = source
        self.target = target
        self.reason = reason
        super().__init__(
            f"Node '{source}' references '{target}': {reason}",
            node=source,
            chain=[source, target],
        )


class PhaseOrderError(GraphError):
    """A node depends on a node from a later phase."""


class ProviderCallFailed(DriverError):
    """Provider call failed after retries."""

    def __init__(self, node: str, cause: BaseException, attempts: int = 1):
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            f"Provider call failed for node '{node}' after {attempts} attempt(s): {cause}",
            node=node,
        )


class CredentialPolicyError(DriverError):
    """Credential material violates the rotation policy."""


class StaleCredentialReuse(CredentialPolicyError):
    """Material issued during setup was presented for consume."""

    def __init__(self, fingerprint: str, phase: str = 'consume'):
        self.fingerprint = fingerprint
        super().__init__(
            f"Credential {fingerprint} was issued during setup and cannot be used for {phase}; "
            "rotate credentials first"
        )


class CredentialExpired(CredentialPolicyError):
    """Credential material is past its expiry."""


class DependencyStillReferenced(DriverError):
    """A node cannot be destroyed while another existing node references it."""

    def __init__(self, node: str, dependents: list[str]):
        self.dependents = list(dependents)
        super().__init__(
            f"Cannot destroy '{node}': still referenced by {', '.join(self.dependents)}",
            node=node,
            chain=[self.dependents[0], node] if self.dependents else None,
        )


class ConcurrentExecutionConflict(DriverError):
    """Another run holds the state lock."""

    def __init__(self, key: str, owner: str, expires_at: float):
        self.key = key
        self.owner = owner
        self.expires_at = expires_at
        super().__init__(
            f"State '{key}' is locked by {owner} (expires at {expires_at:.0f})"
        )


class WorkflowTransitionError(DriverError):
    """Requested workflow step is not valid from the current status."""
