"""Two-phase workflow: setup, credential rotation, consume, teardown.

    uninitialized -> setup_applied -> credential_rotated -> consume_applied
                  -> consume_destroyed -> setup_destroyed -> uninitialized

Steps only move forward, except re-running a step that is already applied
(idempotent). Teardown must destroy consume before setup.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from config import DriverConfig, load_credential
from errors import DependencyStillReferenced, UnresolvedReference, WorkflowTransitionError
from manifest import Phase
from manifest_opr.executor import NodeExecutor
from manifest_opr.rotation import CredentialMaterial, CredentialRotationGate
from manifest_opr.state import ExecutionState

logger = logging.getLogger(__name__)


class WorkflowStatus(str, Enum):
    UNINITIALIZED = 'uninitialized'
    SETUP_APPLIED = 'setup_applied'
    CREDENTIAL_ROTATED = 'credential_rotated'
    CONSUME_APPLIED = 'consume_applied'
    CONSUME_DESTROYED = 'consume_destroyed'
    SETUP_DESTROYED = 'setup_destroyed'


S = WorkflowStatus

# Statuses from which each step may start
ALLOWED_FROM = {
    'setup': {S.UNINITIALIZED, S.SETUP_DESTROYED, S.SETUP_APPLIED, S.CONSUME_DESTROYED},
    'rotate': {S.SETUP_APPLIED, S.CREDENTIAL_ROTATED, S.CONSUME_DESTROYED},
    'consume': {S.CREDENTIAL_ROTATED, S.CONSUME_APPLIED},
}


@dataclass
class WorkflowRecord:
    """Persisted workflow state for one manifest.

    Attributes:
        manifest_name: Manifest this record belongs to
        status: Current workflow status
        setup_fingerprints: Credentials issued or used during setup
        consume_fingerprint: Credential issued by the last rotation
        rotated_at: When the last rotation happened
        history: Transitions as {from, to, at}
    """
    manifest_name: str
    status: WorkflowStatus = WorkflowStatus.UNINITIALIZED
    setup_fingerprints: list[str] = field(default_factory=list)
    consume_fingerprint: Optional[str] = None
    rotated_at: Optional[float] = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @staticmethod
    def key_for(manifest_name: str) -> str:
        return f'{manifest_name}/workflow'

    def transition(self, to: WorkflowStatus, at: Optional[float] = None) -> None:
        if to == self.status:
            return
        self.history.append({
            'from': self.status.value,
            'to': to.value,
            'at': at if at is not None else time.time(),
        })
        logger.debug(f"[workflow] {self.manifest_name}: {self.status.value} -> {to.value}")
        self.status = to

    def to_dict(self) -> dict:
        return {
            'manifest_name': self.manifest_name,
            'status': self.status.value,
            'setup_fingerprints': list(self.setup_fingerprints),
            'consume_fingerprint': self.consume_fingerprint,
            'rotated_at': self.rotated_at,
            'history': list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'WorkflowRecord':
        return cls(
            manifest_name=data['manifest_name'],
            status=WorkflowStatus(data.get('status', 'uninitialized')),
            setup_fingerprints=list(data.get('setup_fingerprints', [])),
            consume_fingerprint=data.get('consume_fingerprint'),
            rotated_at=data.get('rotated_at'),
            history=list(data.get('history', [])),
        )


class Workflow:
    """Drives a manifest through setup, rotation and consume.

    Args:
        executor: Executor for the manifest (provides graph, provider, store)
        config: Driver configuration (rotation settings, credentials file)
        clock: Time source for expiry checks and history
    """

    def __init__(self, executor: NodeExecutor, config: Optional[DriverConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.executor = executor
        self.config = config or executor.config
        self._clock = clock

    @property
    def manifest_name(self) -> str:
        return self.executor.manifest.name

    def load_record(self) -> WorkflowRecord:
        data = self.executor.store.read(WorkflowRecord.key_for(self.manifest_name))
        if data is None:
            return WorkflowRecord(manifest_name=self.manifest_name)
        return WorkflowRecord.from_dict(data)

    def save_record(self, record: WorkflowRecord) -> None:
        self.executor.store.write(WorkflowRecord.key_for(self.manifest_name), record.to_dict())

    @property
    def status(self) -> WorkflowStatus:
        return self.load_record().status

    def gate(self, record: Optional[WorkflowRecord] = None) -> CredentialRotationGate:
        record = record or self.load_record()
        return CredentialRotationGate(
            setup_fingerprints=record.setup_fingerprints,
            rotated_fingerprint=record.consume_fingerprint,
            clock=self._clock,
        )

    def _require(self, step: str, record: WorkflowRecord) -> None:
        if record.status in ALLOWED_FROM[step]:
            return
        hints = {
            S.UNINITIALIZED: 'apply setup first',
            S.SETUP_APPLIED: 'rotate first',
            S.CONSUME_APPLIED: 'destroy consume first',
        }
        hint = hints.get(record.status, '')
        raise WorkflowTransitionError(
            f"Cannot {step} while workflow is '{record.status.value}'"
            + (f"; {hint}" if hint else '')
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def apply_setup(self, credential: Optional[CredentialMaterial] = None) -> tuple[bool, ExecutionState]:
        """Apply setup-phase nodes with administrative credentials."""
        with self.executor.locked():
            record = self.load_record()
            self._require('setup', record)

            success, state = self.executor.apply(phases=[Phase.SETUP], credential=credential)
            if self.executor.dry_run:
                return success, state

            gate = self.gate(record)
            if credential is not None:
                gate.record_setup(credential)
            for material in self._issued_in_setup(state):
                gate.record_setup(material)
            record.setup_fingerprints = gate.setup_fingerprints

            if success:
                # New setup invalidates any earlier rotation
                record.consume_fingerprint = None
                record.rotated_at = None
                record.transition(S.SETUP_APPLIED, self._clock())
            self.save_record(record)
            return success, state

    def _issued_in_setup(self, state: ExecutionState) -> list[CredentialMaterial]:
        """Credential material produced by setup nodes (auth methods)."""
        issued = []
        for exec_node in self.executor.graph.phase_nodes(Phase.SETUP):
            if not exec_node.manifest_node.schema.issues_credentials:
                continue
            if not state.has_node(exec_node.name):
                continue
            material = CredentialMaterial.from_outputs(state.get_node(exec_node.name).outputs, 'setup')
            if material is not None:
                issued.append(material)
        return issued

    def rotate(self, credential: Optional[CredentialMaterial] = None) -> Optional[CredentialMaterial]:
        """Obtain fresh consume material, distinct from everything seen in setup.

        Args:
            credential: Administrative credential for the issuance call

        Returns:
            The new material (None on a dry run)

        Raises:
            StaleCredentialReuse: Issued material matches setup material
        """
        with self.executor.locked():
            record = self.load_record()
            self._require('rotate', record)
            if self.executor.dry_run:
                logger.info(f"[rotate] Dry run: would issue consume credential "
                            f"(mode {self.config.rotation.mode})")
                return None
            gate = self.gate(record)
            material = gate.rotate(lambda: self._issue(credential))
            record.consume_fingerprint = material.fingerprint
            record.rotated_at = self._clock()
            record.transition(S.CREDENTIAL_ROTATED, record.rotated_at)
            self.save_record(record)
            return material

    def _issue(self, credential: Optional[CredentialMaterial]) -> CredentialMaterial:
        rotation = self.config.rotation
        if rotation.mode == 'file':
            return load_credential(self.config, rotation.consume_credential, purpose='consume')

        auth_outputs = None
        if rotation.auth_method:
            state = self.executor.load_state()
            if not state.has_node(rotation.auth_method) or not state.get_node(rotation.auth_method).exists:
                raise UnresolvedReference('rotate', rotation.auth_method, 'auth method not applied')
            auth_outputs = state.outputs_for(rotation.auth_method)
        return self.executor.provider.issue_credential(
            'consume', credential=credential, auth_outputs=auth_outputs,
        )

    def apply_consume(self, credential: CredentialMaterial) -> tuple[bool, ExecutionState]:
        """Apply consume-phase nodes with rotated credentials.

        The credential is checked before the workflow status, so reused
        setup material is always reported as such.

        Raises:
            StaleCredentialReuse: Credential was issued or used during setup
            CredentialExpired: Credential is past its expiry
            WorkflowTransitionError: Setup not applied or not rotated yet
        """
        with self.executor.locked():
            record = self.load_record()
            self.gate(record).assert_fresh(credential, phase='consume')
            self._require('consume', record)

            if record.consume_fingerprint and credential.fingerprint != record.consume_fingerprint:
                logger.warning(f"[rotate] Consume credential {credential.fingerprint} is not the "
                               f"one issued by the last rotation ({record.consume_fingerprint})")

            success, state = self.executor.apply(phases=[Phase.CONSUME], credential=credential)
            if success and not self.executor.dry_run:
                record.transition(S.CONSUME_APPLIED, self._clock())
                self.save_record(record)
            return success, state

    def destroy_consume(self, credential: Optional[CredentialMaterial] = None) -> tuple[bool, ExecutionState]:
        """Destroy consume-phase nodes."""
        with self.executor.locked():
            success, state = self.executor.destroy(phases=[Phase.CONSUME], credential=credential)
            if success and not self.executor.dry_run:
                self.reconcile(state)
            return success, state

    def destroy_setup(self, credential: Optional[CredentialMaterial] = None) -> tuple[bool, ExecutionState]:
        """Destroy setup-phase nodes (consume must be destroyed first).

        Raises:
            DependencyStillReferenced: Consume resources still exist
        """
        with self.executor.locked():
            state = self.executor.load_state()
            consume_nodes = [name for name, ns in state.existing().items()
                             if ns.phase == Phase.CONSUME.value]
            if consume_nodes:
                raise DependencyStillReferenced('setup', consume_nodes)

            success, state = self.executor.destroy(phases=[Phase.SETUP], credential=credential)
            if success and not self.executor.dry_run:
                self.reconcile(state)
            return success, state

    def reconcile(self, state: ExecutionState) -> WorkflowRecord:
        """Bring the workflow status in line with what the record says exists.

        Needed after plain 'manifest destroy' runs, which bypass the workflow.
        """
        record = self.load_record()
        existing = state.existing()
        now = self._clock()
        changed = False
        if record.status == S.CONSUME_APPLIED and not any(
                ns.phase == Phase.CONSUME.value for ns in existing.values()):
            record.transition(S.CONSUME_DESTROYED, now)
            changed = True
        if record.status != S.UNINITIALIZED and not existing:
            record.transition(S.SETUP_DESTROYED, now)
            record.transition(S.UNINITIALIZED, now)
            record.setup_fingerprints = []
            record.consume_fingerprint = None
            record.rotated_at = None
            changed = True
        if changed:
            logger.info(f"[workflow] Reconciled '{self.manifest_name}' to {record.status.value}")
            self.save_record(record)
        return record

    # ------------------------------------------------------------------
    # Composite
    # ------------------------------------------------------------------

    def run(self, credential: Optional[CredentialMaterial] = None
            ) -> tuple[bool, ExecutionState, Optional[CredentialMaterial]]:
        """Setup, rotate and consume in order.

        Returns:
            (success, state, consume_material)
        """
        with self.executor.locked():
            success, state = self.apply_setup(credential)
            if not success or self.executor.dry_run:
                return success, state, None
            material = self.rotate(credential)
            success, state = self.apply_consume(material)
            return success, state, material

    def teardown(self, credential: Optional[CredentialMaterial] = None) -> tuple[bool, ExecutionState]:
        """Destroy consume, then setup."""
        with self.executor.locked():
            state = self.executor.load_state()
            if not state.existing():
                logger.warning(f"[destroy] No existing resources recorded for '{self.manifest_name}'; "
                               "nothing to tear down")
                self.reconcile(state)
                return True, state
            success, state = self.destroy_consume(credential)
            if not success:
                return success, state
            return self.destroy_setup(credential)

    def describe(self) -> dict:
        """Status summary for output."""
        record = self.load_record()
        state = self.executor.load_state()
        phases: dict[str, dict[str, str]] = {}
        for name, ns in state.nodes.items():
            phases.setdefault(ns.phase, {})[name] = ns.status
        d = record.to_dict()
        d['nodes'] = phases
        return d
