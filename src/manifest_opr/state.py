"""Execution state management for manifest-based orchestration.

Tracks per-node status (pending, running, completed, failed, blocked,
destroyed) along with resolved inputs and outputs, and persists the record
through a StateStore so that re-runs and destroy can find what exists
without the create-time context.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """Durable key-value store for execution records.

    Keys are slash-separated ('<manifest>/execution'). Values are
    JSON-serializable dicts.
    """

    def read(self, key: str) -> Optional[dict]:
        """Return the stored value, or None if absent."""

    def write(self, key: str, data: dict) -> None:
        """Replace the stored value."""

    def delete(self, key: str) -> None:
        """Remove the value if present."""

    def create_exclusive(self, key: str, data: dict) -> bool:
        """Store data only if key is absent. Returns True if stored."""


class FileStateStore:
    """JSON files under a root directory, written atomically."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f'{key}.json'

    def read(self, key: str) -> Optional[dict]:
        path = self.path_for(key)
        try:
            with open(path, encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None

    def write(self, key: str, data: dict) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.name}.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True, default=str)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug(f"Saved {key} to {path}")

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            pass

    def create_exclusive(self, key: str, data: dict) -> bool:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True, default=str)
        return True


class MemoryStateStore:
    """In-process store (tests, dry runs)."""

    def __init__(self):
        self._data: dict[str, dict] = {}
        self._mutex = threading.Lock()

    def read(self, key: str) -> Optional[dict]:
        with self._mutex:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def write(self, key: str, data: dict) -> None:
        with self._mutex:
            self._data[key] = copy.deepcopy(data)

    def delete(self, key: str) -> None:
        with self._mutex:
            self._data.pop(key, None)

    def create_exclusive(self, key: str, data: dict) -> bool:
        with self._mutex:
            if key in self._data:
                return False
            self._data[key] = copy.deepcopy(data)
            return True

    def keys(self) -> list[str]:
        with self._mutex:
            return sorted(self._data)


@dataclass
class NodeState:
    """Per-node execution state.

    Attributes:
        name: Node name (matches ManifestNode.name)
        kind: Resource kind
        phase: Workflow phase
        status: pending, running, completed, failed, blocked, destroyed
        depends_on: Names of nodes this node referenced when applied
        declaration_hash: Hash of the declaration that was applied
        inputs: Resolved inputs sent to the provider
        outputs: Outputs returned by the provider
        credential: Fingerprint of the credential that applied the node
        attempts: Provider call attempts in the last operation
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
        error: Error message if failed or blocked
    """
    name: str
    kind: str = ''
    phase: str = 'setup'
    status: str = 'pending'
    depends_on: list[str] = field(default_factory=list)
    declaration_hash: Optional[str] = None
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    credential: Optional[str] = None
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def exists(self) -> bool:
        """True if the resource is believed to exist at the provider."""
        # A failed update or destroy leaves the earlier outputs in place
        return self.status == 'completed' or (self.status != 'destroyed' and bool(self.outputs))

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()
        self.completed_at = None
        self.error = None

    def complete(self, inputs: dict, outputs: dict, declaration_hash: str,
                 depends_on: list[str], credential: Optional[str] = None,
                 attempts: int = 1) -> None:
        self.status = 'completed'
        self.completed_at = time.time()
        self.inputs = inputs
        self.outputs = outputs
        self.declaration_hash = declaration_hash
        self.depends_on = list(depends_on)
        self.credential = credential
        self.attempts = attempts
        self.error = None

    def fail(self, error: str, attempts: int = 0) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error
        if attempts:
            self.attempts = attempts

    def block(self, reason: str) -> None:
        self.status = 'blocked'
        self.error = reason

    def reset(self, status: str) -> None:
        """Return to a resting status without touching recorded data."""
        self.status = status
        self.started_at = None

    def mark_destroyed(self) -> None:
        self.status = 'destroyed'
        self.completed_at = time.time()
        self.inputs = {}
        self.outputs = {}
        self.declaration_hash = None
        self.credential = None
        self.error = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'phase': self.phase,
            'status': self.status,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.declaration_hash is not None:
            d['declaration_hash'] = self.declaration_hash
        if self.inputs:
            d['inputs'] = self.inputs
        if self.outputs:
            d['outputs'] = self.outputs
        if self.credential is not None:
            d['credential'] = self.credential
        if self.attempts:
            d['attempts'] = self.attempts
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'NodeState':
        return cls(
            name=data['name'],
            kind=data.get('kind', ''),
            phase=data.get('phase', 'setup'),
            status=data.get('status', 'pending'),
            depends_on=list(data.get('depends_on', [])),
            declaration_hash=data.get('declaration_hash'),
            inputs=dict(data.get('inputs', {})),
            outputs=dict(data.get('outputs', {})),
            credential=data.get('credential'),
            attempts=data.get('attempts', 0),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            error=data.get('error'),
        )


class ExecutionState:
    """Manifest-level execution record with save/load.

    The record is the single source of truth for what exists. Only the
    executor mutates it, from one coordinating thread.

    State is persisted under the store key '<manifest>/execution'.
    """

    def __init__(self, manifest_name: str, store: Optional[StateStore] = None):
        self.manifest_name = manifest_name
        self.store = store
        self._nodes: dict[str, NodeState] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    @staticmethod
    def key_for(manifest_name: str) -> str:
        return f'{manifest_name}/execution'

    def add_node(self, name: str, kind: str = '', phase: str = 'setup') -> NodeState:
        """Register a node for tracking (no-op if already present)."""
        if name in self._nodes:
            return self._nodes[name]
        state = NodeState(name=name, kind=kind, phase=phase)
        self._nodes[name] = state
        return state

    def get_node(self, name: str) -> NodeState:
        """Get node state by name.

        Raises:
            KeyError: If node not registered
        """
        return self._nodes[name]

    def has_node(self, name: str) -> bool:
        return name in self._nodes

    @property
    def nodes(self) -> dict[str, NodeState]:
        return dict(self._nodes)

    def existing(self) -> dict[str, NodeState]:
        """Nodes whose resources exist at the provider."""
        return {name: ns for name, ns in self._nodes.items() if ns.exists}

    def dependents_of(self, name: str) -> list[str]:
        """Existing nodes whose recorded dependencies include name."""
        return [ns.name for ns in self._nodes.values()
                if ns.exists and name in ns.depends_on]

    def outputs_for(self, name: str) -> dict[str, Any]:
        return dict(self._nodes[name].outputs) if name in self._nodes else {}

    def start(self) -> None:
        self.started_at = time.time()
        self.completed_at = None

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        return {
            'manifest_name': self.manifest_name,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'nodes': {name: state.to_dict() for name, state in self._nodes.items()},
        }

    def save(self) -> None:
        """Persist the record to the store."""
        if self.store is None:
            raise ValueError("ExecutionState has no store to save to")
        self.store.write(self.key_for(self.manifest_name), self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, store: Optional[StateStore] = None) -> 'ExecutionState':
        state = cls(data['manifest_name'], store)
        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')
        for name, node_data in data.get('nodes', {}).items():
            state._nodes[name] = NodeState.from_dict(node_data)
        return state

    @classmethod
    def load(cls, manifest_name: str, store: StateStore) -> 'ExecutionState':
        """Load the record from the store.

        Raises:
            FileNotFoundError: If no record exists for the manifest
        """
        data = store.read(cls.key_for(manifest_name))
        if data is None:
            raise FileNotFoundError(f"No execution record for manifest '{manifest_name}'")
        logger.debug(f"Loaded execution state for '{manifest_name}'")
        return cls.from_dict(data, store)

    @classmethod
    def load_or_create(cls, manifest_name: str, store: StateStore) -> 'ExecutionState':
        """Load the record, or start an empty one."""
        try:
            return cls.load(manifest_name, store)
        except FileNotFoundError:
            return cls(manifest_name, store)
