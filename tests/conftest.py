"""Shared pytest fixtures for secrets-iac-driver tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import DriverConfig, RetryPolicy  # noqa: E402
from manifest import Manifest  # noqa: E402
from manifest_opr.executor import NodeExecutor  # noqa: E402
from manifest_opr.graph import ManifestGraph  # noqa: E402
from manifest_opr.rotation import CredentialMaterial  # noqa: E402
from manifest_opr.state import MemoryStateStore  # noqa: E402
from providers.base import ProviderError  # noqa: E402
from providers.local import LocalProvider  # noqa: E402


class RecordingProvider(LocalProvider):
    """In-memory LocalProvider that records calls and injects failures.

    Attributes:
        calls: ('apply'|'destroy', node_id) in call order
        fail: node_id -> number of failures before success (-1 = always)
        retryable: node_ids whose injected failures are retryable
    """

    def __init__(self):
        super().__init__(backend_file=None)
        self.calls: list[tuple[str, str]] = []
        self.credentials: dict[str, object] = {}
        self.fail: dict[str, int] = {}
        self.retryable: set[str] = set()
        self._calls_mutex = threading.Lock()

    def _maybe_fail(self, node_id):
        remaining = self.fail.get(node_id, 0)
        if remaining == 0:
            return
        if remaining > 0:
            self.fail[node_id] = remaining - 1
        raise ProviderError(f"injected failure for {node_id}", retryable=node_id in self.retryable)

    def apply(self, kind, inputs, *, node_id, credential=None, cancel_event=None):
        with self._calls_mutex:
            self.calls.append(('apply', node_id))
            self.credentials[node_id] = credential
            self._maybe_fail(node_id)
        return super().apply(kind, inputs, node_id=node_id, credential=credential,
                             cancel_event=cancel_event)

    def destroy(self, kind, outputs, *, node_id, credential=None, cancel_event=None):
        with self._calls_mutex:
            self.calls.append(('destroy', node_id))
            self._maybe_fail(node_id)
        super().destroy(kind, outputs, node_id=node_id, credential=credential,
                        cancel_event=cancel_event)

    def applied(self):
        return [n for verb, n in self.calls if verb == 'apply']

    def destroyed(self):
        return [n for verb, n in self.calls if verb == 'destroy']


def make_manifest(nodes, name='test', on_error='continue', parallelism=None):
    """Helper to create a manifest from node dicts."""
    settings = {'on_error': on_error}
    if parallelism is not None:
        settings['parallelism'] = parallelism
    return Manifest.from_dict({
        'schema_version': 1,
        'name': name,
        'nodes': nodes,
        'settings': settings,
    })


def make_config(tmp_path=None, **overrides):
    """DriverConfig with fast retries and no config file."""
    config = DriverConfig(config_file=None)
    config.retry = RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)
    if tmp_path is not None:
        config.state_dir = tmp_path / 'states'
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def make_executor(manifest, provider=None, store=None, config=None, **kwargs):
    """Build a NodeExecutor over an in-memory store."""
    return NodeExecutor(
        manifest=manifest,
        graph=ManifestGraph(manifest),
        provider=provider or RecordingProvider(),
        store=store or MemoryStateStore(),
        config=config or make_config(),
        **kwargs,
    )


# A setup/consume manifest used across executor and workflow tests
TWO_PHASE_NODES = [
    {'name': 'approle', 'kind': 'auth-method', 'phase': 'setup',
     'attributes': {'name': 'app', 'type': 'approle'}},
    {'name': 'reader', 'kind': 'role', 'phase': 'setup',
     'attributes': {'name': 'reader', 'auth': '${approle.access_id}'}},
    {'name': 'db_password', 'kind': 'static-secret', 'phase': 'consume',
     'attributes': {'path': 'app/db', 'value': 's3cret', 'role': '${reader.name}'}},
    {'name': 'bucket', 'kind': 'cloud-resource', 'phase': 'consume',
     'attributes': {'type': 's3-bucket', 'owner': '${reader.id}'}},
]


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def admin_credential():
    return CredentialMaterial(access_id='admin', access_key='admin-key', purpose='setup')


@pytest.fixture
def chain_manifest():
    """a <- b <- c (b and c read outputs of their dependency)."""
    return make_manifest([
        {'name': 'a', 'kind': 'generic', 'attributes': {'value': 'alpha'}},
        {'name': 'b', 'kind': 'generic', 'attributes': {'upstream': '${a.value}'}},
        {'name': 'c', 'kind': 'generic', 'attributes': {'upstream': '${b.id}'}},
    ], name='chain')


@pytest.fixture
def two_phase_manifest():
    return make_manifest(TWO_PHASE_NODES, name='two-phase')
