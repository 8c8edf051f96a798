"""Manifest loading and validation for secrets provisioning.

Manifests declare resources (auth methods, roles, secrets, dynamic secret
producers, cloud resources) and the references between them. A reference
is written ${node.attribute} and resolves to another node's output.

Nodes are tagged with a phase:
- setup: provisioned with administrative credentials
- consume: provisioned with freshly rotated credentials after setup
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

NODE_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')

# ${node.attribute} or ${node.nested.attribute}
REFERENCE_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_.-]*)\}')


class ResourceKind(str, Enum):
    """Known resource kinds. GENERIC accepts any attribute set."""
    AUTH_METHOD = 'auth-method'
    ROLE = 'role'
    STATIC_SECRET = 'static-secret'
    DYNAMIC_SECRET_PRODUCER = 'dynamic-secret-producer'
    CLOUD_RESOURCE = 'cloud-resource'
    GENERIC = 'generic'

    @classmethod
    def parse(cls, value: str) -> 'ResourceKind':
        try:
            return cls(value)
        except ValueError:
            known = ', '.join(k.value for k in cls)
            raise ConfigError(f"Unknown resource kind '{value}'. Known kinds: {known}")


@dataclass(frozen=True)
class KindSchema:
    """Per-kind attribute rules.

    Attributes:
        required: Attributes every declaration of this kind must set
        sensitive: Input/output attributes redacted from CLI output
        issues_credentials: Outputs include access_id/access_key material
    """
    required: tuple[str, ...] = ()
    sensitive: frozenset = frozenset()
    issues_credentials: bool = False


KIND_SCHEMAS: dict[ResourceKind, KindSchema] = {
    ResourceKind.AUTH_METHOD: KindSchema(
        required=('name',),
        sensitive=frozenset({'access_key'}),
        issues_credentials=True,
    ),
    ResourceKind.ROLE: KindSchema(required=('name',)),
    ResourceKind.STATIC_SECRET: KindSchema(
        required=('path', 'value'),
        sensitive=frozenset({'value'}),
    ),
    ResourceKind.DYNAMIC_SECRET_PRODUCER: KindSchema(
        required=('name',),
        sensitive=frozenset({'secret_access_key', 'access_key'}),
    ),
    ResourceKind.CLOUD_RESOURCE: KindSchema(required=('type',)),
    ResourceKind.GENERIC: KindSchema(),
}


class Phase(str, Enum):
    """Ordered workflow phases. ROTATE is reserved for the rotation gate."""
    SETUP = 'setup'
    ROTATE = 'rotate'
    CONSUME = 'consume'

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    @classmethod
    def parse(cls, value: str) -> 'Phase':
        try:
            return cls(value)
        except ValueError:
            raise ConfigError(
                f"Unknown phase '{value}'. Known phases: {', '.join(p.value for p in cls)}"
            )


_PHASE_RANK = {Phase.SETUP: 0, Phase.ROTATE: 1, Phase.CONSUME: 2}


@dataclass(frozen=True)
class Reference:
    """Pointer from an attribute to another node's output attribute."""
    node: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.node}.{self.attribute}"


def find_references(value: Any) -> list[Reference]:
    """Collect references in a value, recursing through lists and dicts."""
    refs: list[Reference] = []
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            refs.append(Reference(match.group(1), match.group(2)))
    elif isinstance(value, dict):
        for item in value.values():
            refs.extend(find_references(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            refs.extend(find_references(item))
    return refs


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace references in value using lookup.

    A string that is exactly one reference resolves to the raw value
    (any type). References embedded in longer strings are interpolated.
    """
    if isinstance(value, str):
        match = REFERENCE_PATTERN.fullmatch(value)
        if match:
            return lookup(Reference(match.group(1), match.group(2)))
        return REFERENCE_PATTERN.sub(
            lambda m: str(lookup(Reference(m.group(1), m.group(2)))), value)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, lookup) for v in value]
    return value


@dataclass
class ManifestNode:
    """A resource declaration.

    Attributes:
        name: Node identifier (unique within the manifest)
        kind: Resource kind
        phase: Workflow phase the node belongs to
        attributes: Attribute name -> value (values may hold references)
        depends_on: Explicit dependencies in addition to references
    """
    name: str
    kind: ResourceKind
    phase: Phase = Phase.SETUP
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @property
    def schema(self) -> KindSchema:
        return KIND_SCHEMAS[self.kind]

    def references(self) -> list[Reference]:
        return find_references(self.attributes)

    def dependency_names(self) -> list[str]:
        """Referenced and explicit dependencies, in first-seen order."""
        names: list[str] = []
        for name in [r.node for r in self.references()] + list(self.depends_on):
            if name not in names:
                names.append(name)
        return names

    def declaration(self) -> dict:
        """Fields that define the resource (used for change detection)."""
        return {
            'kind': self.kind.value,
            'attributes': self.attributes,
        }

    @classmethod
    def from_dict(cls, data: dict, default_phase: Phase = Phase.SETUP) -> 'ManifestNode':
        """Create ManifestNode from dictionary.

        Raises:
            ConfigError: If name, attributes or depends_on has the wrong type
        """
        name = data['name']
        if not isinstance(name, str):
            raise ConfigError(f"Node name must be a string, got {name!r}")
        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"Node '{name}': attributes must be a mapping")
        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ConfigError(f"Node '{name}': depends_on must be a node name or list of names")
        return cls(
            name=name,
            kind=ResourceKind.parse(data['kind']),
            phase=Phase.parse(data['phase']) if data.get('phase') else default_phase,
            attributes=dict(attributes),
            depends_on=list(depends_on),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind.value,
            'phase': self.phase.value,
        }
        if self.attributes:
            d['attributes'] = self.attributes
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class ManifestSettings:
    """Optional settings for manifest execution.

    Attributes:
        parallelism: Override for concurrent provider calls (None = config)
        on_error: 'continue' keeps independent branches running after a
                  failure; 'stop' submits no new nodes after one
    """
    parallelism: Optional[int] = None
    on_error: str = 'continue'

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ManifestSettings':
        """Create ManifestSettings from dictionary."""
        if not data:
            return cls()
        on_error = data.get('on_error', 'continue')
        if on_error not in ('continue', 'stop'):
            raise ConfigError(f"settings.on_error must be 'continue' or 'stop', got '{on_error}'")
        parallelism = data.get('parallelism')
        return cls(
            parallelism=int(parallelism) if parallelism is not None else None,
            on_error=on_error,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'on_error': self.on_error}
        if self.parallelism is not None:
            d['parallelism'] = self.parallelism
        return d


@dataclass
class Manifest:
    """Secrets provisioning manifest.

    Attributes:
        schema_version: Manifest schema version
        name: Manifest identifier (also the execution record key)
        nodes: Resource declarations in declaration order
        description: Optional description
        default_phase: Phase for nodes that don't declare one
        settings: Optional execution settings
        source_path: Path where manifest was loaded from (for debugging)
    """
    schema_version: int
    name: str
    nodes: list[ManifestNode]
    description: str = ''
    default_phase: Phase = Phase.SETUP
    settings: ManifestSettings = field(default_factory=ManifestSettings)
    source_path: Optional[Path] = None

    def get_node(self, name: str) -> ManifestNode:
        """Get a node by name.

        Raises:
            KeyError: If node name not found
        """
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    def phases(self) -> list[Phase]:
        """Phases used by this manifest, in workflow order."""
        return sorted({n.phase for n in self.nodes}, key=lambda p: p.rank)

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON serialization)."""
        return {
            'schema_version': self.schema_version,
            'name': self.name,
            'description': self.description,
            'default_phase': self.default_phase.value,
            'nodes': [n.to_dict() for n in self.nodes],
            'settings': self.settings.to_dict(),
        }

    def to_json(self) -> str:
        """Serialize manifest to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Args:
            data: Manifest data dictionary
            source_path: Optional source path for error messages

        Returns:
            Validated Manifest instance

        Raises:
            ConfigError: If manifest is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported manifest schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ConfigError("Manifest missing required field: name")
        if 'nodes' not in data:
            raise ConfigError("Manifest missing required field: nodes")
        if not data['nodes']:
            raise ConfigError("Manifest must have at least one node")

        default_phase = Phase.parse(data.get('default_phase', 'setup'))
        if default_phase == Phase.ROTATE:
            raise ConfigError("default_phase cannot be 'rotate' (reserved for credential rotation)")

        nodes = []
        for i, node_data in enumerate(data['nodes']):
            if not isinstance(node_data, dict):
                raise ConfigError(f"Node {i} must be a mapping")
            if 'name' not in node_data:
                raise ConfigError(f"Node {i} missing required field: name")
            if 'kind' not in node_data:
                raise ConfigError(f"Node {i} ({node_data['name']}) missing required field: kind")
            nodes.append(ManifestNode.from_dict(node_data, default_phase))

        _validate_nodes(nodes)

        return cls(
            schema_version=schema_version,
            name=data['name'],
            description=data.get('description', ''),
            nodes=nodes,
            default_phase=default_phase,
            settings=ManifestSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid manifest JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Manifest JSON must be an object")
        return cls.from_dict(data)


def _validate_nodes(nodes: list[ManifestNode]) -> None:
    """Validate node declarations.

    Checks for:
    - Invalid or duplicate node names
    - Reserved phase usage
    - Missing kind-required attributes

    Reference and cycle checks belong to the graph builder.

    Raises:
        ConfigError: If validation fails
    """
    seen: set[str] = set()
    for node in nodes:
        if not NODE_NAME_PATTERN.match(node.name):
            raise ConfigError(f"Invalid node name: '{node.name}'")
        if node.name in seen:
            raise ConfigError(f"Duplicate node name: '{node.name}'")
        seen.add(node.name)

        if node.phase == Phase.ROTATE:
            raise ConfigError(
                f"Node '{node.name}' uses phase 'rotate', which is reserved for credential rotation"
            )

        missing = [a for a in node.schema.required if a not in node.attributes]
        if missing:
            raise ConfigError(
                f"Node '{node.name}' ({node.kind.value}) missing required attribute(s): "
                f"{', '.join(missing)}"
            )


class ManifestLoader:
    """Loads manifests from YAML or JSON files."""

    def load_file(self, path: Path) -> Manifest:
        """Load manifest from specific file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Manifest file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                if path.suffix == '.json':
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in manifest {path}: {e}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in manifest {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Manifest {path} must be an object (dict)")

        return Manifest.from_dict(data, source_path=path)


def load_manifest(file_path: Optional[str] = None, json_str: Optional[str] = None) -> Manifest:
    """Load manifest from a file or inline JSON.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path

    Raises:
        ConfigError: If no source given, or manifest not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    if file_path:
        return ManifestLoader().load_file(Path(file_path))
    raise ConfigError("No manifest specified")
