"""Plan computation: compare the manifest graph with the execution record.

Each selected node gets one action:
- create: not in the record (or never successfully applied)
- update: declaration changed, or upstream outputs changed its inputs
- noop: applied with the same declaration and inputs
- delete: in the record but no longer in the manifest (orphan)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from common import canonical_hash
from errors import UnresolvedReference
from manifest import ManifestNode, Phase, Reference, resolve_value
from manifest_opr.graph import ExecutionNode, ManifestGraph
from manifest_opr.state import ExecutionState

logger = logging.getLogger(__name__)

UNKNOWN = '(known after apply)'

ACTIONS = ('create', 'update', 'noop', 'delete')

_MISSING = object()


def _dig(data: dict, attribute: str) -> Any:
    """Look up attribute in data; dotted names descend into dicts."""
    if attribute in data:
        return data[attribute]
    current: Any = data
    for part in attribute.split('.'):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def lookup_attribute(state: ExecutionState, source: str, ref: Reference) -> Any:
    """Resolve one reference against the record (outputs, then inputs).

    Raises:
        UnresolvedReference: Target not applied, or attribute missing
    """
    if not state.has_node(ref.node) or not state.get_node(ref.node).exists:
        raise UnresolvedReference(source, str(ref), 'target not applied')
    ns = state.get_node(ref.node)
    value = _dig(ns.outputs, ref.attribute)
    if value is _MISSING:
        value = _dig(ns.inputs, ref.attribute)
    if value is _MISSING:
        raise UnresolvedReference(source, str(ref), f"no attribute '{ref.attribute}'")
    return value


def resolve_inputs(node: ManifestNode, state: ExecutionState) -> dict[str, Any]:
    """Resolve all references in a node's attributes from the record."""
    return resolve_value(node.attributes, lambda ref: lookup_attribute(state, node.name, ref))


def declaration_hash(node: ManifestNode) -> str:
    return canonical_hash(node.declaration())


def inputs_equal(a: dict, b: dict) -> bool:
    return canonical_hash(a) == canonical_hash(b)


@dataclass
class PlannedChange:
    """Planned action for one node."""
    node: str
    action: str
    kind: str
    phase: str
    reason: str = ''
    changed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'node': self.node,
            'action': self.action,
            'kind': self.kind,
            'phase': self.phase,
        }
        if self.reason:
            d['reason'] = self.reason
        if self.changed:
            d['changed'] = list(self.changed)
        return d


@dataclass
class Plan:
    """Ordered set of planned changes for a manifest."""
    manifest_name: str
    changes: list[PlannedChange] = field(default_factory=list)

    def action_for(self, node: str) -> Optional[str]:
        for change in self.changes:
            if change.node == node:
                return change.action
        return None

    def by_action(self, action: str) -> list[PlannedChange]:
        return [c for c in self.changes if c.action == action]

    @property
    def has_changes(self) -> bool:
        return any(c.action != 'noop' for c in self.changes)

    def summary(self) -> dict[str, int]:
        return {action: len(self.by_action(action)) for action in ACTIONS}

    def to_dict(self) -> dict:
        return {
            'manifest': self.manifest_name,
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.changes],
        }


def _preview_inputs(node: ExecutionNode, state: ExecutionState, changing: set[str]) -> dict:
    """Resolve inputs, substituting UNKNOWN for values not yet known."""
    def lookup(ref: Reference) -> Any:
        if ref.node in changing:
            return UNKNOWN
        try:
            return lookup_attribute(state, node.name, ref)
        except UnresolvedReference:
            return UNKNOWN
    return resolve_value(node.manifest_node.attributes, lookup)


def _changed_keys(old: dict, new: dict) -> list[str]:
    keys = sorted(set(old) | set(new))
    return [k for k in keys if canonical_hash(old.get(k)) != canonical_hash(new.get(k))]


def build_plan(
    graph: ManifestGraph,
    state: ExecutionState,
    phases: Optional[Iterable[Phase]] = None,
    names: Optional[Iterable[str]] = None,
    include_orphans: bool = True,
) -> Plan:
    """Compute the plan for the selected nodes.

    Args:
        graph: Manifest dependency graph
        state: Current execution record
        phases: Restrict to nodes in these phases (None = all)
        names: Restrict to these node names (None = all)
        include_orphans: Report record entries missing from the manifest
    """
    phase_set = set(phases) if phases is not None else None
    name_set = set(names) if names is not None else None
    plan = Plan(manifest_name=graph.manifest.name)
    # Nodes whose outputs may change during this apply
    changing: set[str] = set()

    for node in graph.create_order():
        if phase_set is not None and node.phase not in phase_set:
            continue
        if name_set is not None and node.name not in name_set:
            continue

        mn = node.manifest_node
        change = PlannedChange(node=node.name, action='noop', kind=node.kind, phase=node.phase.value)
        ns = state.get_node(node.name) if state.has_node(node.name) else None
        new_inputs = _preview_inputs(node, state, changing)

        if ns is None or not ns.exists:
            change.action = 'create'
            change.changed = sorted(new_inputs)
        elif ns.declaration_hash != declaration_hash(mn):
            change.action = 'update'
            change.reason = 'declaration changed'
            change.changed = _changed_keys(ns.inputs, new_inputs)
        elif ns.status != 'completed':
            change.action = 'update'
            change.reason = f'last operation {ns.status}'
        else:
            upstream = [d.name for d in node.dependencies if d.name in changing]
            if upstream:
                change.action = 'update'
                change.reason = f"dependency {', '.join(upstream)} changes"
                change.changed = _changed_keys(ns.inputs, new_inputs)
            elif not inputs_equal(ns.inputs, new_inputs):
                change.action = 'update'
                change.reason = 'upstream outputs changed'
                change.changed = _changed_keys(ns.inputs, new_inputs)

        if change.action != 'noop':
            changing.add(node.name)
        plan.changes.append(change)

    if include_orphans and name_set is None:
        for name in orphan_destroy_order(graph, state):
            ns = state.get_node(name)
            if phase_set is not None and Phase(ns.phase) not in phase_set:
                continue
            plan.changes.append(PlannedChange(
                node=name, action='delete', kind=ns.kind, phase=ns.phase,
                reason='no longer in manifest',
            ))

    return plan


def destroyed_before(state: ExecutionState, name: str, other: str) -> bool:
    """True if other must be destroyed before name.

    Recorded dependents go first, and every consume node goes before
    every setup node.
    """
    if other == name:
        return False
    other_ns = state.get_node(other)
    if name in other_ns.depends_on:
        return True
    return (state.get_node(name).phase == Phase.SETUP.value
            and other_ns.phase == Phase.CONSUME.value)


def recorded_destroy_order(state: ExecutionState, names: Iterable[str]) -> list[str]:
    """Order names dependents-first using dependencies recorded in state."""
    remaining = [n for n in state.nodes if n in set(names)]
    ordered: list[str] = []
    while remaining:
        # Destroyable now: nothing remaining must go before it
        ready = [n for n in remaining
                 if not any(destroyed_before(state, n, other) for other in remaining)]
        if not ready:
            # Recorded cycle (should not happen); fall back to record order
            ready = [remaining[-1]]
        for name in ready:
            ordered.append(name)
            remaining.remove(name)
    return ordered


def orphan_destroy_order(graph: ManifestGraph, state: ExecutionState) -> list[str]:
    """Existing record entries not in the manifest, dependents first."""
    orphans = [name for name in state.existing() if name not in graph]
    return recorded_destroy_order(state, orphans)
