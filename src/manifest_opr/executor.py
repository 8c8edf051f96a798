"""Node executor for manifest-based orchestration.

Walks the dependency graph and runs apply/destroy for each node through a
provider. Independent nodes run concurrently on a bounded worker pool;
a node is only submitted once everything it depends on has finished.

All execution-record mutation happens on the coordinating thread, and the
whole run holds the manifest's state lock.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

from common import Cancelled, NodeResult, retry_call
from config import ConfigError, DriverConfig
from errors import (
    ConcurrentExecutionConflict,
    DependencyStillReferenced,
    DriverError,
    ProviderCallFailed,
    UnresolvedReference,
)
from manifest import Manifest, Phase
from manifest_opr.graph import ExecutionNode, ManifestGraph
from manifest_opr.lock import StateLock
from manifest_opr.plan import (
    build_plan,
    declaration_hash,
    destroyed_before,
    inputs_equal,
    orphan_destroy_order,
    recorded_destroy_order,
    resolve_inputs,
)
from manifest_opr.rotation import CredentialMaterial
from manifest_opr.state import ExecutionState, StateStore
from providers.base import Provider, is_retryable

logger = logging.getLogger(__name__)

# Prepared unit of work: runs on a worker thread
Call = Callable[[], NodeResult]


@dataclass
class NodeExecutor:
    """Executes lifecycle operations on manifest graph nodes.

    Attributes:
        manifest: The manifest defining the resources
        graph: The dependency graph built from the manifest
        provider: Provider that performs the calls
        store: Durable store holding the execution record and lock
        config: Driver configuration (parallelism, retry, lock ttl)
        dry_run: If True, preview operations without executing
        parallelism: Override for concurrent provider calls
    """
    manifest: Manifest
    graph: ManifestGraph
    provider: Provider
    store: StateStore
    config: DriverConfig = field(default_factory=DriverConfig)
    dry_run: bool = False
    parallelism: Optional[int] = None
    actions: dict[str, str] = field(default_factory=dict, init=False)
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _previous: dict[str, str] = field(default_factory=dict, init=False, repr=False)
    _lock: StateLock = field(default=None, init=False, repr=False)  # type: ignore[assignment]
    _lock_thread: Optional[int] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize the state lock after dataclass init."""
        self._lock = StateLock(self.store, self.manifest.name, ttl=self.config.lock_ttl)

    @property
    def max_workers(self) -> int:
        return self.parallelism or self.manifest.settings.parallelism or self.config.parallelism

    def cancel(self) -> None:
        """Stop submitting nodes and signal in-flight provider calls."""
        logger.warning("Cancellation requested; waiting for in-flight provider calls")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @contextmanager
    def locked(self) -> Iterator[StateLock]:
        """Hold the state lock (re-entrant only on the thread that took it).

        Raises:
            ConcurrentExecutionConflict: The lock is held by another run,
                including another thread using this executor
        """
        if self._lock.held:
            if self._lock_thread != threading.get_ident():
                info = self._lock.current()
                raise ConcurrentExecutionConflict(
                    self._lock.key,
                    f"{self._lock.owner} (another thread)",
                    info.expires_at if info else time.time(),
                )
            yield self._lock
            return
        self._lock.acquire()
        self._lock_thread = threading.get_ident()
        try:
            yield self._lock
        finally:
            self._lock_thread = None
            self._lock.release()

    def load_state(self) -> ExecutionState:
        return ExecutionState.load_or_create(self.manifest.name, self.store)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(
        self,
        phases: Optional[Iterable[Phase]] = None,
        targets: Optional[Iterable[str]] = None,
        credential: Optional[CredentialMaterial] = None,
    ) -> tuple[bool, ExecutionState]:
        """Apply selected nodes (dependencies before dependents).

        Args:
            phases: Restrict to nodes in these phases (None = all)
            targets: Restrict to these nodes plus their dependencies
            credential: Material passed to every provider call

        Raises:
            UnresolvedReference: A selected node depends on an unapplied node
                outside the selection (raised before any provider call)
            ConcurrentExecutionConflict: Another run holds the lock
        """
        phase_set = set(phases) if phases is not None else None
        target_list = list(targets) if targets is not None else None

        with self.locked():
            state = self.load_state()
            selection = self._select_apply(phase_set, target_list)
            self._check_external_dependencies(selection, state)

            for exec_node in selection:
                ns = state.add_node(exec_node.name, exec_node.kind, exec_node.phase.value)
                ns.kind = exec_node.kind
                ns.phase = exec_node.phase.value

            if self.dry_run:
                self._preview_apply(state, phase_set, target_list)
                return True, state

            self._cancel.clear()
            self.actions = {}
            state.start()
            logger.info(f"[apply] {self.manifest.name}: {len(selection)} node(s), "
                        f"parallelism {self.max_workers}")

            names = [n.name for n in selection]
            prerequisites = {
                n.name: {d.name for d in n.dependencies if d.name in names}
                for n in selection
            }
            success = self._run_dag(
                names,
                prerequisites,
                prepare=lambda name: self._prepare_apply(self.graph.get_node(name), state, credential),
                finish=lambda name, result: self._finish_apply(self.graph.get_node(name), state, result),
                block=lambda name, culprit: self._block_apply(name, culprit, state),
                save=state.save,
            )

            # Orphans are removed only on a full, successful apply
            if success and target_list is None and not self.cancelled:
                orphans = [n for n in orphan_destroy_order(self.graph, state)
                           if phase_set is None or Phase(state.get_node(n).phase) in phase_set]
                if orphans:
                    logger.info(f"[apply] Removing {len(orphans)} node(s) no longer in manifest")
                    success = self._destroy_names(orphans, state, credential, action='delete')

            state.finish()
            state.save()
            return success and not self.cancelled, state

    def _select_apply(self, phases: Optional[set], targets: Optional[list[str]]) -> list[ExecutionNode]:
        names = None
        if targets is not None:
            unknown = [t for t in targets if t not in self.graph]
            if unknown:
                raise ConfigError(f"Unknown target node(s): {', '.join(unknown)}")
            names = set(targets)
            for target in targets:
                names.update(self.graph.dependencies(target, transitive=True))
        selection = self.graph.create_order(names)
        if phases is not None:
            selection = [n for n in selection if n.phase in phases]
        return selection

    def _check_external_dependencies(self, selection: list[ExecutionNode],
                                     state: ExecutionState) -> None:
        selected = {n.name for n in selection}
        for exec_node in selection:
            for dep in exec_node.dependencies:
                if dep.name in selected:
                    continue
                if not state.has_node(dep.name) or not state.get_node(dep.name).exists:
                    raise UnresolvedReference(
                        exec_node.name, dep.name,
                        f"dependency in phase '{dep.phase.value}' not applied",
                    )

    def _prepare_apply(self, exec_node: ExecutionNode, state: ExecutionState,
                       credential: Optional[CredentialMaterial]) -> Optional[Call]:
        """Resolve inputs; return None when the node is unchanged."""
        mn = exec_node.manifest_node
        ns = state.get_node(exec_node.name)
        inputs = resolve_inputs(mn, state)
        decl_hash = declaration_hash(mn)

        if (ns.status == 'completed' and ns.declaration_hash == decl_hash
                and inputs_equal(ns.inputs, inputs)):
            logger.debug(f"[apply] Node '{mn.name}' unchanged")
            self.actions[mn.name] = 'noop'
            return None

        self.actions[mn.name] = 'update' if ns.exists else 'create'
        # Status to return to if the call is cancelled
        self._previous[mn.name] = ns.status
        ns.start()
        depends_on = [d.name for d in exec_node.dependencies]
        fingerprint = credential.fingerprint if credential else None

        def call() -> NodeResult:
            start = time.time()
            logger.info(f"[apply] {self.actions[mn.name].capitalize()} {mn.kind.value} '{mn.name}'")
            try:
                outputs, attempts = retry_call(
                    lambda: self.provider.apply(
                        mn.kind.value, inputs,
                        node_id=mn.name,
                        credential=credential,
                        cancel_event=self._cancel,
                    ),
                    attempts=self.config.retry.attempts,
                    base_delay=self.config.retry.base_delay,
                    max_delay=self.config.retry.max_delay,
                    is_retryable=is_retryable,
                    cancel_event=self._cancel,
                    label=f"apply '{mn.name}'",
                )
            except Cancelled as e:
                return NodeResult(success=False, message=str(e), duration=time.time() - start, error=e)
            except Exception as e:
                attempts = getattr(e, 'attempts', 1)
                return NodeResult(
                    success=False,
                    message=str(e),
                    duration=time.time() - start,
                    attempts=attempts,
                    error=ProviderCallFailed(mn.name, e, attempts),
                )
            return NodeResult(
                success=True,
                message=f"Node {mn.name} applied",
                duration=time.time() - start,
                outputs={
                    'inputs': inputs,
                    'outputs': dict(outputs or {}),
                    'declaration_hash': decl_hash,
                    'depends_on': depends_on,
                    'credential': fingerprint,
                },
                attempts=attempts,
            )

        return call

    def _finish_apply(self, exec_node: ExecutionNode, state: ExecutionState,
                      result: NodeResult) -> None:
        ns = state.get_node(exec_node.name)
        if result.success:
            payload = result.outputs
            ns.complete(
                inputs=payload['inputs'],
                outputs=payload['outputs'],
                declaration_hash=payload['declaration_hash'],
                depends_on=payload['depends_on'],
                credential=payload['credential'],
                attempts=result.attempts,
            )
            logger.info(f"[apply] Node '{exec_node.name}' applied ({result.duration:.1f}s)")
        elif isinstance(result.error, Cancelled):
            ns.reset(self._previous.get(exec_node.name, 'pending'))
            logger.warning(f"[apply] Node '{exec_node.name}' not applied: cancelled")
        else:
            ns.fail(str(result.error or result.message), attempts=result.attempts)
            logger.error("Apply failed for node '%s': %s", exec_node.name, result.message)

    def _block_apply(self, name: str, culprit: str, state: ExecutionState) -> None:
        """Record why name was not applied, with the path to the failed node."""
        reason = DriverError(f"Dependency '{culprit}' failed; not applied",
                             chain=self.graph.dependency_chain(name, culprit))
        state.get_node(name).block(str(reason))

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    def destroy(
        self,
        phases: Optional[Iterable[Phase]] = None,
        targets: Optional[Iterable[str]] = None,
        credential: Optional[CredentialMaterial] = None,
    ) -> tuple[bool, ExecutionState]:
        """Destroy recorded nodes (dependents before dependencies).

        Ordering comes from the dependencies recorded at apply time, so
        destroy does not need the manifest to still declare a node.

        Raises:
            DependencyStillReferenced: A selected node is referenced by an
                existing node outside the selection (before any provider call)
            ConcurrentExecutionConflict: Another run holds the lock
        """
        phase_set = {Phase(p).value for p in phases} if phases is not None else None

        with self.locked():
            state = self.load_state()
            existing = state.existing()
            if not existing:
                logger.warning(f"[destroy] No existing resources recorded for '{self.manifest.name}'")
                return True, state

            names = [name for name, ns in existing.items()
                     if phase_set is None or ns.phase in phase_set]
            if targets is not None:
                target_set = set(targets)
                unknown = target_set - set(existing)
                if unknown:
                    raise ConfigError(f"Target node(s) not present in record: {', '.join(sorted(unknown))}")
                names = [n for n in names if n in target_set]

            if not names:
                logger.warning("[destroy] Nothing to destroy for the selected phase/targets")
                return True, state

            selected = set(names)
            for name in names:
                outside = [d for d in state.dependents_of(name) if d not in selected]
                if outside:
                    raise DependencyStillReferenced(name, outside)

            # Setup is torn down only after every consume node is gone
            setup = [n for n in names if existing[n].phase == Phase.SETUP.value]
            consume_left = [n for n, ns in existing.items()
                            if ns.phase == Phase.CONSUME.value and n not in selected]
            if setup and consume_left:
                raise DependencyStillReferenced(setup[0], consume_left)

            if self.dry_run:
                self._preview_destroy(recorded_destroy_order(state, names), state)
                return True, state

            self._cancel.clear()
            self.actions = {}
            state.start()
            logger.info(f"[destroy] {self.manifest.name}: {len(names)} node(s)")
            success = self._destroy_names(names, state, credential, action='destroy')
            state.finish()
            state.save()
            return success and not self.cancelled, state

    def _destroy_names(self, names: list[str], state: ExecutionState,
                       credential: Optional[CredentialMaterial], action: str) -> bool:
        ordered = recorded_destroy_order(state, names)
        selected = set(ordered)
        # A node waits for every selected node that still references it,
        # and setup nodes wait for every selected consume node
        prerequisites = {
            name: {other for other in ordered if destroyed_before(state, name, other)}
            for name in ordered
        }

        def block(name: str, culprit: str) -> None:
            ns = state.get_node(name)
            ns.block(str(DependencyStillReferenced(name, [culprit])))

        def prepare(name: str) -> Optional[Call]:
            # Guard against references from nodes outside the selection
            outside = [d for d in state.dependents_of(name) if d not in selected]
            if outside:
                raise DependencyStillReferenced(name, outside)
            return self._prepare_destroy(name, state, credential, action)

        return self._run_dag(
            ordered,
            prerequisites,
            prepare=prepare,
            finish=lambda name, result: self._finish_destroy(name, state, result),
            block=block,
            save=state.save,
        )

    def _prepare_destroy(self, name: str, state: ExecutionState,
                         credential: Optional[CredentialMaterial], action: str) -> Call:
        ns = state.get_node(name)
        self.actions[name] = action
        kind = ns.kind
        outputs = dict(ns.outputs)
        self._previous[name] = ns.status
        ns.start()

        def call() -> NodeResult:
            start = time.time()
            logger.info(f"[destroy] Destroying {kind} '{name}'")
            try:
                _, attempts = retry_call(
                    lambda: self.provider.destroy(
                        kind, outputs,
                        node_id=name,
                        credential=credential,
                        cancel_event=self._cancel,
                    ),
                    attempts=self.config.retry.attempts,
                    base_delay=self.config.retry.base_delay,
                    max_delay=self.config.retry.max_delay,
                    is_retryable=is_retryable,
                    cancel_event=self._cancel,
                    label=f"destroy '{name}'",
                )
            except Cancelled as e:
                return NodeResult(success=False, message=str(e), duration=time.time() - start, error=e)
            except Exception as e:
                attempts = getattr(e, 'attempts', 1)
                return NodeResult(
                    success=False,
                    message=str(e),
                    duration=time.time() - start,
                    attempts=attempts,
                    error=ProviderCallFailed(name, e, attempts),
                )
            return NodeResult(success=True, message=f"Node {name} destroyed",
                              duration=time.time() - start, attempts=attempts)

        return call

    def _finish_destroy(self, name: str, state: ExecutionState, result: NodeResult) -> None:
        ns = state.get_node(name)
        if result.success:
            ns.mark_destroyed()
            ns.attempts = result.attempts
            logger.info(f"[destroy] Node '{name}' destroyed")
        elif isinstance(result.error, Cancelled):
            ns.reset(self._previous.get(name, 'completed'))
            logger.warning(f"[destroy] Node '{name}' not destroyed: cancelled")
        else:
            ns.fail(str(result.error or result.message), attempts=result.attempts)
            logger.error("Destroy failed for node '%s': %s", name, result.message)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _run_dag(
        self,
        names: list[str],
        prerequisites: dict[str, set[str]],
        prepare: Callable[[str], Optional[Call]],
        finish: Callable[[str, NodeResult], None],
        block: Callable[[str, str], None],
        save: Callable[[], None],
    ) -> bool:
        """Run nodes respecting prerequisites on a bounded worker pool.

        prepare() runs on this thread and returns the work for a node, or
        None when the node needs no provider call. A failed node blocks
        every node that transitively waits on it; unrelated nodes go on
        unless settings.on_error is 'stop'.

        Returns:
            True if every node succeeded
        """
        pending = list(names)
        done: set[str] = set()
        in_flight: dict[Future, str] = {}
        success = True
        stop = False

        waiters: dict[str, list[str]] = {name: [] for name in names}
        for name, prereqs in prerequisites.items():
            for prereq in prereqs:
                waiters[prereq].append(name)

        def block_waiters(culprit: str) -> None:
            queue = list(waiters.get(culprit, []))
            while queue:
                name = queue.pop(0)
                if name in pending:
                    pending.remove(name)
                    block(name, culprit)
                    logger.warning(f"Node '{name}' blocked by failed dependency '{culprit}'")
                    queue.extend(waiters.get(name, []))

        def fail(name: str) -> None:
            nonlocal success, stop
            success = False
            block_waiters(name)
            if self.manifest.settings.on_error == 'stop':
                stop = True

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix='provider') as pool:
            while True:
                progressed = True
                while progressed and not stop and not self.cancelled:
                    progressed = False
                    for name in list(pending):
                        if len(in_flight) >= self.max_workers:
                            break
                        if not prerequisites.get(name, set()) <= done:
                            continue
                        pending.remove(name)
                        try:
                            work = prepare(name)
                        except DriverError as e:
                            finish(name, NodeResult(success=False, message=str(e), error=e))
                            save()
                            fail(name)
                            progressed = True
                            continue
                        if work is None:
                            done.add(name)
                            progressed = True
                            continue
                        in_flight[pool.submit(work)] = name

                if not in_flight:
                    break

                finished, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in finished:
                    name = in_flight.pop(future)
                    result = future.result()
                    finish(name, result)
                    save()
                    if result.success:
                        done.add(name)
                    elif isinstance(result.error, Cancelled):
                        success = False
                    else:
                        fail(name)

        if pending:
            reason = 'cancelled' if self.cancelled else 'stopped after failure'
            logger.warning(f"{len(pending)} node(s) not started ({reason}): {', '.join(pending)}")
            success = False
        return success

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def _preview_apply(self, state: ExecutionState, phases: Optional[set],
                       targets: Optional[list[str]]) -> None:
        """Preview apply operations."""
        names = [n.name for n in self._select_apply(phases, targets)]
        plan = build_plan(self.graph, state, phases=phases,
                          names=names if targets is not None else None)
        print("")
        print("=" * 65)
        print(f"  DRY-RUN APPLY: {self.manifest.name}")
        print(f"  Provider: {self.provider.name}  Parallelism: {self.max_workers}")
        print("=" * 65)
        print("")
        for change in plan.changes:
            depth = self.graph.get_node(change.node).depth if change.node in self.graph else '-'
            reason = f" ({change.reason})" if change.reason else ""
            print(f"  [{depth}] {change.node}: {change.action} {change.kind} [{change.phase}]{reason}")
        print("")

    def _preview_destroy(self, ordered: list[str], state: ExecutionState) -> None:
        """Preview destroy operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN DESTROY: {self.manifest.name}")
        print(f"  Provider: {self.provider.name}")
        print("=" * 65)
        print("")
        for name in ordered:
            ns = state.get_node(name)
            print(f"  {name}: destroy {ns.kind} [{ns.phase}]")
        print("")
