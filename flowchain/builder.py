"""Builds node graphs from declarative configuration and runs them with a reconcile loop."""

from __future__ import annotations

import dataclasses
import hashlib
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

import yaml

from flowchain.model import (
    ChangeEvent,
    ChangeEventType,
    Config,
    Metadata,
    Node,
    NodeStatus,
    Paths,
    load_config_from_yaml,
    save_config_to_yaml,
)
from flowchain.pipeline import Channel, ChannelClosed
from flowchain.topology import (
    ConnectionValidationError,
    RuntimeNode,
    dependency_levels,
    detect_config_changes,
    generate_paths,
    sort_changes_by_dependency,
    validate_connections,
)

NodeFactory = Callable[[Metadata, dict[str, Any]], Any]

RECONCILE_INTERVAL = 0.1
STATS_INTERVAL = 1.0


class UnknownNodeTypeError(LookupError):
    """Raised when a node's type has no registered factory."""

    def __init__(self, node_type: str) -> None:
        super().__init__(f"Unknown node type: {node_type}")
        self.node_type = node_type


def _record_of(function: Any, config_node: Node) -> Node:
    record = getattr(function, "node", None)
    if callable(record) and not isinstance(record, Node):
        record = record()
    if isinstance(record, Node):
        return record
    return Node(
        metadata=config_node.metadata,
        spec=config_node.spec,
        status=NodeStatus.IDLE,
    )


def _close_all(channels: Iterable[Channel]) -> None:
    for channel in channels:
        try:
            channel.close()
        except ChannelClosed:
            pass


class ChainBuilder:
    """Creates runtime nodes from a configuration, wires them by labels and runs them.

    When a memory file is set, the configuration is copied there, watched for
    edits that are reconciled into the running graph, and refreshed with node
    statistics while the graph runs.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        config_path: Union[str, Path, None] = None,
        memory_path: Union[str, Path, None] = None,
    ) -> None:
        self.config = config if config is not None else Config()
        self.config_path = Path(config_path) if config_path else None
        self._memory_path = Path(memory_path) if memory_path else None
        self._registry: dict[str, NodeFactory] = {}
        self._nodes: dict[str, RuntimeNode] = {}
        self._path_map: dict[str, Paths] = {}
        self._channels: dict[str, Channel] = {}
        self._lock = threading.RLock()
        self._running = False
        self._last_config = Config()
        self._last_hash: Optional[str] = None
        self._active = 0
        self._active_cond = threading.Condition()
        self._stop = threading.Event()

    @property
    def memory_path(self) -> Optional[Path]:
        return self._memory_path

    @memory_path.setter
    def memory_path(self, value: Union[str, Path, None]) -> None:
        self._memory_path = Path(value) if value else None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def path_map(self) -> dict[str, Paths]:
        with self._lock:
            return dict(self._path_map)

    # registry

    def register_node_type(self, node_type: str, factory: NodeFactory) -> None:
        """Register (or replace) the factory building nodes of ``node_type``."""
        self._registry[node_type] = factory

    def factory_for(self, node_type: str) -> NodeFactory:
        """Return the registered factory, raising ``UnknownNodeTypeError`` if none."""
        try:
            return self._registry[node_type]
        except KeyError:
            raise UnknownNodeTypeError(node_type) from None

    # node registry

    def add_dynamic_node(self, node: Node) -> None:
        """Add one node to the configuration and create its runtime node."""
        with self._lock:
            self._add_node(node)

    def add_dynamic_nodes(self, nodes: Iterable[Node]) -> None:
        """Add several nodes to the configuration and create their runtime nodes."""
        with self._lock:
            for node in nodes:
                self._add_node(node)

    def _remember(self, node: Node) -> None:
        name = node.metadata.name
        for index, existing in enumerate(self.config.nodes):
            if existing.metadata.name == name:
                self.config.nodes[index] = node
                return
        self.config.nodes.append(node)

    def _add_node(self, node: Node) -> None:
        name = node.metadata.name
        if name in self._nodes:
            self._remember(node)
            return
        factory = self.factory_for(node.metadata.type)
        print(f"[RECONCILE] Adding node: {name}")
        function = factory(node.metadata, node.spec.params)
        self._remember(node)
        self._nodes[name] = RuntimeNode(
            metadata=node.metadata,
            spec=node.spec,
            function=function,
            node=_record_of(function, node),
        )

    def _delete_node(self, name: str) -> None:
        print(f"[RECONCILE] Deleting node: {name}")
        self._nodes.pop(name, None)
        self.config.nodes = [n for n in self.config.nodes if n.metadata.name != name]

    def _update_node(self, node: Node) -> None:
        print(f"[RECONCILE] Updating node: {node.metadata.name}")
        self._delete_node(node.metadata.name)
        self._add_node(node)

    def _config_node(self, name: str) -> Optional[Node]:
        return next((n for n in self.config.nodes if n.metadata.name == name), None)

    # wiring

    def rebuild_connections(self) -> None:
        """Rewire every node by its input selectors and start idle nodes if running.

        Raises ``ConnectionValidationError`` when a node's connections break its
        limits; the previous channels are then kept.
        """
        with self._lock:
            print("[RECONCILE] Rebuilding connections")
            self._path_map = generate_paths(self._nodes)
            validate_connections(self._nodes, self._path_map)
            channels: dict[str, Channel] = {}
            for paths in self._path_map.values():
                for path in paths.outputs:
                    if path.active:
                        channels.setdefault(path.name, path.channel)
            self._channels = channels
            if self._running:
                self._start_idle_nodes()

    def _rebuild_logged(self) -> None:
        try:
            self.rebuild_connections()
        except ConnectionValidationError as exc:
            print(f"[RECONCILE] Validation failed: {exc}")

    # reconciliation

    def _file_hash(self) -> Optional[str]:
        if self._memory_path is None:
            return None
        try:
            return hashlib.md5(self._memory_path.read_bytes()).hexdigest()
        except OSError:
            return None

    def _memory_changed(self) -> bool:
        current = self._file_hash()
        return current is not None and current != self._last_hash

    def _load_memory_config(self) -> Config:
        if self._memory_path is not None and self._memory_path.exists():
            return load_config_from_yaml(self._memory_path)
        return Config(nodes=list(self.config.nodes))

    def _copy_config_to_memory(self) -> None:
        if self._memory_path is None:
            return
        self._memory_path.parent.mkdir(parents=True, exist_ok=True)
        save_config_to_yaml(self.config, self._memory_path)

    def reconcile_nodes(self) -> list[ChangeEvent]:
        """Bring the runtime nodes in line with the memory file (or the config).

        The first call creates every node; later calls apply the differences
        from the last reconciled configuration. Returns the changes applied.
        """
        with self._lock:
            try:
                new_config = self._load_memory_config()
            except (OSError, ValueError) as exc:
                print(f"[RECONCILE] Failed to load memory config: {exc}")
                return []
            if not self._last_config.nodes:
                print(f"[RECONCILE] Initial load: creating {len(new_config.nodes)} nodes")
                changes = [
                    ChangeEvent(ChangeEventType.ADD, n.metadata.name, n)
                    for n in new_config.nodes
                ]
                for node in new_config.nodes:
                    self._add_node(node)
                self._rebuild_logged()
            else:
                changes = detect_config_changes(self._last_config, new_config)
                if changes:
                    print(f"[RECONCILE] Applying {len(changes)} changes")
                    changes = self._apply_changes(changes)
            self._last_config = new_config
            self._last_hash = self._file_hash()
            return changes

    def _apply_changes(self, changes: list[ChangeEvent]) -> list[ChangeEvent]:
        ordered = sort_changes_by_dependency(changes, dependency_levels(self._nodes))
        for change in ordered:
            if change.type is ChangeEventType.ADD and change.node is not None:
                self._add_node(change.node)
            elif change.type is ChangeEventType.UPDATE and change.node is not None:
                self._update_node(change.node)
            elif change.type is ChangeEventType.DELETE:
                self._delete_node(change.node_name)
        self._rebuild_logged()
        return ordered

    def _reconcile_loop(self) -> None:
        next_stats = time.monotonic() + STATS_INTERVAL
        while not self._stop.wait(RECONCILE_INTERVAL):
            try:
                if self._memory_changed():
                    print("[RECONCILE] Detected config change")
                    self.reconcile_nodes()
                if time.monotonic() >= next_stats:
                    next_stats += STATS_INTERVAL
                    self.write_stats_to_memory()
            except Exception as exc:
                print(f"[RECONCILE] Reconcile failed: {exc}")
        print("[RECONCILE] Stopping reconcile loop")

    # memory snapshots

    def write_stats_to_memory(self) -> None:
        """Write the configuration with current stats, status and state to the memory file."""
        if self._memory_path is None:
            return
        with self._lock:
            nodes: list[Node] = []
            seen: set[str] = set()
            for config_node in self.config.nodes:
                name = config_node.metadata.name
                seen.add(name)
                runtime = self._nodes.get(name)
                if runtime is not None:
                    config_node = dataclasses.replace(
                        config_node,
                        stats=dataclasses.replace(runtime.node.stats),
                        status=runtime.node.status,
                        state=dict(runtime.node.state),
                    )
                nodes.append(config_node)
            for name, runtime in self._nodes.items():
                if name not in seen:
                    nodes.append(
                        Node(
                            metadata=runtime.metadata,
                            spec=runtime.spec,
                            stats=dataclasses.replace(runtime.node.stats),
                            status=runtime.node.status,
                            state=dict(runtime.node.state),
                        )
                    )
            try:
                save_config_to_yaml(Config(nodes=nodes), self._memory_path)
            except (OSError, yaml.YAMLError):
                return
            self._last_hash = self._file_hash()

    def dump_node_memory(self) -> Path:
        """Write every node's record to a timestamped YAML file and return its path."""
        stamp = time.strftime("%Y%m%d-%H%M%S")
        directory = self._memory_path.parent if self._memory_path else Path("memory")
        directory.mkdir(parents=True, exist_ok=True)
        filename = directory / f"memory-{stamp}.yaml"
        with self._lock:
            nodes = [record.to_dict() for record in self.get_all_node_states().values()]
        dump = {
            "timestamp": datetime.now().astimezone().isoformat(timespec="seconds"),
            "execution_id": f"exec-{stamp}",
            "nodes": nodes,
        }
        data = yaml.safe_dump(dump, sort_keys=False, allow_unicode=True)
        with open(filename, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        print(f"📝 Node memory dumped to: {filename}")
        return filename

    # execution

    def _start_idle_nodes(self) -> None:
        for name, runtime in list(self._nodes.items()):
            if runtime.node.status in (NodeStatus.IDLE, None):
                self._start_node(name, runtime)

    def _start_node(self, name: str, runtime: RuntimeNode) -> None:
        record = runtime.node
        if record.status in (NodeStatus.RUNNING, NodeStatus.COMPLETED):
            return
        create = getattr(runtime.function, "create_function", None)
        if not callable(create):
            return
        paths = self._path_map.get(name) or Paths()
        inputs = [
            self._channels[p.name]
            for p in paths.inputs
            if p.active and p.name in self._channels
        ]
        outputs = [
            self._channels[p.name]
            for p in paths.outputs
            if p.active and p.name in self._channels
        ]
        step = create()
        record.status = NodeStatus.RUNNING
        with self._active_cond:
            self._active += 1
        threading.Thread(
            target=self._drive,
            args=(name, record, step, inputs, outputs),
            daemon=True,
        ).start()

    def _drive(
        self,
        name: str,
        record: Node,
        step: Callable[[list[Channel], list[Channel]], bool],
        inputs: list[Channel],
        outputs: list[Channel],
    ) -> None:
        try:
            print(f"[EXEC] Starting node {name} with {len(inputs)} inputs, {len(outputs)} outputs")
            while not step(inputs, outputs):
                pass
            print(f"[EXEC] Node {name} finished")
            if record.status == NodeStatus.RUNNING:
                record.status = NodeStatus.COMPLETED
            self._notify_parents(name)
        except Exception as exc:
            print(f"[EXEC] Node {name} failed: {exc}")
            record.on_process_fail({}, exc)
            _close_all(outputs)
        finally:
            with self._active_cond:
                self._active -= 1
                self._active_cond.notify_all()

    def _notify_parents(self, completed_name: str) -> None:
        with self._lock:
            completed = self._config_node(completed_name)
            if completed is None:
                return
            for ref in completed.metadata.owner_references:
                parent_name = ref.name
                parent = self._nodes.get(parent_name)
                if parent is None:
                    continue
                notify = getattr(parent.function, "notify_children_complete", None)
                if not callable(notify):
                    continue
                children = [
                    n.metadata.name
                    for n in self.config.nodes
                    if n.metadata.name != parent_name
                    and any(r.name == parent_name for r in n.metadata.owner_references)
                ]
                if all(
                    self._nodes[child].node.status == NodeStatus.COMPLETED
                    for child in children
                    if child in self._nodes
                ):
                    print(f"🎯 All children of target {parent_name} have completed, notifying...")
                    notify()

    def _wait_for_nodes(self) -> None:
        with self._active_cond:
            while self._active > 0:
                self._active_cond.wait()

    def execute(self) -> None:
        """Create and start every node, reconcile while they run, then dump memory.

        Raises ``ValueError`` when the configuration holds no nodes.
        """
        print("[RECONCILE] Starting reconcile loop execution")
        if self._memory_path is not None:
            try:
                self._copy_config_to_memory()
            except (OSError, yaml.YAMLError) as exc:
                print(f"Warning: Failed to copy config to memory: {exc}")
            else:
                self._last_hash = self._file_hash()
        self._last_config = Config()
        with self._lock:
            self._running = True
        self._stop.clear()
        loop: Optional[threading.Thread] = None
        try:
            print("[RECONCILE] Loading initial configuration")
            self.reconcile_nodes()
            with self._lock:
                if not self._nodes:
                    raise ValueError("configuration has no nodes to execute")
                for name, runtime in list(self._nodes.items()):
                    self._start_node(name, runtime)
            loop = threading.Thread(target=self._reconcile_loop, daemon=True)
            loop.start()
            self._wait_for_nodes()
        finally:
            self._stop.set()
            if loop is not None:
                loop.join()
            with self._lock:
                self._running = False

        print("[RECONCILE] Writing final memory dump...")
        try:
            self.dump_node_memory()
        except (OSError, yaml.YAMLError) as exc:
            print(f"Warning: Failed to dump node memory to YAML: {exc}")
        else:
            print("[RECONCILE] Memory dump completed successfully")
        print("[RECONCILE] Execution completed")

    # queries

    def get_node_state(self, node_name: str) -> Optional[Node]:
        """Return the record of a node, or ``None`` if there is no such node."""
        with self._lock:
            runtime = self._nodes.get(node_name)
            return runtime.node if runtime is not None else None

    def get_all_node_states(self) -> dict[str, Node]:
        with self._lock:
            return {name: runtime.node for name, runtime in self._nodes.items()}