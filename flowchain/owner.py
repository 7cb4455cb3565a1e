"""Owner-based node types: a target that spawns child nodes and waits for them."""

from __future__ import annotations

import queue
import threading
from typing import Any, Callable, Mapping, Optional

from flowchain.model import (
    Metadata,
    Node,
    NodeSpec,
    OwnerReference,
    ProcessingNode,
    StageFunction,
    int_param,
)
from flowchain.pipeline import Channel
from flowchain.qnet import register_qnet_node_types
from flowchain.topology import ConnectionValidationError

OWNER_API_VERSION = "flowchain/v1"

_targets: dict[str, "Target"] = {}
_targets_lock = threading.Lock()


def _owner_reference(owner_name: str) -> OwnerReference:
    return OwnerReference(
        api_version=OWNER_API_VERSION,
        kind="Node",
        name=owner_name,
        controller=True,
        block_owner_deletion=True,
    )


class Target(ProcessingNode):
    """A parent node that adds its child nodes to the builder and waits for them."""

    def __init__(
        self,
        metadata: Metadata,
        params: Optional[Mapping[str, Any]] = None,
        *,
        builder: Any = None,
    ) -> None:
        super().__init__(metadata, params)
        self.max_display = int_param(params or {}, "max_display", 1000)
        self.child_nodes: list[Node] = []
        self.builder = builder
        self._children_done: queue.Queue[bool] = queue.Queue(maxsize=1)
        with _targets_lock:
            _targets[metadata.name] = self

    def create_child_nodes(self) -> list[Node]:
        """Build the generator, queue and sink children owned by this target."""
        owner = self.name
        generator = Node(
            metadata=Metadata(
                name="number-generator",
                type="sequence",
                labels={"role": "source", "owner": "child", "category": "producer"},
                owner_references=[_owner_reference(owner)],
            ),
            spec=NodeSpec(params={"count": self.max_display, "rate": 10.0}),
        )
        queue_node = Node(
            metadata=Metadata(
                name="number-queue",
                type="queue",
                labels={"role": "processor", "owner": "child", "category": "queue"},
                owner_references=[_owner_reference(owner)],
            ),
            spec=NodeSpec(
                params={"service_time": 0.1},
                inputs=[{"category": "producer"}],
            ),
        )
        sink = Node(
            metadata=Metadata(
                name="number-sink",
                type="sink",
                labels={"role": "collector", "category": "display"},
                owner_references=[_owner_reference(owner)],
            ),
            spec=NodeSpec(
                params={"display_format": "Number: %d"},
                inputs=[{"role": "processor"}],
            ),
        )
        self.child_nodes = [generator, queue_node, sink]
        return list(self.child_nodes)

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            name = self.name
            print(f"🎯 Target {name}: Managing child nodes with owner references")
            if self.builder is not None:
                print(f"🎯 Target {name}: Creating child nodes dynamically...")
                children = self.create_child_nodes()
                for child in children:
                    print(
                        f"🔧 Adding child node: {child.metadata.name} "
                        f"(type: {child.metadata.type})"
                    )
                self.builder.add_dynamic_nodes(children)
                print("🔧 Rebuilding connections with dynamic nodes...")
                try:
                    self.builder.rebuild_connections()
                except ConnectionValidationError as exc:
                    print(f"[RECONCILE] Validation failed: {exc}")
            print(f"🎯 Target {name}: Waiting for all child nodes to complete...")
            self._children_done.get()
            print(f"🎯 Target {name}: All child nodes completed, target finishing")
            return True

        return step

    def notify_children_complete(self) -> None:
        """Signal that the children are done; repeated signals are dropped."""
        try:
            self._children_done.put_nowait(True)
        except queue.Full:
            pass


def notify_target_completion(target_name: str, child_name: str) -> None:
    """Tell the registered target ``target_name`` that a child has completed."""
    with _targets_lock:
        target = _targets.get(target_name)
    if target is not None:
        print(f"📢 Child {child_name} notifying target {target_name} of completion")
        target.notify_children_complete()


class OwnerAwareNode:
    """Wraps a node so its completion is reported to its controlling owner."""

    def __init__(self, base_node: Any, metadata: Metadata) -> None:
        self.base_node = base_node
        self.node_name = metadata.name
        self.target_name = next(
            (
                ref.name
                for ref in metadata.owner_references
                if ref.controller and ref.kind == "Node"
            ),
            "",
        )

    def create_function(self) -> StageFunction:
        create = getattr(self.base_node, "create_function", None)
        if not callable(create):

            def fallback(inputs: list[Channel], outputs: list[Channel]) -> bool:
                print(f"⚠️  Node {self.node_name}: No CreateFunction available")
                return True

            return fallback

        original = create()

        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            result = original(inputs, outputs)
            if result and self.target_name:
                print(
                    f"💬 Child {self.node_name} completed, "
                    f"notifying target {self.target_name}"
                )
                notify_target_completion(self.target_name, self.node_name)
            return result

        return step

    def node(self) -> Optional[Node]:
        """The wrapped node's record, or ``None`` if it has none."""
        record = getattr(self.base_node, "node", None)
        if callable(record) and not isinstance(record, Node):
            record = record()
        return record if isinstance(record, Node) else None


def _owner_aware(factory: Callable[[Metadata, dict[str, Any]], Any]):
    def build(metadata: Metadata, params: dict[str, Any]) -> Any:
        base = factory(metadata, params)
        if metadata.owner_references:
            return OwnerAwareNode(base, metadata)
        return base

    return build


def register_owner_node_types(builder: Any) -> None:
    """Register the queueing types, the target type and owner-aware wrappers."""
    register_qnet_node_types(builder)

    def make_target(metadata: Metadata, params: dict[str, Any]) -> Target:
        return Target(metadata, params, builder=builder)

    builder.register_node_type("target", make_target)
    for node_type in ("sequence", "queue", "sink"):
        builder.register_node_type(node_type, _owner_aware(builder.factory_for(node_type)))