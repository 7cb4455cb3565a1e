"""Label-based wiring of runtime nodes, connectivity checks and change detection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from flowchain.model import (
    ChangeEvent,
    ChangeEventType,
    Config,
    ConnectivityMetadata,
    Metadata,
    Node,
    NodeSpec,
    PathInfo,
    Paths,
    is_sink_node,
)
from flowchain.pipeline import Channel

PATH_CAPACITY = 10

SINK_LEVEL = 100
MIDDLE_LEVEL = 50
SOURCE_LEVEL = 1


class ConnectionValidationError(ValueError):
    """Raised when a node's connections break its connectivity limits."""

    def __init__(self, node_name: str, message: str) -> None:
        super().__init__(message)
        self.node_name = node_name


@dataclass
class RuntimeNode:
    """A configured node together with the object that runs it."""

    metadata: Metadata
    spec: NodeSpec
    function: Any
    node: Node


def matches_selector(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    """True when every key of ``selector`` has the same value in ``labels``."""
    return all(labels.get(key, "") == value for key, value in selector.items())


def generate_paths(nodes: Mapping[str, RuntimeNode]) -> dict[str, Paths]:
    """Connect nodes whose labels match another node's input selectors.

    Each match gets one channel, shared by the producer's output path and the
    consumer's input path.
    """
    path_map: dict[str, Paths] = {name: Paths() for name in nodes}
    for name, runtime in nodes.items():
        for selector in runtime.spec.inputs:
            for other_name, other in nodes.items():
                if not matches_selector(other.metadata.labels, selector):
                    continue
                channel = Channel(PATH_CAPACITY)
                path_name = f"{other_name}_to_{name}"
                path_map[name].inputs.append(PathInfo(channel, path_name, True))
                path_map[other_name].outputs.append(PathInfo(channel, path_name, True))
    return path_map


def _connectivity(function: Any) -> Optional[ConnectivityMetadata]:
    method = getattr(function, "connectivity", None)
    if not callable(method):
        return None
    return method()


def validate_connections(
    nodes: Mapping[str, RuntimeNode], path_map: Mapping[str, Paths]
) -> None:
    """Raise ``ConnectionValidationError`` for the first node out of its limits."""
    for name, runtime in nodes.items():
        meta = _connectivity(runtime.function)
        if meta is None:
            continue
        paths = path_map.get(name) or Paths()
        in_count = len(paths.inputs)
        out_count = len(paths.outputs)
        prefix = f"validation failed for node {name}: node {meta.node_type}"
        if in_count < meta.required_inputs:
            raise ConnectionValidationError(
                name, f"{prefix} requires {meta.required_inputs} inputs, got {in_count}"
            )
        if meta.node_type != "sequence" and out_count < meta.required_outputs:
            raise ConnectionValidationError(
                name, f"{prefix} requires {meta.required_outputs} outputs, got {out_count}"
            )
        if meta.max_inputs is not None and in_count > meta.max_inputs:
            raise ConnectionValidationError(
                name, f"{prefix} allows max {meta.max_inputs} inputs, got {in_count}"
            )
        if meta.max_outputs is not None and out_count > meta.max_outputs:
            raise ConnectionValidationError(
                name, f"{prefix} allows max {meta.max_outputs} outputs, got {out_count}"
            )


def nodes_equal(a: Node, b: Node) -> bool:
    """Compare the parts of two nodes that matter for reconciliation."""
    return (
        a.metadata.type == b.metadata.type
        and a.spec.params == b.spec.params
        and a.spec.inputs == b.spec.inputs
    )


def detect_config_changes(old_config: Config, new_config: Config) -> list[ChangeEvent]:
    """List additions and updates in new order, then deletions in old order."""
    old_nodes = {n.metadata.name: n for n in old_config.nodes}
    new_nodes = {n.metadata.name: n for n in new_config.nodes}
    changes: list[ChangeEvent] = []
    for name, new_node in new_nodes.items():
        old_node = old_nodes.get(name)
        if old_node is None:
            changes.append(ChangeEvent(ChangeEventType.ADD, name, new_node))
        elif not nodes_equal(old_node, new_node):
            changes.append(ChangeEvent(ChangeEventType.UPDATE, name, new_node))
    changes.extend(
        ChangeEvent(ChangeEventType.DELETE, name, None)
        for name in old_nodes
        if name not in new_nodes
    )
    return changes


def dependency_levels(nodes: Mapping[str, RuntimeNode]) -> dict[str, int]:
    """Rank nodes: sinks highest, sequence generators lowest, others between."""
    levels: dict[str, int] = {}
    for name, runtime in nodes.items():
        node_type = runtime.metadata.type
        if is_sink_node(node_type):
            levels[name] = SINK_LEVEL
        elif node_type == "sequence":
            levels[name] = SOURCE_LEVEL
        else:
            levels[name] = MIDDLE_LEVEL
    return levels


def sort_changes_by_dependency(
    changes: list[ChangeEvent], levels: Mapping[str, int]
) -> list[ChangeEvent]:
    """Order changes from sinks towards generators; unknown nodes come last."""
    return sorted(changes, key=lambda change: -levels.get(change.node_name, 0))