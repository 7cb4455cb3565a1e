"""Declarative node model: metadata, specs, stats, configs and paths."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

import yaml

from flowchain.pipeline import Channel

StageFunction = Callable[[list[Channel], list[Channel]], bool]

SINK_TYPES = frozenset({"collector", "sink", "prime_sink", "fibonacci_sink"})


class NodeStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


class ChangeEventType(str, Enum):
    ADD = "ADD"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a mapping")
    return data


@dataclass
class OwnerReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    controller: bool = False
    block_owner_deletion: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "OwnerReference":
        d = _mapping(data, "owner reference")
        return cls(
            api_version=str(d.get("apiVersion", "")),
            kind=str(d.get("kind", "")),
            name=str(d.get("name", "")),
            controller=bool(d.get("controller", False)),
            block_owner_deletion=bool(d.get("blockOwnerDeletion", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
        }
        if self.controller:
            out["controller"] = True
        if self.block_owner_deletion:
            out["blockOwnerDeletion"] = True
        return out


@dataclass
class Metadata:
    name: str = ""
    type: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "Metadata":
        d = _mapping(data, "metadata")
        labels = _mapping(d.get("labels"), "labels")
        refs = d.get("ownerReferences") or []
        return cls(
            name=str(d.get("name", "")),
            type=str(d.get("type", "")),
            labels={str(k): str(v) for k, v in labels.items()},
            owner_references=[OwnerReference.from_dict(r) for r in refs],
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "labels": dict(self.labels),
        }
        if self.owner_references:
            out["ownerReferences"] = [r.to_dict() for r in self.owner_references]
        return out


@dataclass
class NodeSpec:
    params: dict[str, Any] = field(default_factory=dict)
    inputs: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "NodeSpec":
        d = _mapping(data, "spec")
        params = _mapping(d.get("params"), "params")
        inputs = [
            {str(k): str(v) for k, v in _mapping(sel, "input selector").items()}
            for sel in d.get("inputs") or []
        ]
        return cls(params=dict(params), inputs=inputs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"params": dict(self.params)}
        if self.inputs:
            out["inputs"] = [dict(sel) for sel in self.inputs]
        return out


@dataclass
class NodeStats:
    average_wait_time: float = 0.0
    total_processed: int = 0
    total_wait_time: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> "NodeStats":
        d = _mapping(data, "stats")

        def pick(short: str, long: str, default: Any) -> Any:
            if short in d:
                return d[short]
            return d.get(long, default)

        return cls(
            average_wait_time=float(pick("averagewaittime", "average_wait_time", 0.0)),
            total_processed=int(pick("totalprocessed", "total_processed", 0)),
            total_wait_time=float(pick("totalwaittime", "total_wait_time", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "averagewaittime": self.average_wait_time,
            "totalprocessed": self.total_processed,
            "totalwaittime": self.total_wait_time,
        }


def _timestamp() -> str:
    return str(int(time.time()))


@dataclass
class Node:
    metadata: Metadata = field(default_factory=Metadata)
    spec: NodeSpec = field(default_factory=NodeSpec)
    stats: NodeStats = field(default_factory=NodeStats)
    status: Optional[NodeStatus] = None
    state: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "Node":
        d = _mapping(data, "node")
        raw_status = d.get("status")
        return cls(
            metadata=Metadata.from_dict(d.get("metadata")),
            spec=NodeSpec.from_dict(d.get("spec")),
            stats=NodeStats.from_dict(d.get("stats")),
            status=NodeStatus(raw_status) if raw_status else None,
            state=dict(_mapping(d.get("state"), "state")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
        }
        if self.stats != NodeStats():
            out["stats"] = self.stats.to_dict()
        if self.status is not None:
            out["status"] = self.status.value
        if self.state:
            out["state"] = dict(self.state)
        return out

    def store_state(self, key: str, value: Any) -> None:
        self.state[key] = value

    def get_state(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def on_process_end(self, final_state: Mapping[str, Any]) -> None:
        """Mark the node completed and record its final state and stats."""
        self.status = NodeStatus.COMPLETED
        self.state.update(final_state)
        self.store_state("completion_time", _timestamp())
        self.store_state("final_stats", self.stats.to_dict())

    def on_process_fail(self, error_state: Mapping[str, Any], error: BaseException) -> None:
        """Mark the node failed and record the error and stats at failure."""
        self.status = NodeStatus.FAILED
        self.state.update(error_state)
        self.store_state("error", str(error))
        self.store_state("failure_time", _timestamp())
        self.store_state("stats_at_failure", self.stats.to_dict())


@dataclass(frozen=True)
class ConnectivityMetadata:
    """Connection limits of a node type; ``None`` maxima mean unlimited."""

    required_inputs: int = 0
    required_outputs: int = 0
    max_inputs: Optional[int] = None
    max_outputs: Optional[int] = None
    node_type: str = ""
    description: str = ""


class ProcessingNode(ABC):
    """Base for runnable node types that carry a ``Node`` record."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        self._node = Node(
            metadata=metadata,
            spec=NodeSpec(params=dict(params or {})),
            status=NodeStatus.IDLE,
        )

    @property
    def node(self) -> Node:
        return self._node

    @property
    def metadata(self) -> Metadata:
        return self._node.metadata

    @property
    def stats(self) -> NodeStats:
        return self._node.stats

    @property
    def name(self) -> str:
        return self._node.metadata.name

    @abstractmethod
    def create_function(self) -> StageFunction:
        """Return the step function called with input and output channels."""

    def connectivity(self) -> Optional[ConnectivityMetadata]:
        """Connection limits, or ``None`` when the node declares none."""
        return None

    def stats_summary(self) -> dict[str, Any]:
        return {
            "total_processed": self.stats.total_processed,
            "average_wait_time": self.stats.average_wait_time,
            "total_wait_time": self.stats.total_wait_time,
        }


@dataclass
class Config:
    nodes: list[Node] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "Config":
        d = _mapping(data, "config")
        nodes = d.get("nodes") or []
        if not isinstance(nodes, list):
            raise ValueError("nodes must be a list")
        return cls(nodes=[Node.from_dict(n) for n in nodes])

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [n.to_dict() for n in self.nodes]}


@dataclass
class PathInfo:
    channel: Channel
    name: str
    active: bool = True


@dataclass
class Paths:
    inputs: list[PathInfo] = field(default_factory=list)
    outputs: list[PathInfo] = field(default_factory=list)

    def in_count(self) -> int:
        return len(self.inputs)

    def out_count(self) -> int:
        return len(self.outputs)

    def active_in_count(self) -> int:
        return sum(1 for p in self.inputs if p.active)

    def active_out_count(self) -> int:
        return sum(1 for p in self.outputs if p.active)


@dataclass
class ChangeEvent:
    type: ChangeEventType
    node_name: str
    node: Optional[Node] = None


def is_sink_node(node_type: str) -> bool:
    return node_type in SINK_TYPES


def int_param(params: Mapping[str, Any], key: str, default: int) -> int:
    """Read an integer parameter; floats are truncated, other types ignored."""
    value = params.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return default


def float_param(params: Mapping[str, Any], key: str, default: float) -> float:
    """Read a numeric parameter as a float; other types are ignored."""
    value = params.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return default


def load_config_from_yaml(filename: Union[str, Path]) -> Config:
    """Load a configuration; raises ``OSError`` or ``ValueError`` on failure."""
    text = Path(filename).read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"failed to parse YAML config: {exc}") from exc
    if data is None:
        return Config()
    return Config.from_dict(data)


def save_config_to_yaml(config: Config, filename: Union[str, Path]) -> None:
    Path(filename).write_text(
        yaml.safe_dump(config.to_dict(), sort_keys=False), encoding="utf-8"
    )