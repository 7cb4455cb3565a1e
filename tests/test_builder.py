import threading

import pytest
import yaml

from flowchain.builder import ChainBuilder, UnknownNodeTypeError
from flowchain.model import (
    ChangeEventType,
    Config,
    ConnectivityMetadata,
    Metadata,
    Node,
    NodeSpec,
    NodeStatus,
    OwnerReference,
    ProcessingNode,
    load_config_from_yaml,
    save_config_to_yaml,
)
from flowchain.prime import register_prime_node_types
from flowchain.topology import ConnectionValidationError


def prime_config(end=30):
    return Config(
        nodes=[
            Node(
                metadata=Metadata(name="numbers", type="prime_generator", labels={"role": "source"}),
                spec=NodeSpec(params={"start": 2, "end": end}),
            ),
            Node(
                metadata=Metadata(name="sieve", type="prime_filter", labels={"role": "filter"}),
                spec=NodeSpec(params={}, inputs=[{"role": "source"}]),
            ),
            Node(
                metadata=Metadata(name="primes", type="prime_sink", labels={"role": "sink"}),
                spec=NodeSpec(inputs=[{"role": "filter"}]),
            ),
        ]
    )


def prime_builder(**kwargs):
    builder = ChainBuilder(prime_config(), **kwargs)
    register_prime_node_types(builder)
    return builder


class Quick(ProcessingNode):
    def create_function(self):
        def step(inputs, outputs):
            return True

        return step


class NeedsInput(ProcessingNode):
    def create_function(self):
        def step(inputs, outputs):
            return True

        return step

    def connectivity(self):
        return ConnectivityMetadata(
            required_inputs=1, required_outputs=0, max_inputs=1, node_type="queue"
        )


class Exploding(ProcessingNode):
    def create_function(self):
        def step(inputs, outputs):
            raise RuntimeError("boom")

        return step


class Parent(ProcessingNode):
    def __init__(self, metadata, params=None):
        super().__init__(metadata, params)
        self.done = threading.Event()
        self.notified = False

    def notify_children_complete(self):
        self.notified = True
        self.done.set()

    def create_function(self):
        def step(inputs, outputs):
            self.done.wait(5)
            return True

        return step


def qnet_like_builder():
    config = Config(
        nodes=[
            Node(
                metadata=Metadata(name="gen-test", type="sequence", labels={"role": "source"}),
                spec=NodeSpec(params={"rate": 1.0, "count": 5}),
            )
        ]
    )
    builder = ChainBuilder(config)
    builder.register_node_type("sequence", Quick)
    builder.register_node_type("queue", NeedsInput)
    builder.add_dynamic_nodes(config.nodes)
    return builder


def test_unregistered_type_is_rejected():
    builder = qnet_like_builder()
    node = Node(
        metadata=Metadata(name="unregistered-type", type="fake-type"),
        spec=NodeSpec(params={}, inputs=[{"role": "source"}]),
    )
    with pytest.raises(UnknownNodeTypeError, match="fake-type"):
        builder.add_dynamic_node(node)
    assert builder.get_node_state("unregistered-type") is None
    assert [n.metadata.name for n in builder.config.nodes] == ["gen-test"]


def test_factory_for_unknown_type():
    builder = ChainBuilder()
    with pytest.raises(UnknownNodeTypeError):
        builder.factory_for("missing")


def test_factory_for_returns_registered():
    builder = ChainBuilder()
    builder.register_node_type("quick", Quick)
    assert builder.factory_for("quick") is Quick


def test_invalid_input_selector_fails_validation():
    builder = qnet_like_builder()
    builder.add_dynamic_node(
        Node(
            metadata=Metadata(name="invalid-input", type="queue"),
            spec=NodeSpec(params={"service_time": 0.5}, inputs=[{"role": "nonexistent"}]),
        )
    )
    with pytest.raises(ConnectionValidationError, match="requires 1 inputs, got 0"):
        builder.rebuild_connections()


def test_valid_node_is_wired():
    builder = qnet_like_builder()
    builder.add_dynamic_node(
        Node(
            metadata=Metadata(name="valid-queue", type="queue"),
            spec=NodeSpec(params={"service_time": 0.3}, inputs=[{"role": "source"}]),
        )
    )
    builder.rebuild_connections()
    paths = builder.path_map
    assert paths["valid-queue"].in_count() == 1
    assert paths["gen-test"].out_count() == 1
    assert paths["valid-queue"].inputs[0].name == "gen-test_to_valid-queue"
    assert builder.get_node_state("valid-queue").status == NodeStatus.IDLE


def test_adding_same_node_twice_does_not_duplicate_config():
    builder = qnet_like_builder()
    builder.add_dynamic_node(builder.config.nodes[0])
    assert len(builder.config.nodes) == 1
    assert set(builder.get_all_node_states()) == {"gen-test"}


def test_get_node_state_unknown_returns_none():
    assert ChainBuilder().get_node_state("nope") is None


def test_execute_prime_sieve(tmp_path):
    memory = tmp_path / "mem" / "memory.yaml"
    builder = prime_builder(memory_path=memory)
    builder.execute()
    sink = builder.get_node_state("primes")
    assert sink.get_state("primes") == [2, 3, 5, 7, 11, 13, 17, 19, 23, 29]
    assert sink.get_state("count") == 10
    statuses = {name: n.status for name, n in builder.get_all_node_states().items()}
    assert statuses == {
        "numbers": NodeStatus.COMPLETED,
        "sieve": NodeStatus.COMPLETED,
        "primes": NodeStatus.COMPLETED,
    }
    assert builder.running is False
    dumps = list((tmp_path / "mem").glob("memory-*.yaml"))
    assert len(dumps) == 1
    data = yaml.safe_load(dumps[0].read_text(encoding="utf-8"))
    assert data["execution_id"].startswith("exec-")
    assert sorted(n["metadata"]["name"] for n in data["nodes"]) == ["numbers", "primes", "sieve"]


def test_execute_empty_config_raises(tmp_path):
    builder = ChainBuilder(memory_path=tmp_path / "memory.yaml")
    with pytest.raises(ValueError):
        builder.execute()
    assert builder.running is False


def test_failing_node_is_marked_failed(tmp_path):
    config = Config(nodes=[Node(metadata=Metadata(name="bad", type="boom"))])
    builder = ChainBuilder(config, memory_path=tmp_path / "memory.yaml")
    builder.register_node_type("boom", Exploding)
    builder.execute()
    record = builder.get_node_state("bad")
    assert record.status == NodeStatus.FAILED
    assert record.get_state("error") == "boom"


def test_parent_notified_when_children_complete(tmp_path):
    created = []

    def make_parent(metadata, params):
        parent = Parent(metadata, params)
        created.append(parent)
        return parent

    owner = OwnerReference(api_version="gochain/v1", kind="Node", name="boss", controller=True)
    config = Config(
        nodes=[
            Node(metadata=Metadata(name="boss", type="target")),
            Node(metadata=Metadata(name="child", type="quick", owner_references=[owner])),
        ]
    )
    builder = ChainBuilder(config, memory_path=tmp_path / "memory.yaml")
    builder.register_node_type("target", make_parent)
    builder.register_node_type("quick", Quick)
    builder.execute()
    assert len(created) == 1
    assert created[0].notified is True
    assert builder.get_node_state("boss").status == NodeStatus.COMPLETED
    assert builder.get_node_state("child").status == NodeStatus.COMPLETED


def test_reconcile_initial_load_from_config():
    builder = prime_builder()
    changes = builder.reconcile_nodes()
    assert [(c.type, c.node_name) for c in changes] == [
        (ChangeEventType.ADD, "numbers"),
        (ChangeEventType.ADD, "sieve"),
        (ChangeEventType.ADD, "primes"),
    ]
    assert builder.path_map["primes"].in_count() == 1
    assert builder.reconcile_nodes() == []


def test_reconcile_applies_changes_sinks_first(tmp_path):
    memory = tmp_path / "memory.yaml"
    builder = prime_builder(memory_path=memory)
    save_config_to_yaml(builder.config, memory)
    initial = builder.reconcile_nodes()
    assert [c.type for c in initial] == [ChangeEventType.ADD] * 3

    edited = load_config_from_yaml(memory)
    edited.nodes[1].spec.params = {"prime": 3}
    edited.nodes = [
        edited.nodes[0],
        edited.nodes[1],
        Node(
            metadata=Metadata(name="other", type="prime_sink"),
            spec=NodeSpec(inputs=[{"role": "filter"}]),
        ),
    ]
    save_config_to_yaml(edited, memory)

    changes = builder.reconcile_nodes()
    assert [(c.type, c.node_name) for c in changes] == [
        (ChangeEventType.DELETE, "primes"),
        (ChangeEventType.UPDATE, "sieve"),
        (ChangeEventType.ADD, "other"),
    ]
    assert set(builder.get_all_node_states()) == {"numbers", "sieve", "other"}
    assert builder.get_node_state("sieve").spec.params == {"prime": 3}
    assert sorted(n.metadata.name for n in builder.config.nodes) == ["numbers", "other", "sieve"]


def test_write_stats_to_memory(tmp_path):
    memory = tmp_path / "memory.yaml"
    builder = prime_builder(memory_path=memory)
    builder.reconcile_nodes()
    builder.get_node_state("primes").stats.total_processed = 7
    builder.write_stats_to_memory()
    written = load_config_from_yaml(memory)
    assert [n.metadata.name for n in written.nodes] == ["numbers", "sieve", "primes"]
    by_name = {n.metadata.name: n for n in written.nodes}
    assert by_name["primes"].stats.total_processed == 7
    assert by_name["primes"].status == NodeStatus.IDLE


def test_dump_node_memory_defaults_to_memory_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    builder = prime_builder()
    builder.reconcile_nodes()
    path = builder.dump_node_memory()
    assert path.parent.name == "memory"
    assert path.name.startswith("memory-")
    data = yaml.safe_load((tmp_path / path).read_text(encoding="utf-8"))
    assert len(data["nodes"]) == 3
    assert data["execution_id"] == "exec-" + path.stem[len("memory-"):]