import threading

import pytest

from flowchain.builder import ChainBuilder
from flowchain.fibonacci import (
    FibonacciFilter,
    FibonacciGenerator,
    FibonacciSink,
    register_fibonacci_node_types,
)
from flowchain.model import Config, Metadata, Node, NodeSpec, NodeStatus
from flowchain.pipeline import Channel


def _run_generator(params):
    gen = FibonacciGenerator(Metadata(name="gen"), params)
    out = Channel(100)
    assert gen.create_function()([], [out]) is True
    assert out.closed
    return list(out)


def test_generator_default_count():
    assert len(_run_generator({})) == 20


@pytest.mark.parametrize("count", [1, 2, 5, 12])
def test_generator_sequence_invariant(count):
    values = _run_generator({"count": count})
    assert len(values) == count
    assert values[:2] == [0, 1][:count]
    for i in range(2, len(values)):
        assert values[i] == values[i - 1] + values[i - 2]


def test_generator_float_count_truncates():
    assert len(_run_generator({"count": 6.9})) == 6


def test_generator_without_outputs_finishes():
    gen = FibonacciGenerator(Metadata(name="gen"), {"count": 3})
    assert gen.create_function()([], []) is True


def test_filter_bounds_and_count():
    filt = FibonacciFilter(Metadata(name="f"), {"min_value": 2, "max_value": 10.0})
    assert (filt.min_value, filt.max_value) == (2, 10)
    inp, out = Channel(100), Channel(100)
    for value in [0, 1, 2, "skip", 5, 10, 11, 3]:
        inp.send(value)
    inp.close()
    assert filt.create_function()([inp], [out]) is True
    assert list(out) == [2, 5, 10, 3]
    assert filt.stats.total_processed == 7


def test_filter_defaults():
    filt = FibonacciFilter(Metadata(name="f"), {})
    assert (filt.min_value, filt.max_value) == (0, 1000000)


def test_sink_collects_and_stores_state(capsys):
    sink = FibonacciSink(Metadata(name="s"), {})
    inp = Channel(10)
    for value in [1, 1, "x", 2]:
        inp.send(value)
    inp.close()
    assert sink.create_function()([inp], []) is True
    assert sink.numbers == [1, 1, 2]
    assert sink.node.get_state("numbers") == [1, 1, 2]
    assert sink.node.get_state("count") == 3
    assert sink.stats.total_processed == 3
    out = capsys.readouterr().out
    assert "Fibonacci numbers:" in out
    assert "Total fibonacci numbers collected: 3" in out


def test_register_fibonacci_node_types():
    builder = ChainBuilder()
    register_fibonacci_node_types(builder)

    gen = builder.factory_for("fibonacci_generator")(Metadata(name="g"), {"count": 4})
    assert isinstance(gen, FibonacciGenerator)
    out = Channel(10)
    assert gen.create_function()([], [out]) is True
    assert list(out) == [0, 1, 1, 2]

    filt = builder.factory_for("fibonacci_filter")(
        Metadata(name="f"), {"min_value": 3, "max_value": 8}
    )
    assert isinstance(filt, FibonacciFilter)
    assert (filt.min_value, filt.max_value) == (3, 8)

    sink = builder.factory_for("fibonacci_sink")(Metadata(name="s"), {})
    assert isinstance(sink, FibonacciSink)
    assert sink.name == "s"
    assert sink.numbers == []


def test_full_chain_through_builder(tmp_path):
    config = Config(
        nodes=[
            Node(
                metadata=Metadata(name="fib-gen", type="fibonacci_generator",
                                  labels={"role": "source"}),
                spec=NodeSpec(params={"count": 15}),
            ),
            Node(
                metadata=Metadata(name="fib-filter", type="fibonacci_filter",
                                  labels={"role": "filter"}),
                spec=NodeSpec(params={"min_value": 2, "max_value": 100},
                              inputs=[{"role": "source"}]),
            ),
            Node(
                metadata=Metadata(name="fib-sink", type="fibonacci_sink",
                                  labels={"role": "sink"}),
                spec=NodeSpec(params={}, inputs=[{"role": "filter"}]),
            ),
        ]
    )
    builder = ChainBuilder(config, memory_path=tmp_path / "memory.yaml")
    register_fibonacci_node_types(builder)
    runner = threading.Thread(target=builder.execute, daemon=True)
    runner.start()
    runner.join(timeout=30)
    assert not runner.is_alive()
    sink = builder.get_node_state("fib-sink")
    numbers = sink.get_state("numbers")
    assert numbers
    assert all(2 <= n <= 100 for n in numbers)
    assert numbers == sorted(numbers)
    assert sink.get_state("count") == len(numbers)
    assert builder.get_node_state("fib-filter").stats.total_processed == 15
    assert all(r.status == NodeStatus.COMPLETED for r in builder.get_all_node_states().values())