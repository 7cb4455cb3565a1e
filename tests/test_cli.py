import pytest

from flowchain.cli import main, run_demo
from flowchain.model import Config, Metadata, Node, NodeSpec, save_config_to_yaml


def node(name, kind, labels, params=None, inputs=None):
    return Node(
        metadata=Metadata(name=name, type=kind, labels=labels),
        spec=NodeSpec(params=params or {}, inputs=inputs or []),
    )


def write(path, nodes):
    save_config_to_yaml(Config(nodes=nodes), path)
    return path


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def prime_config(path):
    return write(
        path,
        [
            node("gen", "prime_generator", {"role": "gen"}, {"start": 2, "end": 30}),
            node("filter", "prime_filter", {"role": "filter"}, {}, [{"role": "gen"}]),
            node("sink", "prime_sink", {"role": "sink"}, {}, [{"role": "filter"}]),
        ],
    )


def test_prime_demo_collects_primes(workdir):
    builder = run_demo("prime", prime_config(workdir / "prime.yaml"))
    primes = builder.get_node_state("sink").get_state("primes", None)
    assert primes
    assert all(all(p % d for d in range(2, p)) for p in primes)
    assert primes == sorted(primes)
    assert builder.get_node_state("sink").stats.total_processed == len(primes)


def test_fibonacci_demo_numbers(workdir):
    path = write(
        workdir / "fib.yaml",
        [
            node("gen", "fibonacci_generator", {"role": "gen"}, {"count": 10}),
            node("filter", "fibonacci_filter", {"role": "filter"}, {}, [{"role": "gen"}]),
            node("sink", "fibonacci_sink", {"role": "sink"}, {}, [{"role": "filter"}]),
        ],
    )
    builder = run_demo("fibonacci", path)
    numbers = builder.get_node_state("sink").get_state("numbers", None)
    assert len(numbers) == 10
    assert all(numbers[i] == numbers[i - 1] + numbers[i - 2] for i in range(2, len(numbers)))


def test_qnet_demo_counts_match(workdir):
    path = write(
        workdir / "qnet.yaml",
        [
            node("gen", "sequence", {"role": "source"}, {"rate": 1.0, "count": 20}),
            node("queue", "queue", {"role": "queue"}, {"service_time": 0.5}, [{"role": "source"}]),
            node("sink", "sink", {"role": "sink"}, {}, [{"role": "queue"}]),
        ],
    )
    builder = run_demo("qnet", path)
    generated = builder.get_node_state("gen").stats.total_processed
    assert generated > 0
    assert builder.get_node_state("sink").stats.total_processed == generated


def test_fibonacci_loop_demo_via_main(workdir, capsys):
    path = write(
        workdir / "loop.yaml",
        [
            node("seeds", "seed_generator", {"role": "seed"}, {"max_count": 8}),
            node(
                "merger",
                "fibonacci_merger",
                {"role": "merger"},
                {},
                [{"role": "seed"}, {"role": "computer"}],
            ),
            node("computer", "fibonacci_computer", {"role": "computer"}, {}, [{"role": "merger"}]),
            node("sink", "fibonacci_sink", {"role": "sink"}, {}, [{"role": "merger"}]),
        ],
    )
    assert main(["fibonacci-loop", "--config", str(path)]) == 0
    out = capsys.readouterr().out
    assert "Fibonacci Loop Demo" in out
    assert "Total numbers collected: 8" in out


def test_owner_demo_runs_children(workdir):
    path = write(workdir / "owner.yaml", [node("target", "target", {"role": "target"}, {"max_display": 5})])
    builder = run_demo("owner", path)
    states = builder.get_all_node_states()
    assert {"number-generator", "number-queue", "number-sink"} <= set(states)
    generated = states["number-generator"].stats.total_processed
    assert states["number-sink"].stats.total_processed == generated


def test_main_reports_missing_config(workdir, capsys):
    missing = workdir / "absent.yaml"
    assert main(["prime", "--config", str(missing)]) == 1
    assert f"Error loading {missing}" in capsys.readouterr().out


def test_run_demo_rejects_unknown_kind(workdir):
    with pytest.raises(ValueError):
        run_demo("nonexistent", workdir / "x.yaml")


def test_main_rejects_unknown_kind():
    with pytest.raises(SystemExit) as info:
        main(["nonexistent"])
    assert info.value.code == 2