"""Command-line entry point running the bundled example graphs from YAML configuration."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

import yaml

from flowchain.builder import ChainBuilder
from flowchain.fibonacci import register_fibonacci_node_types
from flowchain.fibonacci_loop import register_fibonacci_loop_node_types
from flowchain.model import load_config_from_yaml
from flowchain.owner import register_owner_node_types
from flowchain.prime import register_prime_node_types
from flowchain.qnet import register_qnet_node_types


@dataclass(frozen=True)
class _Demo:
    title: str
    config: str
    register: Callable[[ChainBuilder], None]
    running: str
    done: tuple[str, ...]
    intro: tuple[str, ...] = field(default=())


DEMOS: dict[str, _Demo] = {
    "qnet": _Demo(
        title="QNet Validation Demo",
        config="config-qnet.yaml",
        register=register_qnet_node_types,
        running="\nExecuting qnet simulation with reconcile loop...",
        done=("\n✅ QNet execution completed successfully!",),
    ),
    "prime": _Demo(
        title="Prime Sieve Demo (YAML Config)",
        config="config-prime.yaml",
        register=register_prime_node_types,
        running="\nExecuting prime sieve with reconcile loop...",
        done=("\n✅ Prime sieve execution completed!",),
    ),
    "fibonacci": _Demo(
        title="Fibonacci Sequence Demo (YAML Config)",
        config="config-fibonacci.yaml",
        register=register_fibonacci_node_types,
        running="\nExecuting fibonacci sequence with reconcile loop...",
        done=("\n✅ Fibonacci sequence execution completed!",),
    ),
    "fibonacci-loop": _Demo(
        title="🔄 Fibonacci Loop Demo (Advanced Architecture)",
        config="config-fibonacci-loop.yaml",
        register=register_fibonacci_loop_node_types,
        running="🚀 Executing fibonacci loop with reconcile system...\n",
        done=(
            "",
            "✅ Fibonacci loop execution completed successfully!",
            "🔄 The feedback loop architecture successfully generated the sequence!",
        ),
        intro=(
            "This demo showcases a fibonacci sequence generator using:",
            "• Seed Generator: Provides initial values (0, 1)",
            "• Fibonacci Computer: Calculates next numbers in sequence",
            "• Merger: Creates feedback loop combining seeds + computed values",
            "• Sink: Collects and displays the complete sequence",
            "",
        ),
    ),
    "owner": _Demo(
        title="QNet Owner-Based Demo",
        config="sample-owner-config-input.yaml",
        register=register_owner_node_types,
        running="\nExecuting owner-based chain with dynamic node creation...",
        done=("✅ Owner-based execution completed successfully!",),
    ),
}


def _demo(kind: str) -> _Demo:
    try:
        return DEMOS[kind]
    except KeyError:
        raise ValueError(f"unknown demo: {kind}") from None


def _config_path(kind: str, config_path: Union[str, Path, None]) -> Path:
    return Path(config_path) if config_path else Path(_demo(kind).config)


def run_demo(kind: str, config_path: Union[str, Path, None] = None) -> ChainBuilder:
    """Load a configuration, run it with the node types of ``kind`` and return the builder."""
    demo = _demo(kind)
    path = _config_path(kind, config_path)
    print(demo.title)
    print("=" * len(demo.title))
    for line in demo.intro:
        print(line)

    config = load_config_from_yaml(path)
    print(f"Loaded {len(config.nodes)} nodes from configuration")

    builder = ChainBuilder(config)
    demo.register(builder)
    print(demo.running)
    builder.execute()

    print("\n📊 Final Node States:")
    for name, state in builder.get_all_node_states().items():
        status = getattr(state.status, "value", state.status)
        print(f"  {name}: {status} (processed: {state.stats.total_processed})")
    for line in demo.done:
        print(line)
    return builder


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowchain", description="Run an example node graph from YAML configuration."
    )
    parser.add_argument("kind", choices=sorted(DEMOS), help="which example graph to run")
    parser.add_argument("--config", help="configuration file (defaults to the example's own)")
    args = parser.parse_args(argv)

    path = _config_path(args.kind, args.config)
    try:
        run_demo(args.kind, path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error loading {path}: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())