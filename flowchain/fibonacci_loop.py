"""Fibonacci feedback-loop node types: seeds, a computer, a merger and a sink."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from flowchain.model import (
    ConnectivityMetadata,
    Metadata,
    ProcessingNode,
    StageFunction,
    int_param,
)
from flowchain.pipeline import Channel, select_receive

DEFAULT_MAX_COUNT = 15


@dataclass(frozen=True)
class FibonacciSeed:
    """A Fibonacci value with its position; ``is_end`` marks a control message."""

    value: int
    position: int
    is_end: bool = False


END_SEED = FibonacciSeed(0, -1, True)


class SeedGenerator(ProcessingNode):
    """Emits the seeds 0 and 1, then an end marker carrying ``max_count``."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        self.max_count = int_param(params or {}, "max_count", DEFAULT_MAX_COUNT)

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=0,
            required_outputs=1,
            max_inputs=0,
            max_outputs=None,
            node_type="seed_generator",
            description="Fibonacci seed generator",
        )

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not outputs:
                return True
            out = outputs[0]
            out.send(FibonacciSeed(0, 0))
            out.send(FibonacciSeed(1, 1))
            out.send(FibonacciSeed(self.max_count, -1, True))
            self.stats.total_processed = 2
            print(f"[SEED] Generated initial seeds: 0, 1 (max_count: {self.max_count})")
            return True

        return step


class FibonacciComputer(ProcessingNode):
    """Learns the two seeds, then computes the rest of the sequence on the end marker."""

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=1,
            required_outputs=1,
            max_inputs=1,
            max_outputs=None,
            node_type="fibonacci_computer",
            description="Fibonacci number computer",
        )

    def create_function(self) -> StageFunction:
        prev, current = 0, 1
        position = 2
        processed = 0
        initialized = False

        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            nonlocal prev, current, position, processed, initialized
            if not inputs or not outputs:
                return True
            out = outputs[0]
            seed: FibonacciSeed = inputs[0].receive()

            if seed.is_end:
                max_count = seed.value
                print(f"[COMPUTER] Received max count: {max_count}")
                while position < max_count:
                    following = prev + current
                    out.send(FibonacciSeed(following, position))
                    prev, current = current, following
                    position += 1
                    processed += 1
                out.send(END_SEED)
                self.stats.total_processed = processed
                print(f"[COMPUTER] Computed {processed} fibonacci numbers")
                return True

            if not initialized:
                if seed.position == 0:
                    prev = seed.value
                elif seed.position == 1:
                    current = seed.value
                    initialized = True
            return False

        return step


class FibonacciMerger(ProcessingNode):
    """Feeds seeds to the computer and forwards seeds and computed values to the sink.

    Input 0 carries seeds, input 1 the computer's results; output 0 goes to the
    computer and output 1 to the sink.
    """

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=2,
            required_outputs=2,
            max_inputs=2,
            max_outputs=None,
            node_type="fibonacci_merger",
            description="Fibonacci sequence merger",
        )

    def create_function(self) -> StageFunction:
        seed_closed = False
        computed_closed = False
        processed = 0
        max_count_sent = False

        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            nonlocal seed_closed, computed_closed, processed, max_count_sent
            if len(inputs) < 2 or len(outputs) < 2:
                return True
            seed_in, computed_in = inputs[0], inputs[1]
            computer_out, sink_out = outputs[0], outputs[1]

            index, seed = select_receive([seed_in, computed_in])
            if index == 0:
                if seed.is_end:
                    seed_closed = True
                    if not max_count_sent:
                        computer_out.send(seed)
                        max_count_sent = True
                else:
                    computer_out.send(seed)
                    sink_out.send(seed)
                    processed += 1
            elif seed.is_end:
                computed_closed = True
            else:
                sink_out.send(seed)
                processed += 1

            if seed_closed and computed_closed:
                sink_out.send(END_SEED)
                self.stats.total_processed = processed
                print(f"[MERGER] Merged {processed} fibonacci values")
                return True
            return False

        return step


class FibonacciLoopSink(ProcessingNode):
    """Collects the sequence and prints it when the end marker arrives."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        self.sequence: list[int] = []

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=1,
            required_outputs=0,
            max_inputs=1,
            max_outputs=0,
            node_type="fibonacci_sink",
            description="Fibonacci sequence collector",
        )

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not inputs:
                return True
            seed: FibonacciSeed = inputs[0].receive()
            if seed.is_end:
                self.stats.total_processed = len(self.sequence)
                print("\n🔢 Fibonacci Sequence (Loop Architecture):")
                print(" ".join(str(value) for value in self.sequence))
                print(f"\n📊 Total numbers collected: {len(self.sequence)}")
                return True
            self.sequence.append(seed.value)
            return False

        return step


def register_fibonacci_loop_node_types(builder: Any) -> None:
    """Register the Fibonacci feedback-loop node types with a builder."""
    builder.register_node_type("seed_generator", SeedGenerator)
    builder.register_node_type("fibonacci_computer", FibonacciComputer)
    builder.register_node_type("fibonacci_merger", FibonacciMerger)
    builder.register_node_type("fibonacci_sink", FibonacciLoopSink)