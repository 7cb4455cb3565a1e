"""Fibonacci node types: a sequence generator, a range filter and a collecting sink."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from flowchain.model import Metadata, ProcessingNode, StageFunction, int_param
from flowchain.pipeline import Channel


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class FibonacciGenerator(ProcessingNode):
    """Emits the first ``count`` Fibonacci numbers, then closes its output."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        self.count = int_param(params or {}, "count", 20)

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not outputs:
                return True
            out = outputs[0]
            a, b = 0, 1
            for _ in range(self.count):
                out.send(a)
                a, b = b, a + b
            out.close()
            return True

        return step


class FibonacciFilter(ProcessingNode):
    """Passes on integers between ``min_value`` and ``max_value`` inclusive."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        params = params or {}
        self.min_value = int_param(params, "min_value", 0)
        self.max_value = int_param(params, "max_value", 1000000)

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not inputs or not outputs:
                return True
            out = outputs[0]
            for value in inputs[0]:
                if not _is_int(value):
                    continue
                if self.min_value <= value <= self.max_value:
                    out.send(value)
                self.stats.total_processed += 1
            out.close()
            return True

        return step


class FibonacciSink(ProcessingNode):
    """Prints and collects the numbers it receives."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        self.numbers: list[int] = []

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not inputs:
                return True
            print("Fibonacci numbers:")
            for value in inputs[0]:
                if not _is_int(value):
                    continue
                self.numbers.append(value)
                print(f"{value} ", end="")
                self.stats.total_processed += 1
            print(f"\n\nTotal fibonacci numbers collected: {len(self.numbers)}")
            self.node.store_state("numbers", list(self.numbers))
            self.node.store_state("count", len(self.numbers))
            return True

        return step


def register_fibonacci_node_types(builder: Any) -> None:
    """Register the Fibonacci node types with a builder."""
    builder.register_node_type("fibonacci_generator", FibonacciGenerator)
    builder.register_node_type("fibonacci_filter", FibonacciFilter)
    builder.register_node_type("fibonacci_sink", FibonacciSink)