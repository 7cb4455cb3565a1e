"""Prime sieve node types: a number generator, a memoising filter and a sink."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from flowchain.model import Metadata, ProcessingNode, StageFunction, int_param
from flowchain.pipeline import Channel


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class PrimeGenerator(ProcessingNode):
    """Emits every integer from ``start`` to ``end`` inclusive, then closes."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        params = params or {}
        self.start = int_param(params, "start", 2)
        self.end = int_param(params, "end", 100)

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not outputs:
                return True
            out = outputs[0]
            for value in range(self.start, self.end + 1):
                out.send(value)
            out.close()
            return True

        return step


class PrimeFilter(ProcessingNode):
    """Passes on only primes, testing against the primes it has already seen."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        self.prime = int_param(params or {}, "prime", 2)
        self.found_primes: list[int] = []

    def _is_prime(self, value: int) -> bool:
        if value < 2:
            return False
        if value == 2:
            return True
        for prime in self.found_primes:
            if prime * prime > value:
                break
            if value % prime == 0:
                return False
        return True

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not inputs or not outputs:
                return True
            out = outputs[0]
            for value in inputs[0]:
                if not _is_int(value):
                    continue
                if self._is_prime(value):
                    self.found_primes.append(value)
                    out.send(value)
                self.stats.total_processed += 1
            out.close()
            return True

        return step


class PrimeSink(ProcessingNode):
    """Prints and collects the primes it receives."""

    def __init__(self, metadata: Metadata, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(metadata, params)
        self.primes: list[int] = []

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not inputs:
                return True
            for value in inputs[0]:
                if not _is_int(value):
                    continue
                self.primes.append(value)
                print(value)
                self.stats.total_processed += 1
            self.node.store_state("primes", list(self.primes))
            self.node.store_state("count", len(self.primes))
            return True

        return step


def register_prime_node_types(builder: Any) -> None:
    """Register the prime sieve node types with a builder."""
    builder.register_node_type("prime_generator", PrimeGenerator)
    builder.register_node_type("prime_filter", PrimeFilter)
    builder.register_node_type("prime_sink", PrimeSink)