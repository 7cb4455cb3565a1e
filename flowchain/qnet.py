"""Queueing-network node types: packet generator, queue, time-ordered combiner and sink."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from flowchain.model import (
    ConnectivityMetadata,
    Metadata,
    ProcessingNode,
    StageFunction,
    int_param,
)
from flowchain.pipeline import Channel, ChannelClosed, select_receive


@dataclass(frozen=True)
class QueuePacket:
    """A packet with its sequence number and the time it leaves a stage.

    A negative number marks the end of the stream.
    """

    num: int
    time: float

    def is_ended(self) -> bool:
        return self.num < 0


END_PACKET = QueuePacket(-1, 0.0)


def _strict_float(params: Mapping[str, Any], key: str, default: float) -> float:
    value = params.get(key)
    return value if isinstance(value, float) else default


def _strict_str(params: Mapping[str, Any], key: str, default: str) -> str:
    value = params.get(key)
    return value if isinstance(value, str) else default


class _QNetNode(ProcessingNode):
    node_type = ""

    def __init__(
        self,
        metadata: Metadata,
        params: Optional[Mapping[str, Any]] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(metadata, params)
        self._rng = rng if rng is not None else random.Random()

    def _exp(self) -> float:
        return self._rng.expovariate(1.0)


class Generator(_QNetNode):
    """Emits ``count - 1`` packets with exponential inter-arrival times, then an end packet."""

    node_type = "sequence"

    def __init__(
        self,
        metadata: Metadata,
        params: Optional[Mapping[str, Any]] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(metadata, params, rng=rng)
        params = params or {}
        self.rate = _strict_float(params, "rate", 1.0)
        self.count = int_param(params, "count", 100)

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=0,
            required_outputs=1,
            max_inputs=0,
            max_outputs=None,
            node_type="sequence",
            description="Packet generator node",
        )

    def create_function(self) -> StageFunction:
        clock = 0.0
        sent = 0

        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            nonlocal clock, sent
            if not outputs:
                return True
            out = outputs[0]
            sent += 1
            if sent >= self.count:
                self.stats.total_processed = sent - 1
                self.stats.average_wait_time = 0.0
                self.stats.total_wait_time = 0.0
                out.send(END_PACKET)
                print(f"[GENERATOR] Generated {sent - 1} packets")
                return True
            clock += self.rate * self._exp()
            out.send(QueuePacket(sent, clock))
            return False

        return step


class Queue(_QNetNode):
    """A single-server queue with exponential service times."""

    node_type = "queue"

    def __init__(
        self,
        metadata: Metadata,
        params: Optional[Mapping[str, Any]] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(metadata, params, rng=rng)
        self.service_time = _strict_float(params or {}, "service_time", 1.0)

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=1,
            required_outputs=1,
            max_inputs=1,
            max_outputs=None,
            node_type="queue",
            description="Queue processing node",
        )

    def create_function(self) -> StageFunction:
        busy_until = 0.0
        wait_sum = 0.0
        last_num = 0

        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            nonlocal busy_until, wait_sum, last_num
            if not inputs or not outputs:
                return True
            out = outputs[0]
            packet: QueuePacket = inputs[0].receive()
            if packet.is_ended():
                if last_num > 0:
                    average = wait_sum / last_num
                    self.stats.average_wait_time = average
                    self.stats.total_processed = last_num
                    self.stats.total_wait_time = wait_sum
                    print(
                        f"[QUEUE {self.name}] Service: {self.service_time:.2f}, "
                        f"Processed: {last_num}, Avg Delay: {average:.3f}"
                    )
                out.send(packet)
                return True
            busy_until = max(busy_until, packet.time)
            busy_until += self.service_time * self._exp()
            out.send(QueuePacket(packet.num, busy_until))
            wait_sum += busy_until - packet.time
            last_num = packet.num
            return False

        return step


class Combiner(_QNetNode):
    """Merges several streams, always forwarding the earliest buffered packet."""

    node_type = "combiner"

    def __init__(
        self,
        metadata: Metadata,
        params: Optional[Mapping[str, Any]] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(metadata, params, rng=rng)
        self.operation = _strict_str(params or {}, "operation", "merge")

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=2,
            required_outputs=1,
            max_inputs=None,
            max_outputs=None,
            node_type="combiner",
            description="Stream combiner node",
        )

    def create_function(self) -> StageFunction:
        processed = 0
        closed: list[bool] = []
        buffer: list[QueuePacket] = []

        def take(index: int, packet: QueuePacket) -> None:
            if packet.is_ended():
                closed[index] = True
            else:
                buffer.append(packet)

        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            nonlocal processed, closed
            if not inputs or not outputs:
                return True
            out = outputs[0]
            if len(closed) != len(inputs):
                closed = [False] * len(inputs)

            if all(closed) and not buffer:
                self.stats.total_processed = processed
                self.stats.average_wait_time = 0.0
                self.stats.total_wait_time = 0.0
                print(f"[COMBINER] Operation: {self.operation}, Processed {processed} packets")
                out.send(END_PACKET)
                return True

            for index, channel in enumerate(inputs):
                if closed[index]:
                    continue
                try:
                    ready, packet = channel.try_receive()
                except ChannelClosed:
                    closed[index] = True
                    continue
                if ready:
                    take(index, packet)

            if not buffer and not all(closed):
                waiting = [None if closed[i] else ch for i, ch in enumerate(inputs)]
                try:
                    index, packet = select_receive(waiting)
                except ChannelClosed:
                    closed = [True] * len(inputs)
                else:
                    take(index, packet)

            if buffer:
                earliest = min(range(len(buffer)), key=lambda i: buffer[i].time)
                packet = buffer.pop(earliest)
                processed += 1
                out.send(packet)
            return False

        return step


class Sink(_QNetNode):
    """Counts packets until the end packet arrives."""

    node_type = "sink"

    def __init__(
        self,
        metadata: Metadata,
        params: Optional[Mapping[str, Any]] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(metadata, params, rng=rng)
        self.received = 0

    def connectivity(self) -> ConnectivityMetadata:
        return ConnectivityMetadata(
            required_inputs=1,
            required_outputs=0,
            max_inputs=None,
            max_outputs=0,
            node_type="sink",
            description="Data sink/collector node",
        )

    def create_function(self) -> StageFunction:
        def step(inputs: list[Channel], outputs: list[Channel]) -> bool:
            if not inputs:
                return True
            packet: QueuePacket = inputs[0].receive()
            if packet.is_ended():
                self.stats.total_processed = self.received
                self.stats.average_wait_time = 0.0
                self.stats.total_wait_time = 0.0
                print(f"[SINK] Total received: {self.received} packets")
                return True
            self.received += 1
            return False

        return step


def register_qnet_node_types(builder: Any) -> None:
    """Register the queueing-network node types with a builder."""
    builder.register_node_type("sequence", Generator)
    builder.register_node_type("queue", Queue)
    builder.register_node_type("combiner", Combiner)
    builder.register_node_type("sink", Sink)
    builder.register_node_type("collector", Sink)