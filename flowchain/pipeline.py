"""Channels and linear stage chains driven by background threads."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Iterable, Iterator, Optional

StartStage = Callable[["Channel"], bool]
Stage = Callable[[Optional["Channel"], "Channel"], bool]
EndStage = Callable[["Channel"], bool]
JoinStage = Callable[["Channel", "Channel", "Channel"], bool]


class ChannelClosed(Exception):
    """Raised on sending to a closed channel or receiving from a drained closed one."""


class Channel:
    """A thread-safe FIFO with an optional buffer.

    A capacity of zero makes the channel unbuffered: ``send`` returns only
    after a receiver has taken the item.
    """

    def __init__(self, capacity: int = 0) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self.capacity = capacity
        self._items: deque[Any] = deque()
        self._closed = False
        self._cond = threading.Condition()
        self._sent = 0
        self._taken = 0
        self._watchers: set[threading.Event] = set()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def _notify(self) -> None:
        self._cond.notify_all()
        for watcher in self._watchers:
            watcher.set()

    def _pop(self) -> Any:
        item = self._items.popleft()
        self._taken += 1
        self._notify()
        return item

    def _watch(self, event: threading.Event) -> None:
        with self._cond:
            self._watchers.add(event)

    def _unwatch(self, event: threading.Event) -> None:
        with self._cond:
            self._watchers.discard(event)

    def send(self, item: Any) -> None:
        """Put an item on the channel, blocking while the buffer is full."""
        with self._cond:
            limit = max(self.capacity, 1)
            while not self._closed and len(self._items) >= limit:
                self._cond.wait()
            if self._closed:
                raise ChannelClosed("send on closed channel")
            self._items.append(item)
            self._sent += 1
            ticket = self._sent
            self._notify()
            if self.capacity == 0:
                while self._taken < ticket and not self._closed:
                    self._cond.wait()

    def receive(self, timeout: Optional[float] = None) -> Any:
        """Take the next item, waiting up to ``timeout`` seconds if given."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    raise ChannelClosed("receive from closed channel")
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("receive timed out")
                    self._cond.wait(remaining)
            return self._pop()

    def try_receive(self) -> tuple[bool, Any]:
        """Return ``(True, item)`` if an item is ready, else ``(False, None)``."""
        with self._cond:
            if self._items:
                return True, self._pop()
            if self._closed:
                raise ChannelClosed("receive from closed channel")
            return False, None

    def close(self) -> None:
        """Close the channel; buffered items can still be received."""
        with self._cond:
            if self._closed:
                raise ChannelClosed("close of closed channel")
            self._closed = True
            self._notify()

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                yield self.receive()
            except ChannelClosed:
                return


def select_receive(
    channels: Iterable[Optional[Channel]], timeout: Optional[float] = None
) -> tuple[int, Any]:
    """Wait for the first ready channel and return ``(index, item)``.

    ``None`` entries are never ready. Raises ``ChannelClosed`` when every
    channel is closed and drained, and ``TimeoutError`` when time runs out.
    """
    slots = list(channels)
    live = [ch for ch in slots if ch is not None]
    if not live:
        raise ValueError("select needs at least one channel")
    deadline = None if timeout is None else time.monotonic() + timeout
    event = threading.Event()
    for ch in live:
        ch._watch(event)
    try:
        while True:
            event.clear()
            all_closed = True
            for index, ch in enumerate(slots):
                if ch is None:
                    continue
                try:
                    ready, item = ch.try_receive()
                except ChannelClosed:
                    continue
                all_closed = False
                if ready:
                    return index, item
            if all_closed:
                raise ChannelClosed("all channels are closed")
            if deadline is None:
                event.wait()
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("select timed out")
                event.wait(remaining)
    finally:
        for ch in live:
            ch._unwatch(event)


def merge_channels(target: Channel, source: Channel) -> threading.Thread:
    """Forward everything from ``source`` into ``target`` on a background thread."""

    def forward() -> None:
        try:
            for item in source:
                target.send(item)
        except ChannelClosed:
            return

    thread = threading.Thread(target=forward, daemon=True)
    thread.start()
    return thread


def _default_merge(a: Channel, b: Channel, out: Channel) -> bool:
    _, item = select_receive([a, b])
    out.send(item)
    return False


def _default_split(a: Channel, b: Channel, c: Channel) -> bool:
    item = a.receive()
    b.send(item)
    c.send(item)
    return False


class _Group:
    """Stages shared by chains that were split from or merged into each other."""

    def __init__(self) -> None:
        self.stages: list[tuple[Callable[[], bool], bool]] = []
        self.cond = threading.Condition()
        self.started = False
        self.pending = 0
        self.error: Optional[BaseException] = None

    def drive(self, step: Callable[[], bool], final: bool) -> None:
        try:
            while not step():
                pass
        except ChannelClosed:
            pass
        except Exception as exc:  # surfaced by Chain.run
            with self.cond:
                if self.error is None:
                    self.error = exc
                self.cond.notify_all()
            return
        if final:
            with self.cond:
                self.pending -= 1
                self.cond.notify_all()


class Chain:
    """A linear pipeline of stages joined by channels.

    Each stage is called repeatedly until it returns ``True``. Stages run on
    their own threads once ``run`` is called; ``run`` returns when every end
    stage has finished.
    """

    def __init__(self) -> None:
        self._group = _Group()
        self._head: Optional[Channel] = None
        self._tail: Optional[Channel] = None

    @property
    def head(self) -> Optional[Channel]:
        return self._head

    @property
    def tail(self) -> Optional[Channel]:
        return self._tail

    def _spawn(self, step: Callable[[], bool], final: bool = False) -> None:
        with self._group.cond:
            if self._group.started:
                raise RuntimeError("cannot add stages to a running chain")
            self._group.stages.append((step, final))

    def start(self, func: StartStage) -> None:
        """Begin the chain with a producer writing to a fresh channel."""
        if self._tail is not None:
            return
        out = Channel()
        self._head = self._tail = out
        self._spawn(lambda: func(out))

    def add(self, func: Stage) -> None:
        """Append a stage reading the current tail and writing a new one."""
        if self._tail is None:
            out = Channel()
            self._head = self._tail = out
            self._spawn(lambda: func(None, out))
            return
        prev, out = self._tail, Channel(10)
        self._tail = out
        self._spawn(lambda: func(prev, out))

    def end(self, func: EndStage) -> None:
        """Terminate the chain with a consumer of the current tail."""
        if self._tail is None:
            return
        prev = self._tail
        self._tail = None
        self._spawn(lambda: func(prev), final=True)

    def merge(self, other: "Chain", func: Optional[JoinStage] = None) -> None:
        """Join ``other``'s tail into this chain through a two-input stage."""
        join = func or _default_merge
        other_last = other._tail
        if other._group is not self._group:
            with other._group.cond:
                absorbed = list(other._group.stages)
            with self._group.cond:
                self._group.stages.extend(absorbed)
            other._group = self._group
        self.add(lambda a, out: join(a, other_last, out))
        other._tail = None

    def split(self, func: Optional[JoinStage] = None) -> "Chain":
        """Branch the stream into a new chain that runs alongside this one."""
        fork = func or _default_split
        branch = Chain()
        branch._group = self._group
        branch.start(lambda _out: True)
        branch_head = branch.head
        self.add(lambda a, b: fork(a, b, branch_head))
        return branch

    def run(self, timeout: Optional[float] = None) -> None:
        """Start every stage and wait for all end stages to finish."""
        group = self._group
        with group.cond:
            if group.started:
                raise RuntimeError("chain has already been run")
            group.started = True
            stages = list(group.stages)
            group.pending = sum(1 for _, final in stages if final)
        for step, final in stages:
            threading.Thread(target=group.drive, args=(step, final), daemon=True).start()
        deadline = None if timeout is None else time.monotonic() + timeout
        with group.cond:
            while group.pending > 0 and group.error is None:
                if deadline is None:
                    group.cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("chain did not finish in time")
                    group.cond.wait(remaining)
            if group.error is not None:
                raise group.error