"""Bounded in-memory history streams and per-poll aggregation."""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict

DEFAULT_HISTORY_CAPACITY = 1024


class HistorySample(BaseModel):
    """A point-in-time sample; ``epoch`` is seconds since the Unix epoch (UTC)."""

    model_config = ConfigDict(frozen=True)

    epoch: int


class CPUUtilization(HistorySample):
    avg_load: float = 0


class MemoryUtilization(HistorySample):
    avg_memory_used: float = 0


class InterfaceUtilization(HistorySample):
    in_avg_bps: float = 0
    out_avg_bps: float = 0


class VolumePerformanceUtilization(HistorySample):
    read_avg_bps: float = 0
    write_avg_bps: float = 0


CPU_STREAM = "cpu"
MEMORY_STREAM = "memory"
NETWORK_COMBINED_STREAM = "network:combined"
VOLUME_COMBINED_STREAM = "volume:combined"


def network_stream(interface_name: str) -> str:
    return f"network:{interface_name}"


def volume_stream(volume_name: str) -> str:
    return f"volume:{volume_name}"


class HistoryStore:
    """Named ring buffers of history samples.

    Every stream shares the store's capacity. Appends are O(1) and evict the
    oldest sample once a stream is full. Streams are created on first append.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self._capacity = capacity
        self._streams: Dict[str, Deque[HistorySample]] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, stream: str, sample: HistorySample) -> None:
        buffer = self._streams.get(stream)
        if buffer is None:
            buffer = self._streams.setdefault(stream, deque(maxlen=self._capacity))
        buffer.append(sample)

    def get(
        self,
        stream: str,
        *,
        last: Optional[int] = None,
        since: Optional[int] = None,
    ) -> List[HistorySample]:
        """Return samples oldest first, optionally limited to a recent window.

        ``since`` keeps samples with ``epoch >= since``; ``last`` then keeps at
        most that many of the newest ones. Unknown streams yield an empty list.
        """
        buffer = self._streams.get(stream)
        if not buffer:
            return []

        samples = list(buffer)
        if since is not None:
            samples = [sample for sample in samples if sample.epoch >= since]
        if last is not None:
            if last <= 0:
                return []
            samples = samples[-last:]
        return samples

    def latest(self, stream: str) -> Optional[HistorySample]:
        buffer = self._streams.get(stream)
        if not buffer:
            return None
        return buffer[-1]

    def streams(self) -> List[str]:
        return sorted(self._streams)

    def __contains__(self, stream: object) -> bool:
        return stream in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def __iter__(self) -> Iterator[str]:
        return iter(self.streams())


class CombinedAccumulator:
    """Sum per-entity samples of one poll into a single combined sample.

    ``fields`` names the numeric sample fields to add up. The combined sample
    is built with the poll's epoch by ``factory`` and appended once on
    :meth:`commit`, even when nothing contributed.
    """

    def __init__(
        self,
        epoch: int,
        fields: tuple[str, ...],
        factory: Callable[..., HistorySample],
    ) -> None:
        self.epoch = epoch
        self._fields = fields
        self._factory = factory
        self._totals: Dict[str, float] = {name: 0 for name in fields}
        self.contributors = 0

    def add(self, sample: HistorySample) -> None:
        if sample.epoch != self.epoch:
            raise ValueError(
                f"Sample epoch {sample.epoch} does not match combined epoch {self.epoch}"
            )
        for name in self._fields:
            self._totals[name] += getattr(sample, name) or 0
        self.contributors += 1

    def build(self) -> HistorySample:
        return self._factory(epoch=self.epoch, **self._totals)

    def commit(self, store: HistoryStore, stream: str) -> HistorySample:
        combined = self.build()
        store.append(stream, combined)
        return combined
