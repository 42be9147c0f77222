"""Fan-out point between the link and its consumers.

Every decoded sample is written to a one-slot "latest value" (last write wins,
never queued), pushed to registered observers, and offered to the recording
sink. The stream never reads the sink's buffer; whether a sample is kept is
the sink's decision.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .errors import ParseError
from .wire_codec import SensorSample

logger = logging.getLogger(__name__)

SampleObserver = Callable[[SensorSample], None]


class SampleSink(Protocol):
    def offer(self, sample: SensorSample, received_at: float) -> bool: ...


@dataclass
class StreamStats:
    """Running statistics of the sample stream.

    ``sample_rate`` is the instantaneous rate computed from the interval
    between the two latest samples, so it reacts immediately to link stalls.
    """

    samples_received: int = 0
    decode_errors: int = 0
    sample_rate: float = 0.0
    last_update: float = 0.0

    def update(self, now: float) -> None:
        self.samples_received += 1
        if self.last_update > 0:
            time_diff = now - self.last_update
            if time_diff > 0:
                self.sample_rate = 1.0 / time_diff
        self.last_update = now


class SampleStream:
    """Single-writer, multi-reader distribution of decoded samples."""

    def __init__(
        self,
        sink: Optional[SampleSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._lock = threading.Lock()
        self._latest: Optional[SensorSample] = None
        self._latest_received_at: Optional[float] = None
        self._observers: list[SampleObserver] = []
        self._stats = StreamStats()

    def attach(self, sink: Optional[SampleSink]) -> None:
        self._sink = sink

    def add_observer(self, observer: SampleObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: SampleObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    @property
    def latest(self) -> Optional[SensorSample]:
        with self._lock:
            return self._latest

    @property
    def latest_received_at(self) -> Optional[float]:
        with self._lock:
            return self._latest_received_at

    @property
    def stats(self) -> StreamStats:
        with self._lock:
            return StreamStats(**vars(self._stats))

    def publish(self, sample: SensorSample, received_at: Optional[float] = None) -> bool:
        """Distribute one sample.

        Returns:
            Whether the recording sink kept the sample.
        """
        if received_at is None:
            received_at = self._clock()

        with self._lock:
            self._latest = sample
            self._latest_received_at = received_at
            self._stats.update(received_at)

        for observer in list(self._observers):
            try:
                observer(sample)
            except Exception:
                logger.exception("Sample observer failed")

        sink = self._sink
        if sink is None:
            return False
        return sink.offer(sample, received_at)

    def report_decode_error(self, error: ParseError) -> None:
        with self._lock:
            self._stats.decode_errors += 1
        logger.debug("Decode error reported to stream: %s", error)

    def reset(self) -> None:
        """Forget the latest sample (the link went away)."""
        with self._lock:
            self._latest = None
            self._latest_received_at = None
            self._stats.sample_rate = 0.0
            self._stats.last_update = 0.0
