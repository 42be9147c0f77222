"""Labeled, time-bounded motion recording.

A :class:`RecordingSession` captures samples offered by the sample stream
into a buffer tagged with a user supplied label, and finalizes the buffer into
an immutable :class:`RecordedMotion` appended to a :class:`RecordingSet`.

State machine::

    IDLE/CLOSED --arm()--> ARMED --> ACTIVE --stop()/timer--> FINALIZING --> CLOSED
                                       |                          |
                                       +------ abort() -----------+--> IDLE
                                                     empty buffer ---> IDLE

Three independent triggers converge on the state machine: sample delivery
(:meth:`RecordingSession.offer`), the elapsed-time ticker
(:meth:`RecordingSession.tick`) and caller requests (``arm``/``stop``/
``abort``). All of them check and change state under one lock, so the
transition out of ``ACTIVE`` happens exactly once per session.

Sample accounting is driven by arrival time, not by when the state machine
gets around to acting: a sample belongs to the session if it arrived at or
after the arm time and at or before the cutoff. The cutoff is the duration
target for a timed stop and the moment of the request for a manual stop.
During the grace delay of ``FINALIZING``, samples that were already in flight
before the cutoff are still admitted; anything arriving later is counted in
``late_samples`` and not recorded.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterator, Optional, Union

from .errors import (
    EmptyRecording,
    InvalidDuration,
    InvalidLabel,
    NotCalibrated,
    RecordingInProgress,
    SessionAborted,
    SessionError,
)
from .wire_codec import SensorSample

logger = logging.getLogger(__name__)

DEFAULT_DURATION = 5.0
DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_GRACE_PERIOD = 0.25


def iso_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    ACTIVE = "active"
    FINALIZING = "finalizing"
    CLOSED = "closed"


@dataclass(frozen=True)
class RecordedMotion:
    """A finalized, labeled recording."""

    motion_name: str
    timestamp: str
    data: tuple[SensorSample, ...]

    @property
    def sample_count(self) -> int:
        return len(self.data)


class RecordingSet:
    """Ordered in-memory collection of recorded motions.

    Nothing is evicted automatically; the set only shrinks through
    :meth:`clear`.
    """

    def __init__(self) -> None:
        self._motions: list[RecordedMotion] = []
        self._lock = threading.Lock()

    def append(self, motion: RecordedMotion) -> None:
        with self._lock:
            self._motions.append(motion)

    def snapshot(self) -> tuple[RecordedMotion, ...]:
        with self._lock:
            return tuple(self._motions)

    def clear(self) -> None:
        with self._lock:
            self._motions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._motions)

    def __iter__(self) -> Iterator[RecordedMotion]:
        return iter(self.snapshot())


StateListener = Callable[[SessionState], None]
ProgressListener = Callable[[float], None]
MotionListener = Callable[[RecordedMotion], None]
ErrorListener = Callable[[SessionError], None]
FinalizeOutcome = Union[RecordedMotion, SessionError]


class RecordingSession:
    """Bounded-duration capture state machine.

    Args:
        recordings: Set finalized motions are appended to.
        duration: Default duration target in seconds.
        tick_interval: Seconds between progress updates.
        grace_period: Delay between leaving ``ACTIVE`` and freezing the buffer,
            admitting samples already in flight when the stop fired.
        calibration_check: Returns whether the peripheral completed a
            calibration write. ``arm`` fails with ``NotCalibrated`` otherwise.
        clock: Monotonic clock; must be the clock used to stamp arrivals.
        wall_clock: Source of the ``started_at`` timestamp.
    """

    def __init__(
        self,
        recordings: Optional[RecordingSet] = None,
        *,
        duration: float = DEFAULT_DURATION,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        calibration_check: Callable[[], bool] = lambda: True,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.recordings = recordings if recordings is not None else RecordingSet()
        self._default_duration = duration
        self._tick_interval = tick_interval
        self._grace_period = grace_period
        self._calibration_check = calibration_check
        self._clock = clock
        self._wall_clock = wall_clock

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_id = 0
        self._label = ""
        self._duration = duration
        self._started_mono = 0.0
        self._started_at: Optional[datetime] = None
        self._cutoff: Optional[float] = None
        self._samples: list[SensorSample] = []
        self._sample_count = 0
        self._late_samples = 0
        self._progress = 0.0

        self._ticker: Optional[asyncio.Task[None]] = None
        self._finalizer: Optional[asyncio.Task[FinalizeOutcome]] = None

        self._state_listeners: list[StateListener] = []
        self._progress_listeners: list[ProgressListener] = []
        self._motion_listeners: list[MotionListener] = []
        self._error_listeners: list[ErrorListener] = []

    # -- observation ---------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._state in (SessionState.ACTIVE, SessionState.FINALIZING)

    @property
    def label(self) -> str:
        with self._lock:
            return self._label

    @property
    def started_at(self) -> Optional[datetime]:
        with self._lock:
            return self._started_at

    @property
    def duration_target(self) -> float:
        with self._lock:
            return self._duration

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._sample_count

    @property
    def late_samples(self) -> int:
        with self._lock:
            return self._late_samples

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._progress_listeners.append(listener)

    def add_motion_listener(self, listener: MotionListener) -> None:
        self._motion_listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def _notify(self, listeners: list, value: object) -> None:
        for listener in list(listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Recording listener failed")

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("Session state: %s -> %s", self._state.value, state.value)
        self._state = state
        self._notify(self._state_listeners, state)

    # -- transitions ---------------------------------------------------

    def arm(self, label: str, duration: Optional[float] = None) -> None:
        """Open a new session and start accepting samples.

        When called from a running event loop, a ticker task advances
        progress every ``tick_interval`` and stops the session at the
        duration target. Outside an event loop the caller drives
        :meth:`tick` itself, and the session is finalized synchronously, with
        no grace delay, once the target is reached.

        Raises:
            RecordingInProgress: A session is already active or finalizing.
            InvalidLabel: ``label`` is empty or whitespace.
            InvalidDuration: ``duration`` is not a positive finite number.
            NotCalibrated: The peripheral has not been calibrated.
        """
        with self._lock:
            if self._state in (SessionState.ARMED, SessionState.ACTIVE, SessionState.FINALIZING):
                raise RecordingInProgress()

            label = (label or "").strip()
            target = self._default_duration if duration is None else duration
            try:
                if not label:
                    raise InvalidLabel()
                if not isinstance(target, (int, float)) or not math.isfinite(target) or target <= 0:
                    raise InvalidDuration()
                if not self._calibration_check():
                    raise NotCalibrated()
            except SessionError:
                self._set_state(SessionState.IDLE)
                raise

            self._set_state(SessionState.ARMED)
            self._session_id += 1
            self._label = label
            self._duration = float(target)
            self._samples = []
            self._sample_count = 0
            self._late_samples = 0
            self._progress = 0.0
            self._cutoff = None
            self._finalizer = None
            self._started_mono = self._clock()
            self._started_at = self._wall_clock()
            self._set_state(SessionState.ACTIVE)
            session_id = self._session_id

        logger.info("Recording started: label=%r duration=%.1fs", label, self._duration)
        self._notify(self._progress_listeners, 0.0)
        self._start_ticker(session_id)

    def offer(self, sample: SensorSample, received_at: float) -> bool:
        """Offer one sample; returns whether it was recorded."""
        with self._lock:
            if self._state is SessionState.ACTIVE:
                cutoff = self._started_mono + self._duration
            elif self._state is SessionState.FINALIZING and self._cutoff is not None:
                cutoff = self._cutoff
            else:
                return False

            if received_at < self._started_mono:
                return False
            if received_at > cutoff:
                self._late_samples += 1
                logger.debug("Late sample rejected (%.3fs past cutoff)", received_at - cutoff)
                return False

            self._samples.append(sample)
            self._sample_count += 1
            return True

    def tick(self) -> float:
        """Recompute progress from elapsed time; stop at the duration target."""
        with self._lock:
            if self._state is not SessionState.ACTIVE:
                return self._progress
            elapsed = self._clock() - self._started_mono
            self._progress = min(elapsed / self._duration, 1.0)
            progress = self._progress
            expired = elapsed >= self._duration
            deadline = self._started_mono + self._duration

        self._notify(self._progress_listeners, progress)
        if expired:
            logger.info("Recording duration reached")
            self._request_stop(deadline)
        return progress

    async def stop(self) -> Optional[RecordedMotion]:
        """Stop the active session and finalize it.

        Idempotent: while a session is finalizing, every caller awaits the same
        finalization and gets the same motion. With nothing to stop, returns
        ``None``.

        Raises:
            EmptyRecording: No sample was recorded; nothing is appended.
            SessionAborted: The link dropped before finalization completed.
        """
        with self._lock:
            if self._state is SessionState.ACTIVE:
                cutoff = min(self._clock(), self._started_mono + self._duration)
            else:
                cutoff = None
        task = self._request_stop(cutoff)
        if task is None:
            logger.debug("stop() ignored: no active recording")
            return None

        outcome = await asyncio.shield(task)
        if isinstance(outcome, SessionError):
            raise outcome
        return outcome

    def abort(self) -> Optional[SessionAborted]:
        """Discard the in-flight session (the link dropped).

        Returns:
            The ``SessionAborted`` error reported to error listeners, or
            ``None`` when no session was in flight.
        """
        with self._lock:
            if self._state not in (SessionState.ACTIVE, SessionState.FINALIZING):
                return None
            discarded = self._sample_count
            self._samples = []
            self._sample_count = 0
            self._cutoff = None
            self._progress = 0.0
            self._cancel_ticker()
            self._set_state(SessionState.IDLE)

        logger.warning("Recording aborted: %d samples discarded", discarded)
        error = SessionAborted()
        self._notify(self._error_listeners, error)
        return error

    # -- internals -----------------------------------------------------

    def _request_stop(
        self, cutoff: Optional[float]
    ) -> Optional[asyncio.Task[FinalizeOutcome]]:
        try:
            loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        with self._lock:
            if self._state is SessionState.FINALIZING:
                return self._finalizer
            if self._state is not SessionState.ACTIVE or cutoff is None:
                return None

            self._cutoff = cutoff
            self._set_state(SessionState.FINALIZING)
            self._cancel_ticker()
            session_id = self._session_id
            if loop is not None:
                self._finalizer = loop.create_task(self._finalize_after_grace(session_id))
                return self._finalizer

        # No running loop: finalize now, without the grace delay
        self._finalize(session_id)
        return None

    async def _finalize_after_grace(self, session_id: int) -> FinalizeOutcome:
        if self._grace_period > 0:
            await asyncio.sleep(self._grace_period)
        return self._finalize(session_id)

    def _finalize(self, session_id: int) -> FinalizeOutcome:
        error: SessionError
        with self._lock:
            if session_id != self._session_id or self._state is not SessionState.FINALIZING:
                return SessionAborted()

            if not self._samples:
                self._cutoff = None
                self._set_state(SessionState.IDLE)
                error = EmptyRecording()
                motion = None
            else:
                assert self._started_at is not None
                motion = RecordedMotion(
                    motion_name=self._label,
                    timestamp=iso_timestamp(self._started_at),
                    data=tuple(self._samples),
                )
                self.recordings.append(motion)
                self._progress = 1.0
                self._set_state(SessionState.CLOSED)

        if motion is None:
            logger.warning("Recording %r finalized with no samples", self._label)
            self._notify(self._error_listeners, error)
            return error

        logger.info(
            "Recording finalized: label=%r samples=%d late=%d",
            motion.motion_name,
            motion.sample_count,
            self._late_samples,
        )
        self._notify(self._motion_listeners, motion)
        return motion

    def _start_ticker(self, session_id: int) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; progress must be driven by tick()")
            return
        self._ticker = loop.create_task(self._run_ticker(session_id))

    def _cancel_ticker(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is None or ticker.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if ticker is not current:
            ticker.cancel()

    async def _run_ticker(self, session_id: int) -> None:
        try:
            while True:
                with self._lock:
                    if session_id != self._session_id or self._state is not SessionState.ACTIVE:
                        return
                    remaining = self._started_mono + self._duration - self._clock()
                await asyncio.sleep(max(0.0, min(self._tick_interval, remaining)))
                self.tick()
        except asyncio.CancelledError:
            pass
