"""History backfill state machine.

The device reports three metadata values (stored reading count, sampling
interval, seconds since the newest reading) independently and in any order.
Once all three are known a single backfill command is issued and the history
notifications that follow are turned into timestamped records.

``transition`` is a pure function of (state, event); ``HistoryFetchCoordinator``
holds the current state for callers that own a single serialized context.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Union
from uuid import UUID, uuid4

from models.records import MeasurementRecord
from services.decoder import (
    decode_history_chunk,
    encode_history_request,
    normalize_interval,
    parse_history_packet,
)

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = timedelta(seconds=120)


class MetadataKind(str, Enum):
    total_readings = "total_readings"
    interval = "interval"
    last_reading_age = "last_reading_age"


class FetchPhase(str, Enum):
    idle = "idle"
    accumulating = "accumulating"
    receiving = "receiving"


class FetchStatus(str, Enum):
    """Result of evaluating one event."""

    idle = "idle"
    waiting = "waiting"
    not_ready = "not_ready"
    incomplete_metadata = "incomplete_metadata"
    nothing_to_fetch = "nothing_to_fetch"
    already_fetching = "already_fetching"
    requested = "requested"
    chunk_received = "chunk_received"
    completed = "completed"
    malformed_chunk = "malformed_chunk"
    unexpected_chunk = "unexpected_chunk"
    timed_out = "timed_out"


@dataclass(frozen=True)
class MetadataArrived:
    kind: MetadataKind
    value: int


@dataclass(frozen=True)
class ChunkArrived:
    data: bytes


@dataclass(frozen=True)
class Tick:
    """Periodic check that lets a stalled backfill expire."""


FetchEvent = Union[MetadataArrived, ChunkArrived, Tick]


@dataclass(frozen=True)
class FetchRequest:
    """Correlates history notifications with the backfill that asked for them."""

    first_timestamp: datetime
    interval_seconds: int
    expected: int
    issued_at: datetime
    last_activity: datetime
    received: int = 0
    token: UUID = field(default_factory=uuid4)


@dataclass(frozen=True)
class FetchOutcome:
    token: UUID
    expected: int
    received: int
    completed: bool


@dataclass(frozen=True)
class DeviceFetchState:
    total_readings: Optional[int] = None
    interval_seconds: Optional[int] = None
    last_reading_age: Optional[int] = None
    is_fetching: bool = False
    remaining_records: int = 0
    request: Optional[FetchRequest] = None

    @property
    def metadata_complete(self) -> bool:
        return (
            self.total_readings is not None
            and self.interval_seconds is not None
            and self.last_reading_age is not None
        )

    @property
    def phase(self) -> FetchPhase:
        if self.is_fetching:
            return FetchPhase.receiving
        if (
            self.total_readings is None
            and self.interval_seconds is None
            and self.last_reading_age is None
        ):
            return FetchPhase.idle
        return FetchPhase.accumulating


@dataclass(frozen=True)
class Transition:
    state: DeviceFetchState
    status: FetchStatus
    records: List[MeasurementRecord] = field(default_factory=list)
    command: Optional[bytes] = None
    outcome: Optional[FetchOutcome] = None


def _record_metadata(state: DeviceFetchState, event: MetadataArrived) -> DeviceFetchState:
    if event.kind is MetadataKind.total_readings:
        return replace(state, total_readings=event.value)
    if event.kind is MetadataKind.interval:
        return replace(state, interval_seconds=normalize_interval(event.value))
    return replace(state, last_reading_age=event.value)


def _maybe_start(state: DeviceFetchState, now: datetime, ready: bool) -> Transition:
    # The is_fetching flag is the exclusion token: it is checked and set in
    # the same transition.
    if state.is_fetching:
        return Transition(state=state, status=FetchStatus.already_fetching)
    if not state.metadata_complete:
        return Transition(state=state, status=FetchStatus.incomplete_metadata)
    if not ready:
        return Transition(state=state, status=FetchStatus.not_ready)

    total = state.total_readings or 0
    if total <= 0:
        return Transition(state=state, status=FetchStatus.nothing_to_fetch)

    interval = state.interval_seconds or 0
    age = state.last_reading_age or 0
    last_timestamp = now - timedelta(seconds=age)
    first_timestamp = last_timestamp - timedelta(seconds=(total - 1) * interval)
    request = FetchRequest(
        first_timestamp=first_timestamp,
        interval_seconds=interval,
        expected=total,
        issued_at=now,
        last_activity=now,
    )
    new_state = replace(
        state, is_fetching=True, remaining_records=total, request=request
    )
    return Transition(
        state=new_state,
        status=FetchStatus.requested,
        command=encode_history_request(start_index=1),
    )


def _finish(state: DeviceFetchState) -> DeviceFetchState:
    return replace(state, is_fetching=False, remaining_records=0, request=None)


def _receive_chunk(state: DeviceFetchState, event: ChunkArrived, now: datetime) -> Transition:
    request = state.request
    if not state.is_fetching or request is None:
        return Transition(state=state, status=FetchStatus.unexpected_chunk)

    packet = parse_history_packet(event.data)
    if packet is None:
        return Transition(state=state, status=FetchStatus.malformed_chunk)

    offset = max(packet.start_index - 1, 0)
    chunk_start = request.first_timestamp + timedelta(
        seconds=offset * request.interval_seconds
    )
    records = decode_history_chunk(packet.payload, chunk_start, request.interval_seconds)

    # Count what was decoded; the header's declared count is not trusted.
    remaining = state.remaining_records - len(records)
    request = replace(request, received=request.received + len(records), last_activity=now)

    if remaining <= 0:
        outcome = FetchOutcome(
            token=request.token,
            expected=request.expected,
            received=request.received,
            completed=True,
        )
        return Transition(
            state=_finish(state),
            status=FetchStatus.completed,
            records=records,
            outcome=outcome,
        )

    return Transition(
        state=replace(state, remaining_records=remaining, request=request),
        status=FetchStatus.chunk_received,
        records=records,
    )


def _expire(state: DeviceFetchState, now: datetime, timeout: timedelta) -> Transition:
    request = state.request
    if not state.is_fetching or request is None:
        return Transition(state=state, status=FetchStatus.idle)
    if now - request.last_activity <= timeout:
        return Transition(state=state, status=FetchStatus.waiting)
    outcome = FetchOutcome(
        token=request.token,
        expected=request.expected,
        received=request.received,
        completed=False,
    )
    return Transition(
        state=_finish(state),
        status=FetchStatus.timed_out,
        outcome=outcome,
    )


def transition(
    state: DeviceFetchState,
    event: FetchEvent,
    *,
    now: datetime,
    ready: bool = True,
    timeout: timedelta = DEFAULT_FETCH_TIMEOUT,
) -> Transition:
    """Apply one event and return the next state plus its side effects.

    ``ready`` tells whether the transport currently exposes the command and
    history channels; without them a complete metadata triplet does not start
    a backfill.
    """
    if isinstance(event, MetadataArrived):
        return _maybe_start(_record_metadata(state, event), now, ready)
    if isinstance(event, ChunkArrived):
        return _receive_chunk(state, event, now)
    if isinstance(event, Tick):
        return _expire(state, now, timeout)
    raise TypeError(f"Unsupported fetch event: {event!r}")


class HistoryFetchCoordinator:
    """Holds the fetch state for one device session.

    Not thread-safe on its own: callers funnel every event through a single
    serialized context (see ``services.sync.SyncService``).
    """

    def __init__(self, timeout: timedelta = DEFAULT_FETCH_TIMEOUT) -> None:
        self.timeout = timeout
        self._state = DeviceFetchState()

    @property
    def state(self) -> DeviceFetchState:
        return self._state

    def handle(
        self,
        event: FetchEvent,
        *,
        ready: bool = True,
        now: Optional[datetime] = None,
    ) -> Transition:
        moment = now or datetime.now(timezone.utc)
        result = transition(self._state, event, now=moment, ready=ready, timeout=self.timeout)
        self._state = result.state
        self._log(result)
        return result

    def reset(self) -> None:
        """Forget metadata and any in-flight backfill (e.g. after a disconnect)."""
        self._state = DeviceFetchState()

    def _log(self, result: Transition) -> None:
        state = result.state
        if result.status is FetchStatus.requested:
            logger.info(
                "Requesting history backfill",
                extra={"status": result.status.value, "record_count": state.remaining_records},
            )
        elif result.status is FetchStatus.completed:
            logger.info(
                "History backfill completed",
                extra={
                    "status": result.status.value,
                    "record_count": result.outcome.received if result.outcome else None,
                },
            )
        elif result.status is FetchStatus.timed_out:
            outcome = result.outcome
            logger.warning(
                "History backfill timed out before all records arrived",
                extra={
                    "status": result.status.value,
                    "record_count": outcome.received if outcome else None,
                    "remaining": (outcome.expected - outcome.received) if outcome else None,
                },
            )
        elif result.status in {FetchStatus.malformed_chunk, FetchStatus.unexpected_chunk}:
            logger.debug("Ignoring history notification", extra={"status": result.status.value})
        elif result.status is FetchStatus.chunk_received and result.records:
            logger.debug(
                "History chunk decoded",
                extra={"record_count": len(result.records), "remaining": state.remaining_records},
            )
