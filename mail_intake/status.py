"""In-memory status projection for the ``/status`` endpoint.

Persisted ingest state is authoritative; the tracker only adds an
ephemeral, time-stamped sample of recently seen messages and the result of
the last cycle.  Losing it on restart loses nothing that matters.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from .models import CycleResult, IngestStateView, MessageSample, StatusSnapshot


class StatusTracker:
    def __init__(self, sample_size: int = 20) -> None:
        self._samples: deque[MessageSample] = deque(maxlen=max(sample_size, 1))
        self._last_cycle: CycleResult | None = None

    def record_message(self, sample: MessageSample) -> None:
        self._samples.append(sample)

    def record_cycle(self, result: CycleResult) -> None:
        self._last_cycle = result

    @property
    def last_cycle(self) -> CycleResult | None:
        return self._last_cycle

    def recent_messages(self) -> list[MessageSample]:
        """Samples, newest first."""
        return list(reversed(self._samples))

    def snapshot(
        self,
        *,
        states: Iterable[IngestStateView],
        enabled: bool,
        poll_interval_seconds: float,
        in_flight: Iterable[str] = (),
    ) -> StatusSnapshot:
        return StatusSnapshot(
            enabled=enabled,
            poll_interval_seconds=poll_interval_seconds,
            mailboxes=list(states),
            last_cycle=self._last_cycle,
            in_flight=sorted(in_flight),
            recent_messages=self.recent_messages(),
        )
