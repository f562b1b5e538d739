"""
Shared fakes for the external collaborators: scorer, snapshot assembler,
delivery channel, change channel subscription, and a manual clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional, Union

import pytest

from riskwatch.collaborators import ChannelDisconnected, ChannelMessage
from riskwatch.engine import RiskWatchEngine
from riskwatch.models import (
    AlertDescriptor,
    ClinicalSnapshot,
    NotificationRequest,
    Priority,
    RiskResult,
)
from riskwatch.store import InMemoryClinicalStore


class ManualClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAssembler:
    """Serves snapshots set by the test; unknown patients load as None."""

    def __init__(self) -> None:
        self.snapshots: dict[str, ClinicalSnapshot] = {}
        self.loads = 0

    def set_markers(self, patient_id: str, **observations: float) -> ClinicalSnapshot:
        snapshot = ClinicalSnapshot(patient_id=patient_id, observations=observations)
        self.snapshots[patient_id] = snapshot
        return snapshot

    def load(self, patient_id: str) -> Optional[ClinicalSnapshot]:
        self.loads += 1
        return self.snapshots.get(patient_id)


class FakeScorer:
    """Returns the priority configured per patient; can be told to fail."""

    def __init__(self) -> None:
        self.results: dict[str, RiskResult] = {}
        self.failures_remaining = 0
        self.calls = 0

    def set(self, patient_id: str, priority: Priority, score: float = 0.0, alerts: int = 0) -> None:
        self.results[patient_id] = RiskResult(
            score=score,
            priority=priority,
            alerts=[
                AlertDescriptor(code=f"ALERT_{i}", severity=priority, message=f"Alert {i}")
                for i in range(alerts)
            ],
        )

    def compute_risk(self, snapshot: ClinicalSnapshot) -> RiskResult:
        self.calls += 1
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ConnectionError("scoring service unavailable")
        return self.results.get(snapshot.patient_id, RiskResult(score=0.0, priority=Priority.LOW))


class RecordingChannel:
    """Delivery channel that records every request."""

    def __init__(self, accept: bool = True, fail: bool = False) -> None:
        self.accept = accept
        self.fail = fail
        self.sent: list[NotificationRequest] = []

    def send(self, request: NotificationRequest) -> bool:
        if self.fail:
            raise RuntimeError("smtp relay down")
        self.sent.append(request)
        return self.accept


Script = Union[Exception, list[Union[ChannelMessage, Exception]]]


class ScriptedSubscription:
    """Each ``listen()`` call consumes the next script.

    A script is either an exception (raised on connect) or a list of
    messages, where an exception element is raised mid-stream.  When the
    scripts run out the channel closes.
    """

    def __init__(self, scripts: list[Script]) -> None:
        self.scripts = list(scripts)
        self.connects = 0

    def listen(self, channels: list[str]) -> Iterator[ChannelMessage]:
        self.connects += 1
        if not self.scripts:
            return iter(())
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        return self._stream(script)

    @staticmethod
    def _stream(items) -> Iterator[ChannelMessage]:
        for item in items:
            if isinstance(item, Exception):
                raise item
            yield item


def message(patient_id: str, table: str = "observations", channel: str = "patient_data_updated") -> ChannelMessage:
    payload = (
        f'{{"patient_id": "{patient_id}", "mrn": "MRN-{patient_id}", '
        f'"table": "{table}", "timestamp": "2026-03-02T09:00:00Z"}}'
    )
    return ChannelMessage(channel=channel, payload=payload)


def disconnected() -> ChannelDisconnected:
    return ChannelDisconnected("connection reset by peer")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def assembler() -> FakeAssembler:
    return FakeAssembler()


@pytest.fixture
def scorer() -> FakeScorer:
    return FakeScorer()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def store() -> InMemoryClinicalStore:
    return InMemoryClinicalStore()


@pytest.fixture
def engine(store, assembler, scorer, channel, clock):
    eng = RiskWatchEngine(
        store,
        assembler,
        scorer,
        channel=channel,
        clock=clock,
        sleep=lambda seconds: None,
    )
    yield eng
    eng.close()
