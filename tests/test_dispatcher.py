from __future__ import annotations

import datetime as dt
from typing import List, Sequence

import pytest

from scorewatch.config import DeliverySettings
from scorewatch.dispatcher import DeliveryDispatcher, DeliveryOutcome
from scorewatch.errors import GatewayError, InvalidAddress, TransientDeliveryFailure
from scorewatch.gateway import PushGateway, PushMessage, RecipientResult, RecipientStatus, RecordingGateway
from scorewatch.models import (
    DetectedEvent,
    EventKind,
    EventMetadata,
    EventPriority,
    TargetAudience,
    make_event_id,
)
from scorewatch.preferences import SportPreference, SubscriberPreference

NOW = dt.datetime(2024, 3, 10, 20, 0, tzinfo=dt.timezone.utc)


def _event(priority: EventPriority = EventPriority.HIGH) -> DetectedEvent:
    return DetectedEvent(
        id=make_event_id("nba_9", EventKind.GAME_START),
        kind=EventKind.GAME_START,
        priority=priority,
        sport="NBA",
        snapshot_id="nba_9",
        detected_at=NOW,
        occurred_at=NOW,
        metadata=EventMetadata(home_score=0, away_score=0, period=1),
        audience=TargetAudience(("LAL", "BOS")),
    )


def _audience(count: int) -> List[SubscriberPreference]:
    return [
        SubscriberPreference(f"user-{i}", f"token-{i}", sports={"NBA": SportPreference()}) for i in range(count)
    ]


def _dispatcher(gateway: PushGateway, **settings) -> tuple[DeliveryDispatcher, list[float]]:
    sleeps: list[float] = []
    dispatcher = DeliveryDispatcher(gateway, DeliverySettings(**settings), sleep=sleeps.append)
    return dispatcher, sleeps


class FlakyGateway(PushGateway):
    """Raises TransientDeliveryFailure for the first ``failures`` calls."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def send_batch(self, messages: Sequence[PushMessage]) -> List[RecipientResult]:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientDeliveryFailure("gateway busy", status_code=503)
        return [RecipientResult(message.address, RecipientStatus.SUCCESS) for message in messages]


class RejectingGateway(PushGateway):
    def send_batch(self, messages: Sequence[PushMessage]) -> List[RecipientResult]:
        raise GatewayError("unauthorized", status_code=401)


class TestDispatch:
    def test_six_hundred_subscribers_make_two_batches(self) -> None:
        gateway = RecordingGateway(invalid=["token-5", "token-550"])
        dispatcher, _ = _dispatcher(gateway)

        outcome = dispatcher.dispatch(_event(), _audience(600))

        assert sorted(len(batch) for batch in gateway.batches) == [100, 500]
        assert outcome.batches == 2
        assert outcome.submitted == 600
        assert outcome.succeeded == 598
        assert outcome.failed == 0
        assert set(outcome.invalid_addresses) == {"token-5", "token-550"}
        assert all(isinstance(item, InvalidAddress) for item in outcome.rejected)

    def test_empty_audience_does_not_touch_gateway(self) -> None:
        gateway = RecordingGateway()
        dispatcher, _ = _dispatcher(gateway)

        outcome = dispatcher.dispatch(_event(), [])

        assert outcome == DeliveryOutcome()
        assert gateway.batches == []

    def test_duplicate_addresses_are_sent_once(self) -> None:
        gateway = RecordingGateway()
        dispatcher, _ = _dispatcher(gateway)
        audience = _audience(2) + [SubscriberPreference("other", "token-0", sports={"NBA": SportPreference()})]

        outcome = dispatcher.dispatch(_event(), audience)

        assert outcome.submitted == 2
        assert [message.address for message in gateway.sent] == ["token-0", "token-1"]

    def test_messages_carry_rendered_content(self) -> None:
        gateway = RecordingGateway()
        dispatcher, _ = _dispatcher(gateway)

        dispatcher.dispatch(_event(), _audience(1))

        message = gateway.sent[0]
        assert message.title == "Tip-off Time!"
        assert message.priority == "high"
        assert message.data["eventId"] == "nba_9_GAME_START"

    def test_low_priority_events_are_sent_normal(self) -> None:
        gateway = RecordingGateway()
        dispatcher, _ = _dispatcher(gateway)
        dispatcher.dispatch(_event(EventPriority.MEDIUM), _audience(1))
        assert gateway.sent[0].priority == "normal"


class TestRetries:
    def test_transient_batch_failure_is_retried_with_backoff(self) -> None:
        gateway = FlakyGateway(failures=2)
        dispatcher, sleeps = _dispatcher(gateway, max_retries=3, backoff_seconds=0.5)

        outcome = dispatcher.dispatch(_event(), _audience(3))

        assert gateway.calls == 3
        assert sleeps == [0.5, 1.0]
        assert outcome.succeeded == 3
        assert outcome.failed == 0

    def test_exhausted_transport_retries_fail_the_dispatch(self) -> None:
        gateway = FlakyGateway(failures=10)
        dispatcher, _ = _dispatcher(gateway, max_retries=2)

        with pytest.raises(TransientDeliveryFailure, match="1 of 1 batch"):
            dispatcher.dispatch(_event(), _audience(4))

        assert gateway.calls == 3

    def test_one_lost_batch_fails_the_dispatch(self) -> None:
        class SecondBatchDown(RecordingGateway):
            def send_batch(self, messages):
                if any(message.address == "token-2" for message in messages):
                    raise TransientDeliveryFailure("read timed out")
                return super().send_batch(messages)

        gateway = SecondBatchDown()
        dispatcher, _ = _dispatcher(gateway, batch_size=2, max_retries=0, max_workers=1)

        with pytest.raises(TransientDeliveryFailure, match="1 of 2 batch"):
            dispatcher.dispatch(_event(), _audience(4))
        assert len(gateway.batches) == 1

    def test_transient_recipients_are_retried_individually(self) -> None:
        gateway = RecordingGateway(transient=["token-1"])
        dispatcher, _ = _dispatcher(gateway, max_retries=1)

        outcome = dispatcher.dispatch(_event(), _audience(3))

        assert [len(batch) for batch in gateway.batches] == [3, 1]
        assert gateway.batches[1][0].address == "token-1"
        assert outcome.succeeded == 2
        assert outcome.failed == 1

    def test_gateway_error_propagates(self) -> None:
        dispatcher, _ = _dispatcher(RejectingGateway())
        with pytest.raises(GatewayError):
            dispatcher.dispatch(_event(), _audience(2))

    def test_batch_pause_between_submissions(self) -> None:
        gateway = RecordingGateway()
        dispatcher, sleeps = _dispatcher(gateway, batch_size=2, batch_pause_seconds=0.25, max_workers=1)

        outcome = dispatcher.dispatch(_event(), _audience(5))

        assert outcome.batches == 3
        assert sleeps == [0.25, 0.25]
