from __future__ import annotations

import dataclasses
import datetime as dt

import pytest

from scorewatch.config import TemplateSettings
from scorewatch.models import (
    DetectedEvent,
    EventKind,
    EventMetadata,
    EventPriority,
    Participant,
    Snapshot,
    SnapshotStatus,
    TargetAudience,
    make_event_id,
)
from scorewatch.templates import (
    MessageTemplate,
    TemplateRegistry,
    period_label,
    render_message,
    render_template,
    template_fields,
)

NOW = dt.datetime(2024, 3, 10, 21, 0, tzinfo=dt.timezone.utc)


def _event(kind: EventKind, sport: str = "NBA", **metadata) -> DetectedEvent:
    values = {"home_score": 101, "away_score": 99, "period": 4}
    values.update(metadata)
    return DetectedEvent(
        id=make_event_id("nba_7", kind),
        kind=kind,
        priority=EventPriority.HIGH,
        sport=sport,
        snapshot_id="nba_7",
        detected_at=NOW,
        occurred_at=NOW,
        metadata=EventMetadata(**values),
        audience=TargetAudience(("LAL", "BOS")),
    )


def _snapshot() -> Snapshot:
    return Snapshot(
        id="nba_7",
        sport="NBA",
        status=SnapshotStatus.LIVE,
        home=Participant("Los Angeles Lakers", "LAL", 101, record="40-20"),
        away=Participant("Boston Celtics", "BOS", 99, record="45-15"),
        period=4,
        total_periods=4,
        clock="1:45",
        fetched_at=NOW,
    )


class TestRenderTemplate:
    def test_substitutes_known_fields(self) -> None:
        assert render_template("{a} vs {b}", {"a": "LAL", "b": "BOS"}) == "LAL vs BOS"

    def test_unknown_placeholders_are_left_intact(self) -> None:
        assert render_template("{a} at {venue}", {"a": "LAL"}) == "LAL at {venue}"

    def test_malformed_template_is_returned_unchanged(self) -> None:
        assert render_template("{a", {"a": "LAL"}) == "{a"


class TestTemplateRegistry:
    def test_sport_specific_template_wins(self) -> None:
        registry = TemplateRegistry()
        assert registry.select(EventKind.GAME_START, "NBA").id == "game_start_nba"
        assert registry.select(EventKind.GAME_START, "nhl").id == "game_start_generic"

    def test_priority_then_id_breaks_ties(self) -> None:
        registry = TemplateRegistry(
            [
                MessageTemplate("b", EventKind.BLOWOUT, "B", "b", priority=1),
                MessageTemplate("a", EventKind.BLOWOUT, "A", "a", priority=1),
                MessageTemplate("c", EventKind.BLOWOUT, "C", "c", priority=5),
            ]
        )
        assert registry.select(EventKind.BLOWOUT, "NBA").id == "c"
        registry = TemplateRegistry(
            [
                MessageTemplate("b", EventKind.BLOWOUT, "B", "b"),
                MessageTemplate("a", EventKind.BLOWOUT, "A", "a"),
            ]
        )
        assert registry.select(EventKind.BLOWOUT, "NBA").id == "a"

    def test_missing_kind_returns_none(self) -> None:
        assert TemplateRegistry([]).select(EventKind.OVERTIME, "NBA") is None

    def test_from_settings_adds_custom_templates(self) -> None:
        registry = TemplateRegistry.from_settings(
            [TemplateSettings(kind="BLOWOUT", title="Ouch", body="{differential}", sport="NBA", priority=9)]
        )
        template = registry.select(EventKind.BLOWOUT, "NBA")
        assert template.title == "Ouch"
        assert template.id.startswith("custom_blowout_nba")

    def test_from_settings_rejects_unknown_kind(self) -> None:
        with pytest.raises(ValueError, match="templates\\[0\\].kind"):
            TemplateRegistry.from_settings([TemplateSettings(kind="TOUCHDOWN", title="t", body="b")])


class TestRenderMessage:
    def test_fields_include_snapshot_details(self) -> None:
        fields = template_fields(_event(EventKind.CLOSE_GAME, differential=2, leading_participant="LAL"), _snapshot())
        assert fields["homeParticipant"] == "Los Angeles Lakers"
        assert fields["awayRecord"] == "45-15"
        assert fields["clock"] == "1:45"
        assert fields["trailingParticipant"] == "BOS"

    def test_nba_close_game(self) -> None:
        message = render_message(_event(EventKind.CLOSE_GAME, differential=2), TemplateRegistry(), snapshot=_snapshot())
        assert message.title == "Crunch Time!"
        assert message.body == "4th, 1:45 left! BOS 99 - LAL 101"
        assert message.data == {
            "eventId": "nba_7_CLOSE_GAME",
            "eventType": "CLOSE_GAME",
            "gameId": "nba_7",
            "sport": "NBA",
        }

    def test_nba_close_game_in_overtime(self) -> None:
        snapshot = dataclasses.replace(_snapshot(), period=6)
        event = _event(EventKind.CLOSE_GAME, differential=2, period=6)

        message = render_message(event, TemplateRegistry(), snapshot=snapshot)

        assert message.body == "2OT, 1:45 left! BOS 99 - LAL 101"

    @pytest.mark.parametrize(
        ("period", "total", "expected"),
        [(1, 4, "1st"), (2, 4, "2nd"), (3, 0, "3rd"), (4, 4, "4th"), (5, 4, "OT"), (7, 3, "4OT"), (11, 0, "11th")],
    )
    def test_period_label(self, period, total, expected) -> None:
        assert period_label(period, total) == expected

    def test_game_end_result_line(self) -> None:
        message = render_message(_event(EventKind.GAME_END, winner="LAL"), TemplateRegistry())
        assert message.body == "LAL defeats BOS 101-99"

    def test_emoji_suffix(self) -> None:
        message = render_message(_event(EventKind.BLOWOUT, differential=25), TemplateRegistry(), use_emoji=True)
        assert message.title.endswith("💥")

    def test_fallback_without_template(self) -> None:
        message = render_message(_event(EventKind.FINAL_PERIOD), TemplateRegistry([]))
        assert message.title == "Final Period"
        assert message.body == "BOS @ LAL"
