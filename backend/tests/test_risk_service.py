"""
Stage-age risk tests.

Risk compares how long an entity has sat in its current stage with the
effective thresholds for that stage on the evaluation date.
"""

from datetime import datetime

import pytest

from stagetrack.models import StatusEvent
from stagetrack.services import risk_service, stage_service, threshold_service
from stagetrack.time_utils import SECONDS_PER_DAY


def _backdate(db_session, order, when, *, stage=None, item_id=None):
    q = db_session.query(StatusEvent).filter_by(order_id=order.id, order_item_id=item_id)
    if stage:
        q = q.filter_by(stage=stage)
    for ev in q:
        ev.created_at = when
    db_session.commit()


class TestClassify:

    def test_equal_to_threshold_is_not_escalated(self, db_session):
        assert risk_service.classify("TESTING", 10 * SECONDS_PER_DAY, datetime(2024, 3, 1)) == "normal"
        assert risk_service.classify("TESTING", 10 * SECONDS_PER_DAY + 1, datetime(2024, 3, 1)) == "warning"
        assert risk_service.classify("TESTING", 15 * SECONDS_PER_DAY, datetime(2024, 3, 1)) == "warning"
        assert risk_service.classify("TESTING", 15 * SECONDS_PER_DAY + 1, datetime(2024, 3, 1)) == "critical"

    def test_unknown_stage_uses_fallback(self, db_session):
        assert risk_service.risk_level("CRATING", 31 * SECONDS_PER_DAY, datetime(2024, 3, 1)) == "warning"
        assert risk_service.risk_level("CRATING", 61 * SECONDS_PER_DAY, datetime(2024, 3, 1)) == "critical"

    def test_buffer_only_in_season(self, db_session):
        seventy_days = 70 * SECONDS_PER_DAY
        assert risk_service.classify("MANUFACTURING", seventy_days, datetime(2024, 6, 1)) == "warning"
        assert risk_service.classify("MANUFACTURING", seventy_days, datetime(2024, 11, 15)) == "normal"


class TestSeasonalScenario:

    def test_same_age_flags_out_of_season_but_not_in_season(self, db_session, order_with_items, admin):
        threshold_service.update_system_setting(threshold_service.HOLIDAY_SEASON_START, "11-01", admin)
        threshold_service.update_system_setting(threshold_service.HOLIDAY_SEASON_END, "11-01", admin)

        _backdate(db_session, order_with_items, datetime(2024, 1, 1, 9, 0))
        out_of_season = risk_service.assess_order(order_with_items, as_of=datetime(2024, 2, 20, 17, 0))
        assert out_of_season.level == "warning"
        assert out_of_season.threshold.warning_days == 50
        assert out_of_season.threshold.in_season is False

        # Same 50 days 8 hours, ending on the single in-season day
        _backdate(db_session, order_with_items, datetime(2024, 9, 12, 9, 0))
        in_season = risk_service.assess_order(order_with_items, as_of=datetime(2024, 11, 1, 17, 0))
        assert in_season.seconds_in_stage == out_of_season.seconds_in_stage
        assert in_season.threshold.warning_days == 75
        assert in_season.threshold.critical_days == 115
        assert in_season.level == "normal"

        day_after = risk_service.assess_order(order_with_items, as_of=datetime(2024, 11, 2, 17, 0))
        assert day_after.threshold.in_season is False
        assert day_after.level == "warning"


class TestAssess:

    def test_critical_after_long_stall(self, db_session, order_with_items):
        _backdate(db_session, order_with_items, datetime(2024, 1, 1))
        result = risk_service.assess_order(order_with_items, as_of=datetime(2024, 4, 15))
        assert result.level == "critical"
        assert result.days_in_stage == 105.0
        assert result.to_dict()["threshold"]["critical_days"] == 90

    def test_no_history_is_normal(self, db_session, order_with_items):
        db_session.query(StatusEvent).filter_by(order_id=order_with_items.id).delete()
        db_session.commit()

        result = risk_service.assess_order(order_with_items, as_of=datetime(2030, 1, 1))
        assert result.level == "normal"
        assert result.has_history is False
        assert result.seconds_in_stage is None
        assert result.days_in_stage is None

    def test_clock_uses_latest_entry_into_stage(self, db_session, order_with_items, agent):
        order_id = order_with_items.id
        stage_service.advance_order_stage(order_id, "TESTING", agent)
        stage_service.advance_order_stage(order_id, "MANUFACTURING", agent, allow_backward=True)

        events = (
            db_session.query(StatusEvent)
            .filter_by(order_id=order_id, stage="MANUFACTURING")
            .order_by(StatusEvent.id.asc())
            .all()
        )
        assert len(events) == 2
        events[0].created_at = datetime(2024, 1, 1)
        events[1].created_at = datetime(2024, 5, 1)
        db_session.commit()

        result = risk_service.assess_order(order_with_items, as_of=datetime(2024, 5, 11))
        assert result.days_in_stage == 10.0
        assert result.level == "normal"

    def test_item_without_override_uses_order_clock(self, db_session, order_with_items):
        item = order_with_items.items[0]
        _backdate(db_session, order_with_items, datetime(2024, 1, 1))

        result = risk_service.assess_item(item, order_with_items, as_of=datetime(2024, 3, 1))
        assert result.stage == "MANUFACTURING"
        assert result.level == "warning"

    def test_item_override_uses_its_own_event(self, db_session, order_with_items, agent):
        order_id = order_with_items.id
        item = order_with_items.items[0]
        _backdate(db_session, order_with_items, datetime(2024, 1, 1))

        stage_service.advance_item_stage(order_id, item.id, "TESTING", agent)
        _backdate(db_session, order_with_items, datetime(2024, 2, 25), stage="TESTING", item_id=item.id)

        result = risk_service.assess_item(item, order_with_items, as_of=datetime(2024, 3, 1))
        assert result.stage == "TESTING"
        assert result.days_in_stage == 5.0
        assert result.level == "normal"

        sibling = risk_service.assess_item(order_with_items.items[1], order_with_items, as_of=datetime(2024, 3, 1))
        assert sibling.stage == "MANUFACTURING"
        assert sibling.level == "warning"

    def test_future_event_counts_as_zero(self, db_session, order_with_items):
        _backdate(db_session, order_with_items, datetime(2024, 6, 1))
        result = risk_service.assess_order(order_with_items, as_of=datetime(2024, 5, 1))
        assert result.seconds_in_stage == 0
        assert result.level == "normal"


@pytest.mark.parametrize("stage,days,expected", [
    ("SHIPPING", 44, "normal"),
    ("SHIPPING", 46, "warning"),
    ("QC", 15, "critical"),
    ("FOLLOW_UP", 20, "warning"),
])
def test_default_thresholds_by_stage(db_session, stage, days, expected):
    assert risk_service.classify(stage, days * SECONDS_PER_DAY, datetime(2024, 3, 1)) == expected
