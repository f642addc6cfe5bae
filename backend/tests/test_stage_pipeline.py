"""
Stage pipeline tests.

Verifies:
- Same-stage writes are always accepted
- Without fast-forward only the next stage is accepted
- Fast-forward never moves backward
- Token normalization and item stage fallback
"""

import itertools
from types import SimpleNamespace

import pytest

from stagetrack.config import DEFAULT_PIPELINE_STAGES
from stagetrack.services.stage_pipeline import DEFAULT_PIPELINE, StagePipeline, label, new_tracking_token


STAGES = list(DEFAULT_PIPELINE_STAGES)
PIPELINE = DEFAULT_PIPELINE


# =============================================================================
# TRANSITION RULES
# =============================================================================


class TestCanAdvance:

    @pytest.mark.parametrize("stage", STAGES)
    def test_same_stage_is_accepted(self, stage):
        assert PIPELINE.can_advance(stage, stage, False) is True
        assert PIPELINE.can_advance(stage, stage, True) is True

    def test_only_next_stage_without_fast_forward(self):
        for current, nxt in itertools.permutations(STAGES, 2):
            expected = STAGES.index(nxt) == STAGES.index(current) + 1
            assert PIPELINE.can_advance(current, nxt, False) is expected, f"{current} -> {nxt}"

    def test_fast_forward_never_backward(self):
        for current, nxt in itertools.permutations(STAGES, 2):
            if STAGES.index(nxt) < STAGES.index(current):
                assert PIPELINE.can_advance(current, nxt, True) is False, f"{current} -> {nxt}"

    def test_fast_forward_accepts_any_later_stage(self):
        assert PIPELINE.can_advance("MANUFACTURING", "DELIVERED", True) is True
        assert PIPELINE.can_advance("MANUFACTURING", "DELIVERED", False) is False

    def test_invalid_tokens_rejected(self):
        assert PIPELINE.can_advance("MANUFACTURING", "PAINTING") is False
        assert PIPELINE.can_advance("PAINTING", "MANUFACTURING") is False
        assert PIPELINE.can_advance(None, "TESTING") is False
        assert PIPELINE.can_advance("TESTING", None, True) is False

    def test_terminal_stage_has_no_successor(self):
        assert PIPELINE.is_terminal("FOLLOW_UP") is True
        assert PIPELINE.is_terminal("COMPLETED") is False
        assert PIPELINE.next_stage("FOLLOW_UP") is None
        assert PIPELINE.can_advance("FOLLOW_UP", "MANUFACTURING", True) is False

    def test_backward_path_is_separate(self):
        assert PIPELINE.can_move_backward("QC", "SHIPPING") is True
        assert PIPELINE.can_move_backward("SHIPPING", "QC") is False
        assert PIPELINE.can_move_backward("QC", "QC") is False
        assert PIPELINE.can_move_backward("QC", "nowhere") is False


# =============================================================================
# NORMALIZATION & HELPERS
# =============================================================================


class TestNormalization:

    @pytest.mark.parametrize("raw,expected", [
        ("testing", "TESTING"),
        ("  at sea ", "AT_SEA"),
        ("follow   up", "FOLLOW_UP"),
        ("At_Sea", "AT_SEA"),
        ("boat", None),
        ("", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        assert PIPELINE.normalize(raw) == expected

    def test_can_advance_uses_normalized_tokens(self):
        assert PIPELINE.can_advance("shipping", "at sea") is True

    def test_neighbours_and_index(self):
        assert PIPELINE.next_stage("SHIPPING") == "AT_SEA"
        assert PIPELINE.next_stage("FOLLOW_UP") is None
        assert PIPELINE.index("QC") == 5
        with pytest.raises(ValueError):
            PIPELINE.index("DOCKED")

    def test_label(self):
        assert label("AT_SEA") == "AT SEA"
        assert label("FOLLOW_UP") == "FOLLOW UP"

    def test_reached_collects_known_stages(self):
        events = [SimpleNamespace(stage="MANUFACTURING"), {"stage": "testing"}, {"stage": "bogus"}]
        assert PIPELINE.reached(events) == {"MANUFACTURING", "TESTING"}

    def test_pipeline_rejects_duplicates_and_empty(self):
        with pytest.raises(ValueError):
            StagePipeline(("A", "B", "A"))
        with pytest.raises(ValueError):
            StagePipeline(())

    def test_tracking_tokens_are_unique_and_url_safe(self):
        tokens = {new_tracking_token() for _ in range(50)}
        assert len(tokens) == 50
        for t in tokens:
            assert "=" not in t and "/" not in t and "+" not in t


class TestEffectiveStage:

    def test_item_override_wins(self):
        order = SimpleNamespace(current_stage="SHIPPING")
        item = SimpleNamespace(current_stage="QC", order=order)
        assert PIPELINE.effective_stage(item, order) == "QC"

    def test_item_falls_back_to_order(self):
        order = SimpleNamespace(current_stage="SHIPPING")
        item = SimpleNamespace(current_stage=None, order=order)
        assert PIPELINE.effective_stage(item, order) == "SHIPPING"
        assert PIPELINE.effective_stage(item) == "SHIPPING"

    def test_falls_back_to_first_stage(self):
        item = SimpleNamespace(current_stage=None, order=None)
        assert PIPELINE.effective_stage(item) == "MANUFACTURING"
