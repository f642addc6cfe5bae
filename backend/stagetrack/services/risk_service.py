# Overview: Classifies how long an order or item has sat in its current stage against thresholds.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from ..extensions import db
from ..models import Order, OrderItem, StatusEvent
from . import threshold_service
from .stage_pipeline import effective_stage, get_pipeline
from stagetrack.time_utils import SECONDS_PER_DAY, as_datetime, days_to_seconds, to_naive_utc


RISK_NORMAL = "normal"
RISK_WARNING = "warning"
RISK_CRITICAL = "critical"


@dataclass(frozen=True)
class RiskAssessment:
    stage: str
    level: str
    seconds_in_stage: Optional[int]
    threshold: threshold_service.EffectiveThreshold
    has_history: bool = True

    @property
    def days_in_stage(self) -> Optional[float]:
        if self.seconds_in_stage is None:
            return None
        return round(self.seconds_in_stage / SECONDS_PER_DAY, 1)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "level": self.level,
            "seconds_in_stage": self.seconds_in_stage,
            "days_in_stage": self.days_in_stage,
            "has_history": self.has_history,
            "threshold": self.threshold.to_dict(),
        }


def classify(stage, seconds_in_stage: float, as_of: Union[date, datetime, None] = None) -> str:
    """Strictly greater than the effective threshold escalates; equal does not."""
    t = threshold_service.effective_threshold(stage, as_of)
    if seconds_in_stage > days_to_seconds(t.critical_days):
        return RISK_CRITICAL
    if seconds_in_stage > days_to_seconds(t.warning_days):
        return RISK_WARNING
    return RISK_NORMAL


def risk_level(stage, seconds_in_stage: float, as_of: Union[date, datetime, None] = None) -> str:
    return classify(stage, seconds_in_stage, as_of)


def _latest_event(order_id: str, stage: str, *, item_id: Optional[str]) -> Optional[StatusEvent]:
    q = db.session.query(StatusEvent).filter(
        StatusEvent.order_id == order_id,
        StatusEvent.stage == stage,
    )
    if item_id is None:
        q = q.filter(StatusEvent.order_item_id.is_(None))
    else:
        q = q.filter(StatusEvent.order_item_id == item_id)
    return q.order_by(StatusEvent.created_at.desc(), StatusEvent.id.desc()).first()


def stage_entered_at(order: Order, item: Optional[OrderItem] = None) -> Optional[datetime]:
    """
    When the entity entered its current stage: the newest StatusEvent for
    that stage. An item without its own override uses its order's events.
    """
    if item is None:
        event = _latest_event(order.id, order.current_stage, item_id=None)
    else:
        stage = effective_stage(item, order)
        event = None
        if get_pipeline().normalize(item.current_stage):
            event = _latest_event(order.id, stage, item_id=item.id)
        if event is None:
            event = _latest_event(order.id, stage, item_id=None)
    return to_naive_utc(event.created_at) if event is not None else None


def seconds_in_stage(order: Order, item: Optional[OrderItem] = None, *, as_of=None) -> Optional[int]:
    entered = stage_entered_at(order, item)
    if entered is None:
        return None
    return max(0, int((as_datetime(as_of) - entered).total_seconds()))


def _assess(stage: str, seconds: Optional[int], as_of) -> RiskAssessment:
    threshold = threshold_service.effective_threshold(stage, as_of)
    if seconds is None:
        # Imported records without history are never flagged
        return RiskAssessment(stage=stage, level=RISK_NORMAL, seconds_in_stage=None,
                              threshold=threshold, has_history=False)
    return RiskAssessment(
        stage=stage,
        level=classify(stage, seconds, as_of),
        seconds_in_stage=seconds,
        threshold=threshold,
    )


def assess_order(order: Order, *, as_of=None) -> RiskAssessment:
    moment = as_datetime(as_of)
    return _assess(order.current_stage, seconds_in_stage(order, as_of=moment), moment)


def assess_item(item: OrderItem, order: Optional[Order] = None, *, as_of=None) -> RiskAssessment:
    order = order or item.order
    moment = as_datetime(as_of)
    stage = effective_stage(item, order)
    return _assess(stage, seconds_in_stage(order, item, as_of=moment), moment)
