# Overview: Ordered production pipeline and the rules for moving between stages.

"""
Stage Pipeline

================================================================================
PURPOSE: Single source of truth for the ordered list of production stages
================================================================================

PIPELINE:
    MANUFACTURING -> TESTING -> SHIPPING -> AT_SEA -> SMT -> QC
        -> DELIVERED -> ONSITE -> COMPLETED -> FOLLOW_UP

RULES:
1. Same stage is always accepted (idempotent writes from the UI never error)
2. Without fast-forward, only exactly one step forward is accepted
3. Fast-forward accepts any later stage, never an earlier one
4. Unknown current stage or unknown target is rejected
5. Backward moves are a separate, explicitly authorized correction path

The pipeline is built once from Config.PIPELINE_STAGES when the app is
created and stored on app.extensions; every component reads it through
get_pipeline() so no two components can hold divergent copies.
================================================================================
"""

from __future__ import annotations

import base64
import re
import secrets
from dataclasses import dataclass, field
from typing import Iterable, Optional

from flask import current_app, has_app_context

from ..config import DEFAULT_PIPELINE_STAGES


EXTENSION_KEY = "stage_pipeline"

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class StagePipeline:
    stages: tuple[str, ...]
    _index: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        stages = tuple(self.stages)
        if not stages:
            raise ValueError("Pipeline must contain at least one stage")
        if len(set(stages)) != len(stages):
            raise ValueError("Pipeline stages must be unique")
        object.__setattr__(self, "stages", stages)
        object.__setattr__(self, "_index", {s: i for i, s in enumerate(stages)})

    @property
    def first(self) -> str:
        return self.stages[0]

    @property
    def last(self) -> str:
        return self.stages[-1]

    def normalize(self, value) -> Optional[str]:
        """Canonical stage token for user input, or None if not a pipeline member."""
        if value is None:
            return None
        s = _WHITESPACE_RE.sub("_", str(value).strip()).upper()
        return s if s in self._index else None

    def is_valid(self, stage) -> bool:
        return stage in self._index

    def index(self, stage: str) -> int:
        s = self.normalize(stage)
        if s is None:
            raise ValueError(f"Unknown stage {stage!r}")
        return self._index[s]

    def is_terminal(self, stage) -> bool:
        return self.normalize(stage) == self.last

    def next_stage(self, stage) -> Optional[str]:
        s = self.normalize(stage)
        if s is None:
            return None
        i = self._index[s]
        return self.stages[i + 1] if i < len(self.stages) - 1 else None

    def can_advance(self, current, next_, allow_fast_forward: bool = False) -> bool:
        """
        Core advancement rule. Never accepts a backward move, regardless of
        allow_fast_forward.
        """
        nxt = self.normalize(next_)
        if nxt is None:
            return False
        cur = self.normalize(current)
        if cur is None:
            return False

        ci = self._index[cur]
        ni = self._index[nxt]

        if ni == ci:
            return True
        if allow_fast_forward:
            return ni > ci
        return ni == ci + 1

    def can_move_backward(self, current, target) -> bool:
        cur = self.normalize(current)
        tgt = self.normalize(target)
        if cur is None or tgt is None:
            return False
        return self._index[tgt] < self._index[cur]

    def reached(self, events: Iterable) -> set[str]:
        """Set of stages reached according to status events (objects or dicts with a stage)."""
        reached = set()
        for ev in events or ():
            raw = ev.get("stage") if isinstance(ev, dict) else getattr(ev, "stage", None)
            s = self.normalize(raw)
            if s:
                reached.add(s)
        return reached

    def effective_stage(self, item, order=None) -> str:
        """
        Current stage of an item: its own override, else its order's stage,
        else the first pipeline stage.
        """
        own = self.normalize(getattr(item, "current_stage", None)) if item is not None else None
        if own:
            return own
        if order is None and item is not None:
            order = getattr(item, "order", None)
        parent = self.normalize(getattr(order, "current_stage", None)) if order is not None else None
        if parent:
            return parent
        return self.first


def label(stage) -> str:
    """Pretty label for UI."""
    return str(stage or "").upper().replace("_", " ")


DEFAULT_PIPELINE = StagePipeline(DEFAULT_PIPELINE_STAGES)


def init_pipeline(app) -> StagePipeline:
    pipeline = StagePipeline(tuple(app.config.get("PIPELINE_STAGES") or DEFAULT_PIPELINE_STAGES))
    app.extensions[EXTENSION_KEY] = pipeline
    return pipeline


def get_pipeline() -> StagePipeline:
    if has_app_context():
        pipeline = current_app.extensions.get(EXTENSION_KEY)
        if pipeline is not None:
            return pipeline
    return DEFAULT_PIPELINE


def effective_stage(item, order=None) -> str:
    return get_pipeline().effective_stage(item, order)


def new_tracking_token() -> str:
    """URL-safe random token for public tracking links."""
    return base64.urlsafe_b64encode(secrets.token_bytes(24)).decode("ascii").rstrip("=")
