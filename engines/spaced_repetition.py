"""Review scheduling keyed off the discrete mastery level."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from engine_config import ENGINE_CONFIG, EngineConfigRegistry, MasteryLevel


class SpacedRepetitionScheduler:
    """Longer review intervals as the level rises.

    The intervals come from ``engine_config.json``; the due dates produced
    here are consumed by an external review scheduler.
    """

    def __init__(self, config: Optional[EngineConfigRegistry] = None) -> None:
        self.config = config or ENGINE_CONFIG

    def interval_days(self, level: MasteryLevel | str) -> int:
        return self.config.review_interval_days(level)

    def next_review(self, level: MasteryLevel | str, practiced_at: datetime) -> datetime:
        """Due date for the next review of a concept practised at ``practiced_at``."""

        return practiced_at + timedelta(days=self.interval_days(level))
