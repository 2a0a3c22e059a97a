"""Engine configuration loader.

All tunable numbers used by the mastery and planning engines (level
thresholds, BKT calibration constants, gate thresholds, difficulty to hour
bands, grade ordering) live in ``engine_config.json`` and are validated here.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple


class EngineConfigError(ValueError):
    """Raised when ``engine_config.json`` contains invalid data."""


class MasteryLevel(str, Enum):
    """Discrete mastery levels in ascending order."""

    NOVICE = "NOVICE"
    DEVELOPING = "DEVELOPING"
    PROFICIENT = "PROFICIENT"
    ADVANCED = "ADVANCED"
    MASTERED = "MASTERED"


_LEVEL_ORDER: Tuple[MasteryLevel, ...] = tuple(MasteryLevel)


@dataclass(frozen=True)
class LevelBand:
    """A level together with its exclusive upper probability bound."""

    level: MasteryLevel
    label: str
    upper_bound: Optional[float]
    review_interval_days: int


@dataclass(frozen=True)
class BKTParams:
    """Calibration constants for the two-state BKT model."""

    p_init: float
    p_learn: float
    p_guess: float
    p_slip: float


@dataclass(frozen=True)
class GateSettings:
    window: int
    accuracy_threshold: float
    min_question_types: int
    retention_threshold: float
    improving_ratio: float
    slowing_ratio: float


@dataclass(frozen=True)
class StruggleSettings:
    wrong_streak: int
    bkt_threshold: float


@dataclass(frozen=True)
class HourBand:
    max_difficulty: float
    hours: float


def _probability(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise EngineConfigError(f"{field} must be numeric") from exc
    if not 0.0 <= number <= 1.0:
        raise EngineConfigError(f"{field} must be within [0, 1]")
    return number


def _positive(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise EngineConfigError(f"{field} must be numeric") from exc
    if number <= 0:
        raise EngineConfigError(f"{field} must be positive")
    return number


def _parse_bkt(raw: Any, field: str) -> BKTParams:
    if not isinstance(raw, Mapping):
        raise EngineConfigError(f"{field} must be a JSON object")
    params = BKTParams(
        p_init=_probability(raw.get("p_init"), f"{field}.p_init"),
        p_learn=_probability(raw.get("p_learn"), f"{field}.p_learn"),
        p_guess=_probability(raw.get("p_guess"), f"{field}.p_guess"),
        p_slip=_probability(raw.get("p_slip"), f"{field}.p_slip"),
    )
    if params.p_guess >= 1.0:
        raise EngineConfigError(f"{field}.p_guess must be below 1")
    if params.p_guess + params.p_slip >= 1.0:
        raise EngineConfigError(f"{field}: p_guess + p_slip must be below 1")
    return params


class EngineConfigRegistry:
    """Load engine tunables from ``engine_config.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "engine_config.json"
        self._levels: List[LevelBand] = []
        self._bkt_default: Optional[BKTParams] = None
        self._bkt_domains: Dict[str, BKTParams] = {}
        self._hour_bands: List[HourBand] = []
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload configuration from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Engine config file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, dict):
            raise EngineConfigError("Engine config file must contain a JSON object")

        self._levels = self._parse_levels(raw.get("mastery_levels"))

        bkt_raw = raw.get("bkt") or {}
        if not isinstance(bkt_raw, dict):
            raise EngineConfigError("bkt must be a JSON object")
        self._bkt_default = _parse_bkt(bkt_raw.get("default"), "bkt.default")
        domains_raw = bkt_raw.get("domains") or {}
        if not isinstance(domains_raw, dict):
            raise EngineConfigError("bkt.domains must be a JSON object")
        self._bkt_domains = {
            str(domain): _parse_bkt(entry, f"bkt.domains.{domain}")
            for domain, entry in domains_raw.items()
        }

        gate_raw = raw.get("gate") or {}
        window = int(_positive(gate_raw.get("window"), "gate.window"))
        improving = _positive(gate_raw.get("improving_ratio"), "gate.improving_ratio")
        slowing = _positive(gate_raw.get("slowing_ratio"), "gate.slowing_ratio")
        if improving >= slowing:
            raise EngineConfigError("gate.improving_ratio must be below gate.slowing_ratio")
        self.gate = GateSettings(
            window=window,
            accuracy_threshold=_probability(
                gate_raw.get("accuracy_threshold"), "gate.accuracy_threshold"
            ),
            min_question_types=int(
                _positive(gate_raw.get("min_question_types"), "gate.min_question_types")
            ),
            retention_threshold=_probability(
                gate_raw.get("retention_threshold"), "gate.retention_threshold"
            ),
            improving_ratio=improving,
            slowing_ratio=slowing,
        )

        struggle_raw = raw.get("struggle") or {}
        self.struggle = StruggleSettings(
            wrong_streak=int(_positive(struggle_raw.get("wrong_streak"), "struggle.wrong_streak")),
            bkt_threshold=_probability(struggle_raw.get("bkt_threshold"), "struggle.bkt_threshold"),
        )

        self._hour_bands = self._parse_hour_bands(raw.get("hour_bands"))
        self.default_concept_hours = _positive(
            raw.get("default_concept_hours", 1.0), "default_concept_hours"
        )
        self.min_concept_hours = _positive(raw.get("min_concept_hours", 0.25), "min_concept_hours")

        grade_order = raw.get("grade_order")
        if not isinstance(grade_order, list) or not grade_order:
            raise EngineConfigError("grade_order must be a non-empty list")
        self.grade_order: Tuple[str, ...] = tuple(str(grade).strip() for grade in grade_order)
        if len(set(self.grade_order)) != len(self.grade_order):
            raise EngineConfigError("grade_order contains duplicates")

        self.max_active_plans = int(_positive(raw.get("max_active_plans", 3), "max_active_plans"))
        self.max_session_seconds = int(
            _positive(raw.get("max_session_seconds", 7200), "max_session_seconds")
        )

    @staticmethod
    def _parse_levels(raw: Any) -> List[LevelBand]:
        if not isinstance(raw, list):
            raise EngineConfigError("mastery_levels must be a JSON list")
        if len(raw) != len(_LEVEL_ORDER):
            raise EngineConfigError(
                f"mastery_levels must define exactly {len(_LEVEL_ORDER)} levels"
            )

        bands: List[LevelBand] = []
        previous = 0.0
        for idx, (entry, expected) in enumerate(zip(raw, _LEVEL_ORDER), start=1):
            if not isinstance(entry, dict):
                raise EngineConfigError(f"Level #{idx} must be a JSON object")
            level_id = str(entry.get("id", "")).strip()
            if level_id != expected.value:
                raise EngineConfigError(
                    f"Level #{idx} must be {expected.value} (found {level_id or '<empty>'})"
                )
            bound_raw = entry.get("upper_bound")
            is_last = idx == len(_LEVEL_ORDER)
            if is_last:
                if bound_raw is not None:
                    raise EngineConfigError(f"{level_id} is the top level and takes no upper_bound")
                bound = None
            else:
                bound = _probability(bound_raw, f"{level_id}.upper_bound")
                if bound <= previous:
                    raise EngineConfigError("mastery level bounds must be strictly ascending")
                previous = bound
            interval = int(_positive(entry.get("review_interval_days"), f"{level_id}.review_interval_days"))
            label = str(entry.get("label") or level_id.title())
            bands.append(LevelBand(expected, label, bound, interval))
        return bands

    @staticmethod
    def _parse_hour_bands(raw: Any) -> List[HourBand]:
        if not isinstance(raw, list) or not raw:
            raise EngineConfigError("hour_bands must be a non-empty JSON list")
        bands = [
            HourBand(
                max_difficulty=_positive(entry.get("max_difficulty"), "hour_bands.max_difficulty"),
                hours=_positive(entry.get("hours"), "hour_bands.hours"),
            )
            for entry in raw
            if isinstance(entry, dict)
        ]
        if len(bands) != len(raw):
            raise EngineConfigError("hour_bands entries must be JSON objects")
        bands.sort(key=lambda band: band.max_difficulty)
        return bands

    # ------------------------------------------------------------------
    @property
    def levels(self) -> List[LevelBand]:
        return list(self._levels)

    def level_for(self, probability: float) -> MasteryLevel:
        """Map a mastery probability onto its discrete level."""

        p = min(1.0, max(0.0, float(probability)))
        for band in self._levels:
            if band.upper_bound is None or p < band.upper_bound:
                return band.level
        return MasteryLevel.MASTERED

    def review_interval_days(self, level: MasteryLevel | str) -> int:
        level = MasteryLevel(level)
        for band in self._levels:
            if band.level is level:
                return band.review_interval_days
        raise ValueError(f"Unknown mastery level: {level}")

    def bkt_params(self, domain: Optional[str] = None) -> BKTParams:
        """Return calibration constants for ``domain`` or the global defaults."""

        if domain and domain in self._bkt_domains:
            return self._bkt_domains[domain]
        assert self._bkt_default is not None
        return self._bkt_default

    @property
    def hour_bands(self) -> Sequence[HourBand]:
        return tuple(self._hour_bands)

    def hours_for_difficulty(self, difficulty: float) -> float:
        """Return the base hour estimate for a concept difficulty."""

        for band in self._hour_bands:
            if difficulty <= band.max_difficulty:
                return band.hours
        return self.default_concept_hours

    def grade_index(self, grade: Optional[str]) -> int:
        """Position of ``grade`` in the grade order; unknown grades sort first."""

        try:
            return self.grade_order.index(str(grade))
        except ValueError:
            return 0


def _default_registry() -> EngineConfigRegistry:
    return EngineConfigRegistry(os.getenv("ENGINE_CONFIG_PATH") or None)


ENGINE_CONFIG = _default_registry()
"""Singleton registry used throughout the application."""


def level_for(probability: float, config: Optional[EngineConfigRegistry] = None) -> MasteryLevel:
    """Single source of truth for probability to level mapping."""

    return (config or ENGINE_CONFIG).level_for(probability)
