"""
xpengine.engine.curve — Level Curve Mathematics
================================================

Pure calculation module.  No Store I/O, no platform I/O.

The default curve is quadratic and *cumulative*: reaching level ``L`` costs
``A·L² + B·L + C`` XP on top of the threshold for ``L − 1``::

    xp_for_level(L) = Σ_{i=1..L} (A·i² + B·i + C)      (A=5, B=50, C=100)

    xp_for_level(1) == 155
    xp_for_level(2) == 375

Guilds may pick another preset (linear, exponential, lookup) through the
``levels`` field of their config; see :func:`build_curve`.  Any object that
satisfies :class:`LevelCurve` can also be injected directly.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from xpengine.constants import CURVE_A, CURVE_B, CURVE_C
from xpengine.errors import InvalidArgument

logger = logging.getLogger(__name__)

__all__ = [
    "CURVE_TYPES",
    "DEFAULT_CURVE",
    "ExponentialCurve",
    "LevelCurve",
    "LevelProgress",
    "LinearCurve",
    "LookupCurve",
    "QuadraticCurve",
    "build_curve",
    "level_from_xp",
    "progress",
    "validate_curve_config",
    "xp_delta_for_level_range",
    "xp_for_level",
    "xp_needed_for_level",
]


@runtime_checkable
class LevelCurve(Protocol):
    """Maps level ↔ cumulative XP threshold.

    ``xp_for_level(0)`` must be ``0``; ``level_from_xp`` must return the
    largest level whose threshold is ``<= xp`` and be non-decreasing in xp.
    Levels above ``max_level`` cost ``math.inf``.
    """

    max_level: int | None

    def xp_for_level(self, level: int) -> float: ...

    def level_from_xp(self, xp: float) -> int: ...


@dataclass(frozen=True, slots=True)
class LevelProgress:
    """Position of a total XP value on a curve."""

    level: int
    in_level: float
    to_next: float
    percentage: float


# ---------------------------------------------------------------------------
# Argument guards
# ---------------------------------------------------------------------------
def _check_level(level: Any) -> int:
    if isinstance(level, bool) or not isinstance(level, int):
        raise InvalidArgument("Level must be an integer", {"level": level})
    if level < 0:
        raise InvalidArgument("Level must be non-negative", {"level": level})
    return level


def _clamp_xp(xp: Any) -> float:
    if isinstance(xp, bool) or not isinstance(xp, (int, float)):
        raise InvalidArgument("XP must be a number", {"xp": xp})
    if not math.isfinite(xp):
        raise InvalidArgument("XP must be finite", {"xp": xp})
    return xp if xp > 0 else 0


def _check_max_level(max_level: Any) -> None:
    if max_level is None:
        return
    if isinstance(max_level, bool) or not isinstance(max_level, int) or max_level < 0:
        raise InvalidArgument("max_level must be a non-negative integer", {"max_level": max_level})


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------
class QuadraticCurve:
    """Cumulative quadratic curve (the default).

    ``level_from_xp`` searches upward from level 0.  Thresholds are memoised
    as the search walks them, so repeated lookups stay cheap.
    """

    def __init__(
        self,
        a: float = CURVE_A,
        b: float = CURVE_B,
        c: float = CURVE_C,
        max_level: int | None = None,
    ) -> None:
        for name, value in (("a", a), ("b", b), ("c", c)):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise InvalidArgument(
                    "QuadraticCurve coefficients must be positive numbers",
                    {name: value},
                )
        _check_max_level(max_level)
        self.a = a
        self.b = b
        self.c = c
        self.max_level = max_level
        self._thresholds: list[float] = [0]

    def cost(self, level: int) -> float:
        """XP needed to go from ``level − 1`` to ``level``."""
        return self.a * level * level + self.b * level + self.c

    def _threshold(self, level: int) -> float:
        while len(self._thresholds) <= level:
            n = len(self._thresholds)
            self._thresholds.append(self._thresholds[-1] + self.cost(n))
        return self._thresholds[level]

    def xp_for_level(self, level: int) -> float:
        level = _check_level(level)
        if self.max_level is not None and level > self.max_level:
            return math.inf
        return self._threshold(level)

    def level_from_xp(self, xp: float) -> int:
        xp = _clamp_xp(xp)
        level = 0
        while self.max_level is None or level < self.max_level:
            if self._threshold(level + 1) > xp:
                break
            level += 1
        return level

    def __repr__(self) -> str:
        return f"<QuadraticCurve a={self.a} b={self.b} c={self.c} max={self.max_level}>"


class LinearCurve:
    """Constant XP per level: ``xp_for_level(L) = L · xp_per_level``."""

    def __init__(self, xp_per_level: float, max_level: int | None = None) -> None:
        if isinstance(xp_per_level, bool) or not isinstance(xp_per_level, (int, float)) or xp_per_level <= 0:
            raise InvalidArgument("xp_per_level must be a positive number", {"xp_per_level": xp_per_level})
        _check_max_level(max_level)
        self.xp_per_level = xp_per_level
        self.max_level = max_level

    def xp_for_level(self, level: int) -> float:
        level = _check_level(level)
        if self.max_level is not None and level > self.max_level:
            return math.inf
        return level * self.xp_per_level

    def level_from_xp(self, xp: float) -> int:
        level = int(_clamp_xp(xp) // self.xp_per_level)
        if self.max_level is not None:
            level = min(level, self.max_level)
        return level


class ExponentialCurve:
    """``xp_for_level(L) = multiplier · base^L`` for ``L ≥ 1`` (0 at level 0).

    Grows very quickly; always pair it with a ``max_level``.
    """

    def __init__(self, base: float, multiplier: float, max_level: int | None = None) -> None:
        if isinstance(base, bool) or not isinstance(base, (int, float)) or base <= 1:
            raise InvalidArgument("base must be a number greater than 1", {"base": base})
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)) or multiplier <= 0:
            raise InvalidArgument("multiplier must be a positive number", {"multiplier": multiplier})
        _check_max_level(max_level)
        self.base = base
        self.multiplier = multiplier
        self.max_level = max_level

    def xp_for_level(self, level: int) -> float:
        level = _check_level(level)
        if self.max_level is not None and level > self.max_level:
            return math.inf
        if level == 0:
            return 0
        return self.multiplier * self.base ** level

    def level_from_xp(self, xp: float) -> int:
        xp = _clamp_xp(xp)
        if xp < self.multiplier * self.base:
            return 0
        level = int(math.floor(math.log(xp / self.multiplier) / math.log(self.base)))
        # Float log can land one off at exact thresholds.
        while self.xp_for_level(level + 1) <= xp and (self.max_level is None or level < self.max_level):
            level += 1
        while level > 0 and self.xp_for_level(level) > xp:
            level -= 1
        if self.max_level is not None:
            level = min(level, self.max_level)
        return level


class LookupCurve:
    """Hand-tuned thresholds: ``thresholds[L]`` is the XP to reach level ``L``."""

    def __init__(self, thresholds: list[float], max_level: int | None = None) -> None:
        errors = _lookup_errors(thresholds, max_level)
        if errors:
            raise InvalidArgument("; ".join(errors), {"thresholds": thresholds})
        self.thresholds = [0, *thresholds[1:]] if thresholds[0] != 0 else list(thresholds)
        self.max_level = max_level if max_level is not None else len(thresholds) - 1

    def xp_for_level(self, level: int) -> float:
        level = _check_level(level)
        if level > self.max_level:
            return math.inf
        return self.thresholds[level]

    def level_from_xp(self, xp: float) -> int:
        xp = _clamp_xp(xp)
        for level in range(self.max_level, -1, -1):
            if xp >= self.thresholds[level]:
                return level
        return 0


DEFAULT_CURVE: LevelCurve = QuadraticCurve()


# ---------------------------------------------------------------------------
# Preset config → curve
# ---------------------------------------------------------------------------
CURVE_TYPES = frozenset({"quadratic", "linear", "exponential", "lookup"})


def _lookup_errors(thresholds: Any, max_level: Any) -> list[str]:
    if not isinstance(thresholds, list) or not thresholds:
        return ["levels.params.thresholds must be a non-empty list"]
    errors: list[str] = []
    for i, value in enumerate(thresholds):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            errors.append(f"levels.params.thresholds[{i}] must be a non-negative number")
    if not errors and any(b < a for a, b in zip(thresholds, thresholds[1:])):
        errors.append("levels.params.thresholds must be sorted in ascending order")
    if isinstance(max_level, int) and max_level > len(thresholds) - 1:
        errors.append(
            f"levels.max_level ({max_level}) cannot exceed len(thresholds) - 1 ({len(thresholds) - 1})"
        )
    return errors


def _positive(params: dict, key: str) -> bool:
    value = params.get(key)
    return not isinstance(value, bool) and isinstance(value, (int, float)) and value > 0


def validate_curve_config(levels: Any) -> list[str]:
    """Return every problem with a ``levels`` preset (empty list if valid)."""
    if not isinstance(levels, dict):
        return ["levels must be an object"]

    errors: list[str] = []
    curve_type = levels.get("type")
    params = levels.get("params") or {}
    max_level = levels.get("max_level")

    if not isinstance(params, dict):
        return ["levels.params must be an object"]

    match curve_type:
        case "quadratic":
            for key in ("a", "b", "c"):
                if key in params and not _positive(params, key):
                    errors.append(f"levels.params.{key} must be a positive number")
        case "linear":
            if not _positive(params, "xp_per_level"):
                errors.append("levels.params.xp_per_level must be a positive number")
        case "exponential":
            base = params.get("base")
            if isinstance(base, bool) or not isinstance(base, (int, float)) or base <= 1:
                errors.append("levels.params.base must be a number greater than 1")
            if not _positive(params, "multiplier"):
                errors.append("levels.params.multiplier must be a positive number")
        case "lookup":
            errors.extend(_lookup_errors(params.get("thresholds"), max_level))
        case _:
            errors.append(f"Unknown curve type: {curve_type!r}")

    if max_level is not None and (
        isinstance(max_level, bool) or not isinstance(max_level, int) or max_level < 0
    ):
        errors.append("levels.max_level must be a non-negative integer")
    return errors


def build_curve(levels: dict | None) -> LevelCurve:
    """Build a curve from a guild's ``levels`` preset (``None`` → default).

    Example presets::

        {"type": "linear", "params": {"xp_per_level": 100}}
        {"type": "lookup", "params": {"thresholds": [0, 100, 250, 500]}}
        {"type": "exponential", "params": {"base": 1.5, "multiplier": 100}, "max_level": 30}

    Raises
    ------
    InvalidArgument
        If the preset fails :func:`validate_curve_config`.
    """
    if levels is None:
        return DEFAULT_CURVE

    errors = validate_curve_config(levels)
    if errors:
        raise InvalidArgument("Invalid level curve: " + "; ".join(errors), {"levels": levels})

    params = levels.get("params") or {}
    max_level = levels.get("max_level")
    match levels["type"]:
        case "quadratic":
            if not params and max_level is None:
                return DEFAULT_CURVE
            return QuadraticCurve(
                params.get("a", CURVE_A),
                params.get("b", CURVE_B),
                params.get("c", CURVE_C),
                max_level=max_level,
            )
        case "linear":
            return LinearCurve(params["xp_per_level"], max_level=max_level)
        case "exponential":
            return ExponentialCurve(params["base"], params["multiplier"], max_level=max_level)
        case _:
            return LookupCurve(params["thresholds"], max_level=max_level)


# ---------------------------------------------------------------------------
# Curve-agnostic helpers (the canonical leveling math)
# ---------------------------------------------------------------------------
def xp_for_level(level: int, curve: LevelCurve | None = None) -> float:
    """Cumulative XP threshold to reach *level* (0 at level 0)."""
    return (curve or DEFAULT_CURVE).xp_for_level(_check_level(level))


def level_from_xp(xp: float, curve: LevelCurve | None = None) -> int:
    """Largest level whose threshold is ``<= xp``.  Negative xp counts as 0."""
    return (curve or DEFAULT_CURVE).level_from_xp(_clamp_xp(xp))


def xp_needed_for_level(level: int, curve: LevelCurve | None = None) -> float:
    """Cost of the single level *level*: ``xp_for_level(L) − xp_for_level(L−1)``."""
    level = _check_level(level)
    if level == 0:
        return 0
    curve = curve or DEFAULT_CURVE
    return curve.xp_for_level(level) - curve.xp_for_level(level - 1)


def xp_delta_for_level_range(from_level: int, to_level: int, curve: LevelCurve | None = None) -> float:
    """XP between two levels (negative when *to_level* < *from_level*)."""
    curve = curve or DEFAULT_CURVE
    return xp_for_level(to_level, curve) - xp_for_level(from_level, curve)


def progress(xp: float, curve: LevelCurve | None = None) -> LevelProgress:
    """Where *xp* sits inside its level.

    At a curve's maximum level the next threshold is infinite; ``to_next`` and
    ``percentage`` are then reported as 0.
    """
    curve = curve or DEFAULT_CURVE
    xp = _clamp_xp(xp)
    level = curve.level_from_xp(xp)
    floor = curve.xp_for_level(level)
    ceiling = curve.xp_for_level(level + 1)

    in_level = xp - floor
    if math.isinf(ceiling):
        return LevelProgress(level=level, in_level=in_level, to_next=0, percentage=0.0)

    to_next = max(ceiling - xp, 0)
    span = ceiling - floor
    percentage = (in_level / span) * 100 if span > 0 else 0.0
    return LevelProgress(level=level, in_level=in_level, to_next=to_next, percentage=percentage)
