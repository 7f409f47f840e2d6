"""Severity classification of vital-sign readings.

Each metric has two nested bands. The warning band is the normal range;
the alert band is wider. A reading is ALERT if any metric leaves its alert
band, otherwise WARNING if any metric leaves its warning band, otherwise
NORMAL. Alert checks run first.

| metric             | warning (outside-normal) | alert (outside-normal) |
|--------------------|--------------------------|------------------------|
| temperature C      | <36.5 or >37.5           | <36 or >38             |
| heart_rate bpm     | <60 or >100              | <50 or >120            |
| blood_oxygen %     | <95                      | <90                    |
| hydration %        | <70                      | <60                    |
| respiration br/min | <12 or >20               | <10 or >25             |
| fatigue (0-100)    | >30                      | >50                    |

Boundary values are inside the band (37.5 is normal, 38 is warning).
Non-finite values are treated as breaching every band, so a NaN metric
classifies as ALERT rather than silently passing.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Literal

from pulseguard.db.models.base import ReadingState

if TYPE_CHECKING:
    from collections.abc import Mapping

METRIC_NAMES: tuple[str, ...] = (
    "temperature",
    "heart_rate",
    "blood_oxygen",
    "hydration",
    "respiration",
    "fatigue",
)

BreachDirection = Literal["low", "high"]


@dataclass(frozen=True)
class VitalSigns:
    """The six metrics of one reading."""

    temperature: float
    heart_rate: float
    blood_oxygen: float
    hydration: float
    respiration: float
    fatigue: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> VitalSigns:
        """Build from a mapping holding the six metric keys."""
        return cls(**{name: float(data[name]) for name in METRIC_NAMES})

    @classmethod
    def from_object(cls, obj: Any) -> VitalSigns:
        """Build from an object exposing the metrics as attributes."""
        return cls(**{name: float(getattr(obj, name)) for name in METRIC_NAMES})

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class MetricBand:
    """Inclusive acceptable range; either bound may be open."""

    low: float | None = None
    high: float | None = None

    def breach(self, value: float) -> BreachDirection | None:
        """Return which side of the band ``value`` falls on, or None if inside.

        Comparisons are negated so NaN reports a breach.
        """
        if self.low is not None and not value >= self.low:
            return "low"
        if self.high is not None and not value <= self.high:
            return "high"
        return None

    def breached(self, value: float) -> bool:
        return self.breach(value) is not None


WARNING_BANDS: dict[str, MetricBand] = {
    "temperature": MetricBand(low=36.5, high=37.5),
    "heart_rate": MetricBand(low=60, high=100),
    "blood_oxygen": MetricBand(low=95),
    "hydration": MetricBand(low=70),
    "respiration": MetricBand(low=12, high=20),
    "fatigue": MetricBand(high=30),
}

ALERT_BANDS: dict[str, MetricBand] = {
    "temperature": MetricBand(low=36, high=38),
    "heart_rate": MetricBand(low=50, high=120),
    "blood_oxygen": MetricBand(low=90),
    "hydration": MetricBand(low=60),
    "respiration": MetricBand(low=10, high=25),
    "fatigue": MetricBand(high=50),
}

# Displayed to the classification service alongside each metric
NORMAL_RANGES: dict[str, tuple[float, float]] = {
    "temperature": (36.5, 37.5),
    "heart_rate": (60, 100),
    "blood_oxygen": (95, 100),
    "hydration": (70, 100),
    "respiration": (12, 20),
    "fatigue": (0, 30),
}


def _breaches(
    metrics: VitalSigns, bands: Mapping[str, MetricBand]
) -> dict[str, BreachDirection]:
    values = metrics.as_dict()
    found: dict[str, BreachDirection] = {}
    for name in METRIC_NAMES:
        direction = bands[name].breach(values[name])
        if direction is not None:
            found[name] = direction
    return found


def alert_breaches(metrics: VitalSigns) -> dict[str, BreachDirection]:
    """Metrics outside their alert band, in canonical metric order."""
    return _breaches(metrics, ALERT_BANDS)


def warning_breaches(metrics: VitalSigns) -> dict[str, BreachDirection]:
    """Metrics outside their warning (normal) band, in canonical metric order."""
    return _breaches(metrics, WARNING_BANDS)


def classify(metrics: VitalSigns) -> ReadingState:
    """Map a reading's metrics to its severity state.

    Pure and total: never raises for any float input.
    """
    if alert_breaches(metrics):
        return ReadingState.ALERT
    if warning_breaches(metrics):
        return ReadingState.WARNING
    return ReadingState.NORMAL
