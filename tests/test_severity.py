"""Tests for reading severity classification.

Tests cover:
- Band boundaries (inclusive) for every metric
- Alert precedence over warning
- Non-finite values
- Breach direction reporting
"""

import math

import pytest

from pulseguard.db.models.base import ReadingState
from pulseguard.services.severity import (
    MetricBand,
    VitalSigns,
    alert_breaches,
    classify,
    warning_breaches,
)

NORMAL = {
    "temperature": 37.0,
    "heart_rate": 75,
    "blood_oxygen": 98,
    "hydration": 85,
    "respiration": 16,
    "fatigue": 15,
}


def with_metric(**overrides) -> VitalSigns:
    return VitalSigns.from_mapping({**NORMAL, **overrides})


class TestClassifyScenarios:
    """End-to-end classification of realistic readings."""

    def test_multiple_alert_breaches(self, alert_metrics):
        assert classify(alert_metrics) == ReadingState.ALERT

    def test_temperature_only_in_warning_band(self, warning_metrics):
        assert classify(warning_metrics) == ReadingState.WARNING

    def test_all_normal(self, normal_metrics):
        assert classify(normal_metrics) == ReadingState.NORMAL


class TestBandBoundaries:
    """Boundary values sit inside the band they bound."""

    @pytest.mark.parametrize(
        ("metric", "value", "expected"),
        [
            ("temperature", 37.5, ReadingState.NORMAL),
            ("temperature", 36.5, ReadingState.NORMAL),
            ("temperature", 38.0, ReadingState.WARNING),
            ("temperature", 38.01, ReadingState.ALERT),
            ("temperature", 36.0, ReadingState.WARNING),
            ("temperature", 35.9, ReadingState.ALERT),
            ("heart_rate", 100, ReadingState.NORMAL),
            ("heart_rate", 101, ReadingState.WARNING),
            ("heart_rate", 120, ReadingState.WARNING),
            ("heart_rate", 121, ReadingState.ALERT),
            ("heart_rate", 59, ReadingState.WARNING),
            ("heart_rate", 49, ReadingState.ALERT),
            ("blood_oxygen", 95, ReadingState.NORMAL),
            ("blood_oxygen", 94, ReadingState.WARNING),
            ("blood_oxygen", 90, ReadingState.WARNING),
            ("blood_oxygen", 89.9, ReadingState.ALERT),
            ("hydration", 70, ReadingState.NORMAL),
            ("hydration", 69, ReadingState.WARNING),
            ("hydration", 59, ReadingState.ALERT),
            ("respiration", 20, ReadingState.NORMAL),
            ("respiration", 21, ReadingState.WARNING),
            ("respiration", 26, ReadingState.ALERT),
            ("respiration", 11, ReadingState.WARNING),
            ("respiration", 9, ReadingState.ALERT),
            ("fatigue", 30, ReadingState.NORMAL),
            ("fatigue", 31, ReadingState.WARNING),
            ("fatigue", 50, ReadingState.WARNING),
            ("fatigue", 51, ReadingState.ALERT),
        ],
    )
    def test_single_metric(self, metric, value, expected):
        assert classify(with_metric(**{metric: value})) == expected

    def test_alert_takes_precedence_over_warnings(self):
        metrics = with_metric(temperature=37.8, heart_rate=105, fatigue=55)
        assert classify(metrics) == ReadingState.ALERT


class TestNonFiniteValues:
    """NaN and infinities never pass silently."""

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_temperature_is_alert(self, value):
        assert classify(with_metric(temperature=value)) == ReadingState.ALERT

    def test_nan_fatigue_is_alert(self):
        assert classify(with_metric(fatigue=math.nan)) == ReadingState.ALERT


class TestBreaches:
    """Tests for breach direction reporting."""

    def test_band_reports_side(self):
        band = MetricBand(low=10, high=20)
        assert band.breach(9) == "low"
        assert band.breach(21) == "high"
        assert band.breach(10) is None
        assert band.breach(20) is None

    def test_open_band(self):
        band = MetricBand(high=30)
        assert band.breach(-1000) is None
        assert band.breached(31)

    def test_alert_breaches_in_metric_order(self, alert_metrics):
        assert list(alert_breaches(alert_metrics).items()) == [
            ("temperature", "high"),
            ("heart_rate", "high"),
            ("blood_oxygen", "low"),
            ("hydration", "low"),
            ("respiration", "high"),
            ("fatigue", "high"),
        ]

    def test_warning_breaches(self, warning_metrics):
        assert warning_breaches(warning_metrics) == {"temperature": "high"}
        assert alert_breaches(warning_metrics) == {}


class TestVitalSigns:
    """Tests for VitalSigns construction."""

    def test_from_mapping_coerces_to_float(self):
        metrics = VitalSigns.from_mapping(NORMAL)
        assert metrics.heart_rate == 75.0
        assert isinstance(metrics.heart_rate, float)

    def test_from_mapping_missing_metric(self):
        data = dict(NORMAL)
        del data["fatigue"]
        with pytest.raises(KeyError):
            VitalSigns.from_mapping(data)

    def test_as_dict_round_trip(self, normal_metrics):
        assert VitalSigns.from_mapping(normal_metrics.as_dict()) == normal_metrics
