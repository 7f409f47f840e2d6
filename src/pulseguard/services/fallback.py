"""Locally generated analyses.

Used when the external classification service cannot answer (or has not
answered yet) and for the baseline analysis of normal/warning readings.
Every function here is deterministic, never raises, and never performs I/O.
"""

from __future__ import annotations

from pulseguard.db.models.base import ReadingState
from pulseguard.services.analysis_types import (
    AnalysisResult,
    ConfidenceLevel,
    RiskLevel,
    SubjectInfo,
)
from pulseguard.services.severity import (
    VitalSigns,
    alert_breaches,
    warning_breaches,
)

# Issue text per (metric, breach direction) for alert-band breaches
ALERT_ISSUES: dict[tuple[str, str], str] = {
    ("temperature", "low"): "Hypothermia risk: Body temperature below safe threshold",
    ("temperature", "high"): "Hyperthermia risk: Body temperature above safe threshold",
    ("heart_rate", "low"): "Bradycardia: Abnormally low heart rate",
    ("heart_rate", "high"): "Tachycardia: Abnormally elevated heart rate",
    ("blood_oxygen", "low"): "Hypoxemia: Critically low blood oxygen levels",
    ("hydration", "low"): "Severe dehydration: Urgent rehydration needed",
    ("respiration", "low"): "Respiratory depression: Abnormally slow breathing rate",
    ("respiration", "high"): "Hyperventilation: Abnormally rapid breathing rate",
    ("fatigue", "high"): "Extreme fatigue: High risk of injury and performance impairment",
}

GENERIC_ALERT_ISSUE = "Critical health concern detected in combined metrics"

WARNING_ISSUES: dict[str, str] = {
    "temperature": "Abnormal body temperature",
    "heart_rate": "Irregular heart rate",
    "blood_oxygen": "Low blood oxygen levels",
    "hydration": "Dehydration",
    "respiration": "Abnormal respiration rate",
    "fatigue": "Excessive fatigue",
}

POSITION_CAVEATS: dict[str, str] = {
    "goalkeeper": "Alert state may affect reaction time and decision making",
    "defender": "Alert state may compromise defensive positioning and tackling safety",
    "midfielder": "Alert state may impact stamina and field coverage capabilities",
    "forward": "Alert state may affect sprint capacity and finishing ability",
}
DEFAULT_POSITION_CAVEAT = "Alert state may compromise overall performance and safety"

ALERT_RECOMMENDATIONS: tuple[str, ...] = (
    "Remove from play immediately for medical assessment",
    "Monitor vital signs continuously",
    "Begin standard recovery protocols appropriate for position",
    "Prepare a substitute",
    "Document all symptoms and readings for medical staff",
)

PROVISIONAL_RECOMMENDATIONS: tuple[str, ...] = (
    "Remove from play for immediate medical assessment",
    "Increase monitoring frequency to establish trends",
    "Document all symptoms and observations",
    "Prepare a substitute as a precautionary measure",
)

POSITION_RECOMMENDATIONS: dict[str, str] = {
    "goalkeeper": "Monitor reaction time and decision-making ability",
    "defender": "Assess defensive positioning and tackling capability",
    "midfielder": "Evaluate stamina and field coverage capacity",
    "forward": "Check sprint capacity and finishing ability",
}
DEFAULT_POSITION_RECOMMENDATION = "Assess position-specific performance metrics"


def position_caveat(position: str) -> str:
    """Exactly one role-specific caveat for an alert reading."""
    return POSITION_CAVEATS.get(position.strip().lower(), DEFAULT_POSITION_CAVEAT)


def alert_issues(metrics: VitalSigns) -> list[str]:
    """Alert-band issues, or the generic issue when none applies singly."""
    issues = [ALERT_ISSUES[(name, side)] for name, side in alert_breaches(metrics).items()]
    return issues or [GENERIC_ALERT_ISSUE]


def alert_fallback(
    metrics: VitalSigns,
    subject: SubjectInfo,
    *,
    confidence: ConfidenceLevel = ConfidenceLevel.FALLBACK,
    readings_analyzed: int = 1,
) -> AnalysisResult:
    """High-risk analysis for an alert reading the external service did not verify.

    With ``confidence=PROVISIONAL`` the summary states how many readings it is
    based on and the recommendations ask for closer monitoring while the
    retry is pending.
    """
    issues = alert_issues(metrics)
    issues.append(position_caveat(subject.position))

    if confidence == ConfidenceLevel.PROVISIONAL:
        plural = "" if readings_analyzed == 1 else "s"
        summary = (
            f"PRELIMINARY ANALYSIS: {subject.name} is showing critical health metrics "
            "that require immediate attention. This analysis is based on limited data "
            f"({readings_analyzed} reading{plural}) and should be supplemented with "
            "medical evaluation."
        )
        role_hint = POSITION_RECOMMENDATIONS.get(
            subject.position.strip().lower(), DEFAULT_POSITION_RECOMMENDATION
        )
        recommendations = [
            *PROVISIONAL_RECOMMENDATIONS[:3],
            role_hint,
            PROVISIONAL_RECOMMENDATIONS[3],
        ]
        recovery = (
            "Cannot be accurately determined with current data. "
            "Medical evaluation required for proper assessment."
        )
    else:
        summary = (
            f"PRELIMINARY ANALYSIS: {subject.name}'s health readings indicate a critical "
            "alert state requiring immediate attention. This analysis is based on limited "
            "data and should be supplemented with medical evaluation."
        )
        recommendations = list(ALERT_RECOMMENDATIONS)
        recovery = "To be determined after medical assessment"

    return AnalysisResult(
        summary=summary,
        recommendations=recommendations,
        risk_level=RiskLevel.HIGH,
        potential_issues=issues,
        replacement_needed=True,
        recovery_time_estimate=recovery,
        priority_action="Immediate removal from play and medical evaluation",
        confidence_level=confidence,
        readings_analyzed=readings_analyzed,
    )


def baseline_analysis(
    metrics: VitalSigns,
    state: ReadingState,
    subject: SubjectInfo,
) -> AnalysisResult:
    """Rule-based analysis for normal and warning readings."""
    if state == ReadingState.NORMAL:
        summary = f"{subject.name}'s health readings are within normal ranges."
        recommendations = [
            "Continue regular monitoring",
            "Maintain current training regimen",
            "Ensure proper hydration and nutrition",
        ]
        risk = RiskLevel.LOW
        priority = "Continue normal monitoring protocols"
    else:
        summary = (
            f"{subject.name}'s health readings show some values outside normal ranges "
            "that require monitoring."
        )
        recommendations = [
            "Monitor condition more frequently",
            "Consider adjusting training intensity",
            "Ensure proper hydration and rest",
        ]
        risk = RiskLevel.MEDIUM
        priority = "Monitor closely and consider adjustments to training load"

    return AnalysisResult(
        summary=summary,
        recommendations=recommendations,
        risk_level=risk,
        potential_issues=[WARNING_ISSUES[name] for name in warning_breaches(metrics)],
        replacement_needed=False,
        priority_action=priority,
        confidence_level=ConfidenceLevel.RULE_BASED,
    )


def fallback_for(
    metrics: VitalSigns,
    state: ReadingState,
    subject: SubjectInfo,
    *,
    confidence: ConfidenceLevel = ConfidenceLevel.FALLBACK,
    readings_analyzed: int = 1,
) -> AnalysisResult:
    """Pick the local analysis matching a reading's state.

    Alert readings get the high-risk template tagged with ``confidence``;
    normal and warning readings get the rule-based baseline.
    """
    if state == ReadingState.ALERT:
        return alert_fallback(
            metrics,
            subject,
            confidence=confidence,
            readings_analyzed=readings_analyzed,
        )
    return baseline_analysis(metrics, state, subject)
