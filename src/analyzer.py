"""Health data analysis.

Classification of single measurements, trend computation and the TCM
interpretation layer are separate functions; :class:`DataAnalyzer` composes
them. Recommendations (evidence-based) and TCM interpretations (traditional)
are always produced by different functions and returned in separate fields.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from src.models import (
    BloodPressureValue,
    DataQuality,
    HealthDataPoint,
    MeasurementType,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = "insufficient_data"

# "excellent" scores like "good"; tags missing from the table score 0
QUALITY_SCORES: dict[DataQuality, int] = {
    DataQuality.EXCELLENT: 3,
    DataQuality.GOOD: 3,
    DataQuality.FAIR: 2,
    DataQuality.POOR: 1,
}


@dataclass
class AnalyzerThresholds:
    """Classification cut-offs. Defaults follow common clinical guidance."""

    bradycardia_bpm: float = 60
    severe_bradycardia_bpm: float = 50
    tachycardia_bpm: float = 100
    severe_tachycardia_bpm: float = 120
    tcm_rapid_pulse_bpm: float = 90

    moderate_steps: int = 5000
    active_steps: int = 10000
    daily_step_goal: int = 10000

    sleep_good_min_hours: float = 7
    sleep_good_max_hours: float = 9
    sleep_fair_min_hours: float = 6

    bp_high_systolic: float = 140
    bp_high_diastolic: float = 90
    bp_elevated_systolic: float = 130
    bp_elevated_diastolic: float = 80

    fever_celsius: float = 37.5
    hypothermia_celsius: float = 36.0

    spo2_low: float = 90
    spo2_normal: float = 95

    # Accelerometer magnitude in m/s^2, gravity included
    movement_light: float = 9.5
    movement_moderate: float = 10.0
    movement_vigorous: float = 12.0

    # Summary level
    trend_window: int = 7
    heart_rate_trend_delta: float = 5
    steps_trend_delta: float = 1000
    weight_trend_delta: float = 1.0
    very_active_daily_steps: int = 12000
    active_daily_steps: int = 8000
    moderate_daily_steps: int = 5000


DEFAULT_THRESHOLDS = AnalyzerThresholds()


# ============== RESULT TYPES ==============


@dataclass
class AnalysisResult:
    """Classification of one data point."""

    measurement_type: MeasurementType
    category: str
    recommendation: str
    tcm_interpretation: str
    risk: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "measurement_type": self.measurement_type.value,
            "category": self.category,
            "risk": self.risk,
            "recommendation": self.recommendation,
            "tcm_interpretation": self.tcm_interpretation,
            "details": dict(self.details),
        }


@dataclass
class TrendAnalysis:
    """Direction of a numeric series, recent window vs. earlier samples."""

    trend: str
    change: float | None = None
    recent_average: float | None = None
    previous_average: float | None = None

    def to_dict(self) -> dict:
        return {
            "trend": self.trend,
            "change": self.change,
            "recent_average": self.recent_average,
            "previous_average": self.previous_average,
        }


@dataclass
class SleepTrend:
    trend: str
    average_quality_score: float | None = None
    recent_nights: int = 0

    def to_dict(self) -> dict:
        return {
            "trend": self.trend,
            "average_quality_score": self.average_quality_score,
            "recent_nights": self.recent_nights,
        }


@dataclass
class TCMInsights:
    constitution: str
    qi_level: str
    qi_score: int
    recommendations: list[str]
    seasonal_advice: str

    def to_dict(self) -> dict:
        return {
            "constitution": self.constitution,
            "qi_level": self.qi_level,
            "qi_score": self.qi_score,
            "recommendations": list(self.recommendations),
            "seasonal_advice": self.seasonal_advice,
        }


@dataclass
class AggregatedHealthData:
    """Window of data points grouped by measurement type, oldest first."""

    heart_rate: list[HealthDataPoint] = field(default_factory=list)
    steps: list[HealthDataPoint] = field(default_factory=list)
    sleep: list[HealthDataPoint] = field(default_factory=list)
    weight: list[HealthDataPoint] = field(default_factory=list)
    blood_pressure: list[HealthDataPoint] = field(default_factory=list)
    temperature: list[HealthDataPoint] = field(default_factory=list)
    blood_oxygen: list[HealthDataPoint] = field(default_factory=list)

    @classmethod
    def from_points(cls, points: Sequence[HealthDataPoint]) -> AggregatedHealthData:
        """Group points by type. Points are sorted by timestamp, ties keep input order."""
        data = cls()
        for point in sorted(points, key=lambda p: p.timestamp):
            getattr(data, point.type.value).append(point)
        return data

    def series(self, measurement_type: MeasurementType) -> list[HealthDataPoint]:
        return getattr(self, measurement_type.value)

    @property
    def total_points(self) -> int:
        return sum(len(self.series(t)) for t in MeasurementType)

    def counts(self) -> dict[str, int]:
        return {t.value: len(self.series(t)) for t in MeasurementType}


@dataclass
class HealthSummary:
    """Point-in-time rollup of an aggregated window."""

    average_heart_rate: int | None
    latest_heart_rate: float | None
    daily_steps_average: int | None
    daily_step_goal: int
    sleep_quality: str
    activity_level: str
    latest_weight: float | None
    blood_pressure_category: str | None
    latest_blood_pressure: BloodPressureValue | None
    latest_blood_oxygen: float | None
    latest_temperature: float | None
    trends: dict[str, TrendAnalysis | SleepTrend]
    tcm_insights: TCMInsights | None = None
    data_points: int = 0
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def step_goal_progress(self) -> float | None:
        """Average daily steps as a percentage of the goal."""
        if self.daily_steps_average is None or self.daily_step_goal <= 0:
            return None
        return round(100 * self.daily_steps_average / self.daily_step_goal, 1)

    def to_dict(self) -> dict:
        return {
            "average_heart_rate": self.average_heart_rate,
            "latest_heart_rate": self.latest_heart_rate,
            "daily_steps_average": self.daily_steps_average,
            "daily_step_goal": self.daily_step_goal,
            "step_goal_progress": self.step_goal_progress,
            "sleep_quality": self.sleep_quality,
            "activity_level": self.activity_level,
            "latest_weight": self.latest_weight,
            "blood_pressure_category": self.blood_pressure_category,
            "latest_blood_pressure": (
                self.latest_blood_pressure.to_dict() if self.latest_blood_pressure else None
            ),
            "latest_blood_oxygen": self.latest_blood_oxygen,
            "latest_temperature": self.latest_temperature,
            "trends": {name: trend.to_dict() for name, trend in self.trends.items()},
            "tcm_insights": self.tcm_insights.to_dict() if self.tcm_insights else None,
            "data_points": self.data_points,
            "generated_at": self.generated_at.isoformat(),
        }


# ============== CLASSIFICATION ==============


def classify_heart_rate(bpm: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> tuple[str, str]:
    """Returns (category, risk)."""
    if bpm < t.bradycardia_bpm:
        return "bradycardia", "high" if bpm < t.severe_bradycardia_bpm else "medium"
    if bpm > t.tachycardia_bpm:
        return "tachycardia", "high" if bpm > t.severe_tachycardia_bpm else "medium"
    return "normal", "low"


def classify_steps(steps: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if steps > t.active_steps:
        return "active"
    if steps > t.moderate_steps:
        return "moderate"
    return "sedentary"


def classify_sleep_duration(hours: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if t.sleep_good_min_hours <= hours <= t.sleep_good_max_hours:
        return "good"
    if t.sleep_fair_min_hours <= hours < t.sleep_good_min_hours:
        return "fair"
    return "poor"


def classify_blood_pressure(
    systolic: float,
    diastolic: float,
    t: AnalyzerThresholds = DEFAULT_THRESHOLDS,
) -> str:
    if systolic >= t.bp_high_systolic or diastolic >= t.bp_high_diastolic:
        return "high"
    if systolic >= t.bp_elevated_systolic or diastolic >= t.bp_elevated_diastolic:
        return "elevated"
    return "normal"


def classify_temperature(celsius: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if celsius > t.fever_celsius:
        return "fever"
    if celsius < t.hypothermia_celsius:
        return "hypothermia"
    return "normal"


def classify_blood_oxygen(percent: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> tuple[str, str]:
    """Returns (category, risk)."""
    if percent < t.spo2_low:
        return "low", "high"
    if percent < t.spo2_normal:
        return "below_normal", "medium"
    return "normal", "low"


def classify_movement(magnitude: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    """Movement intensity from one accelerometer sample."""
    if magnitude > t.movement_vigorous:
        return "vigorous"
    if magnitude > t.movement_moderate:
        return "moderate"
    if magnitude > t.movement_light:
        return "light"
    return "sedentary"


# ============== RECOMMENDATIONS ==============


def heart_rate_recommendation(category: str) -> str:
    if category == "bradycardia":
        return "Consider gentle exercise to improve circulation. Consult healthcare provider if persistent."
    if category == "tachycardia":
        return "Practice relaxation techniques. Avoid caffeine and stress. Seek medical advice if ongoing."
    return "Maintain regular exercise and healthy lifestyle for optimal heart health."


def steps_recommendation(steps: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if steps < t.moderate_steps:
        return "Aim for at least 5,000 steps daily. Start with short walks and gradually increase."
    if steps < t.active_steps:
        return "Good progress! Try to reach 10,000 steps for optimal health benefits."
    return "Excellent activity level! Maintain this healthy habit."


def sleep_recommendation(quality: str, hours: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if quality == "poor" or hours < t.sleep_fair_min_hours:
        return "Prioritize 7-9 hours of quality sleep. Create a consistent bedtime routine."
    return "Good sleep habits! Continue maintaining regular sleep schedule."


def weight_recommendation() -> str:
    return "Monitor weight trends over time. Focus on balanced nutrition and regular activity."


def blood_pressure_recommendation(category: str) -> str:
    if category == "high":
        return "High blood pressure detected. Consult healthcare provider and monitor regularly."
    if category == "elevated":
        return "Elevated blood pressure. Consider lifestyle modifications and regular monitoring."
    return "Blood pressure is normal. Maintain healthy lifestyle habits."


def temperature_recommendation(category: str) -> str:
    if category == "fever":
        return "Elevated temperature detected. Rest, hydrate, and monitor. Seek medical care if persistent."
    if category == "hypothermia":
        return "Low body temperature. Warm up gradually and seek medical attention if severe."
    return "Normal body temperature. Continue monitoring for any changes."


def blood_oxygen_recommendation(category: str) -> str:
    if category == "low":
        return "Oxygen saturation is low. Seek medical attention, especially if short of breath."
    if category == "below_normal":
        return "Oxygen saturation is slightly low. Re-measure at rest and consult a provider if it persists."
    return "Oxygen saturation is normal. Continue regular monitoring."


# ============== TCM INTERPRETATIONS ==============


def tcm_heart_rate_interpretation(bpm: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if bpm < t.bradycardia_bpm:
        return "Slow pulse may indicate Yang deficiency or excess Yin. Consider warming foods and gentle exercise."
    if bpm > t.tcm_rapid_pulse_bpm:
        return "Rapid pulse may indicate Heart fire or Yin deficiency. Consider cooling foods and stress reduction."
    return "Pulse rate suggests balanced Heart Qi. Maintain current lifestyle habits."


def tcm_activity_interpretation(activity_level: str) -> str:
    if activity_level == "sedentary":
        return "Low activity may lead to Qi stagnation. Gentle movement helps circulate energy."
    if activity_level == "moderate":
        return "Moderate activity supports healthy Qi flow. Continue balanced approach."
    if activity_level == "active":
        return "Good activity level promotes strong Qi circulation and vitality."
    return "Regular movement is essential for healthy Qi flow."


def tcm_sleep_interpretation(quality: str, hours: float, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if quality == "poor" or hours < t.sleep_fair_min_hours:
        return "Poor sleep depletes Yin and affects Kidney essence. Prioritize rest and calming practices."
    return "Good sleep nourishes Yin and restores Kidney essence. Continue healthy sleep habits."


def tcm_weight_interpretation() -> str:
    return "Weight reflects the balance of Spleen Qi and metabolism. Focus on digestive health and regular meals."


def tcm_blood_pressure_interpretation(category: str) -> str:
    if category == "high":
        return "High pressure may indicate Liver Yang rising or Kidney Yin deficiency. Consider calming practices."
    if category == "elevated":
        return "Elevated pressure suggests need for stress reduction and Liver Qi regulation."
    return "Normal pressure indicates balanced circulation and Heart Qi."


def tcm_temperature_interpretation(category: str) -> str:
    if category == "fever":
        return "Elevated temperature indicates external pathogen or internal heat. Support body's natural defenses."
    if category == "hypothermia":
        return "Low temperature may indicate Yang deficiency. Focus on warming foods and practices."
    return "Normal temperature suggests balanced internal energy and good defensive Qi."


def tcm_blood_oxygen_interpretation(category: str) -> str:
    if category == "normal":
        return "Full breath suggests strong Lung Qi governing respiration."
    return "Shallow oxygenation may reflect Lung Qi deficiency. Breathing exercises support the Lung."


# ============== TRENDS ==============


def compute_trend(
    values: Sequence[float],
    delta: float,
    window: int = 7,
) -> TrendAnalysis:
    """Compare the mean of the last ``window`` samples against the samples before them.

    Args:
        values: Samples, oldest first
        delta: Absolute change above which the trend is directional
        window: Size of the recent window

    Returns:
        TrendAnalysis, ``insufficient_data`` when no sample precedes the window
    """
    if len(values) < 2 or len(values) <= window:
        return TrendAnalysis(INSUFFICIENT_DATA)

    recent = values[-window:]
    previous = values[:-window]

    recent_avg = sum(recent) / len(recent)
    previous_avg = sum(previous) / len(previous)
    change = recent_avg - previous_avg

    if change > delta:
        trend = "increasing"
    elif change < -delta:
        trend = "decreasing"
    else:
        trend = "stable"

    return TrendAnalysis(
        trend=trend,
        change=round(change, 1),
        recent_average=round(recent_avg, 1),
        previous_average=round(previous_avg, 1),
    )


def sleep_quality_score(point: HealthDataPoint) -> int:
    return QUALITY_SCORES.get(point.quality, 0)


def classify_sleep_quality(sleep: Sequence[HealthDataPoint]) -> str:
    """Average the quality scores of sleep samples into good/fair/poor."""
    if not sleep:
        return "unknown"
    average = sum(sleep_quality_score(p) for p in sleep) / len(sleep)
    if average > 2.5:
        return "good"
    if average > 1.5:
        return "fair"
    return "poor"


def compute_sleep_trend(sleep: Sequence[HealthDataPoint], window: int = 7) -> SleepTrend:
    if len(sleep) < 2:
        return SleepTrend(INSUFFICIENT_DATA)

    recent = sleep[-window:]
    average = sum(sleep_quality_score(p) for p in recent) / len(recent)
    if average > 2.5:
        trend = "improving"
    elif average < 1.5:
        trend = "declining"
    else:
        trend = "stable"
    return SleepTrend(trend, round(average, 1), len(recent))


def daily_totals(steps: Sequence[HealthDataPoint]) -> dict[date, float]:
    """Sum step samples per calendar day."""
    totals: dict[date, float] = {}
    for point in steps:
        day = point.timestamp.date()
        totals[day] = totals.get(day, 0) + point.scalar
    return totals


def activity_level(daily_steps_average: float | None, t: AnalyzerThresholds = DEFAULT_THRESHOLDS) -> str:
    if daily_steps_average is None:
        return "unknown"
    if daily_steps_average > t.very_active_daily_steps:
        return "very_active"
    if daily_steps_average > t.active_daily_steps:
        return "active"
    if daily_steps_average > t.moderate_daily_steps:
        return "moderate"
    return "sedentary"


# ============== TCM INSIGHTS ==============


def assess_constitution(summary: HealthSummary) -> str:
    """Coarse constitution tendency from summary fields only."""
    hr = summary.average_heart_rate
    if hr is not None and hr < 65 and summary.activity_level == "sedentary":
        return "yang_deficiency"
    if hr is not None and hr > 85 and summary.sleep_quality == "poor":
        return "yin_deficiency"
    if summary.daily_steps_average is not None and summary.daily_steps_average < 3000:
        return "qi_deficiency"
    return "balanced"


def assess_qi_level(summary: HealthSummary) -> tuple[str, int]:
    """Returns (qi level, score out of 3)."""
    hr = summary.average_heart_rate
    score = sum(
        [
            summary.activity_level not in ("sedentary", "unknown"),
            summary.sleep_quality == "good",
            hr is not None and 60 <= hr <= 90,
        ]
    )
    if score >= 3:
        return "strong", score
    if score >= 2:
        return "moderate", score
    return "weak", score


def tcm_recommendations(summary: HealthSummary) -> list[str]:
    recommendations = []
    if summary.activity_level == "sedentary":
        recommendations.append("Practice gentle Qi Gong exercises to improve energy flow")
    if summary.sleep_quality == "poor":
        recommendations.append("Follow TCM sleep hygiene: sleep before 11 PM to nourish Yin")
    if summary.average_heart_rate is not None and summary.average_heart_rate > 90:
        recommendations.append("Consider calming herbs like chrysanthemum tea to cool Heart fire")
    if summary.blood_pressure_category == "high":
        recommendations.append("Calm rising Liver Yang with Tai Chi and reduced salt and alcohol")
    return recommendations


def seasonal_advice(month: int) -> str:
    """Static advice keyed off the calendar month (1-12)."""
    if 3 <= month <= 5:
        return "Spring nourishes Liver Qi. Focus on gentle detox and fresh greens."
    if 6 <= month <= 8:
        return "Summer supports Heart energy. Stay hydrated and enjoy cooling foods."
    if 9 <= month <= 11:
        return "Autumn nourishes Lung Qi. Focus on moistening foods and breathing exercises."
    return "Winter strengthens Kidney energy. Warm foods and rest support vital essence."


# ============== ANALYZER ==============


class DataAnalyzer:
    """Per-point classification and window summaries."""

    def __init__(self, thresholds: AnalyzerThresholds | None = None):
        self.thresholds = thresholds or AnalyzerThresholds()
        self._handlers: dict[MeasurementType, Callable[[HealthDataPoint], AnalysisResult]] = {
            MeasurementType.HEART_RATE: self._analyze_heart_rate,
            MeasurementType.STEPS: self._analyze_steps,
            MeasurementType.SLEEP: self._analyze_sleep,
            MeasurementType.WEIGHT: self._analyze_weight,
            MeasurementType.BLOOD_PRESSURE: self._analyze_blood_pressure,
            MeasurementType.TEMPERATURE: self._analyze_temperature,
            MeasurementType.BLOOD_OXYGEN: self._analyze_blood_oxygen,
        }

    def analyze_health_data(
        self,
        data_type: MeasurementType | str,
        point: HealthDataPoint,
    ) -> AnalysisResult:
        """Classify one data point.

        Args:
            data_type: Measurement type to analyze the point as
            point: Data point

        Returns:
            Category plus separate recommendation and TCM interpretation
        """
        try:
            measurement_type = MeasurementType(data_type)
        except ValueError:
            measurement_type = None

        logger.debug(f"Analyzing {data_type} data from {point.device_id}")
        handler = self._handlers.get(measurement_type) if measurement_type else None
        if handler is None:
            return self._analyze_generic(point)
        return handler(point)

    def _analyze_heart_rate(self, point: HealthDataPoint) -> AnalysisResult:
        bpm = point.scalar
        category, risk = classify_heart_rate(bpm, self.thresholds)
        return AnalysisResult(
            measurement_type=MeasurementType.HEART_RATE,
            category=category,
            risk=risk,
            recommendation=heart_rate_recommendation(category),
            tcm_interpretation=tcm_heart_rate_interpretation(bpm, self.thresholds),
            details={"bpm": bpm},
        )

    def _analyze_steps(self, point: HealthDataPoint) -> AnalysisResult:
        steps = point.scalar
        level = classify_steps(steps, self.thresholds)
        return AnalysisResult(
            measurement_type=MeasurementType.STEPS,
            category=level,
            recommendation=steps_recommendation(steps, self.thresholds),
            tcm_interpretation=tcm_activity_interpretation(level),
            details={"steps": steps},
        )

    def _analyze_sleep(self, point: HealthDataPoint) -> AnalysisResult:
        hours = point.scalar
        quality = classify_sleep_duration(hours, self.thresholds)
        return AnalysisResult(
            measurement_type=MeasurementType.SLEEP,
            category=quality,
            recommendation=sleep_recommendation(quality, hours, self.thresholds),
            tcm_interpretation=tcm_sleep_interpretation(quality, hours, self.thresholds),
            details={"duration_hours": hours},
        )

    def _analyze_weight(self, point: HealthDataPoint) -> AnalysisResult:
        # A single sample carries no direction; see the summary weight trend
        return AnalysisResult(
            measurement_type=MeasurementType.WEIGHT,
            category="stable",
            recommendation=weight_recommendation(),
            tcm_interpretation=tcm_weight_interpretation(),
            details={"weight_kg": point.scalar},
        )

    def _analyze_blood_pressure(self, point: HealthDataPoint) -> AnalysisResult:
        value = point.value
        if not isinstance(value, BloodPressureValue):
            raise TypeError(f"Expected a blood pressure value, got {value!r}")
        category = classify_blood_pressure(value.systolic, value.diastolic, self.thresholds)
        return AnalysisResult(
            measurement_type=MeasurementType.BLOOD_PRESSURE,
            category=category,
            risk={"high": "high", "elevated": "medium"}.get(category, "low"),
            recommendation=blood_pressure_recommendation(category),
            tcm_interpretation=tcm_blood_pressure_interpretation(category),
            details=value.to_dict(),
        )

    def _analyze_temperature(self, point: HealthDataPoint) -> AnalysisResult:
        celsius = point.scalar
        category = classify_temperature(celsius, self.thresholds)
        return AnalysisResult(
            measurement_type=MeasurementType.TEMPERATURE,
            category=category,
            recommendation=temperature_recommendation(category),
            tcm_interpretation=tcm_temperature_interpretation(category),
            details={"temperature": celsius},
        )

    def _analyze_blood_oxygen(self, point: HealthDataPoint) -> AnalysisResult:
        percent = point.scalar
        category, risk = classify_blood_oxygen(percent, self.thresholds)
        return AnalysisResult(
            measurement_type=MeasurementType.BLOOD_OXYGEN,
            category=category,
            risk=risk,
            recommendation=blood_oxygen_recommendation(category),
            tcm_interpretation=tcm_blood_oxygen_interpretation(category),
            details={"spo2": percent},
        )

    def _analyze_generic(self, point: HealthDataPoint) -> AnalysisResult:
        return AnalysisResult(
            measurement_type=point.type,
            category="unclassified",
            recommendation="Monitor regularly for patterns",
            tcm_interpretation="Observe changes over time to understand your constitution.",
            details={"value": str(point.value), "timestamp": point.timestamp.isoformat()},
        )

    def generate_health_summary(
        self,
        data: AggregatedHealthData,
        now: datetime | None = None,
    ) -> HealthSummary:
        """Roll an aggregated window up into a summary.

        Args:
            data: Points grouped by type, oldest first
            now: Reference time for the seasonal advice

        Returns:
            Freshly derived summary including TCM insights
        """
        t = self.thresholds
        now = now or datetime.now()

        heart_rates = [p.scalar for p in data.heart_rate]
        average_hr = round(sum(heart_rates) / len(heart_rates)) if heart_rates else None

        totals = daily_totals(data.steps)
        steps_average = round(sum(totals.values()) / len(totals)) if totals else None

        latest_bp = data.blood_pressure[-1].value if data.blood_pressure else None
        bp_category = None
        if isinstance(latest_bp, BloodPressureValue):
            bp_category = classify_blood_pressure(latest_bp.systolic, latest_bp.diastolic, t)

        trends: dict[str, TrendAnalysis | SleepTrend] = {
            "heart_rate": compute_trend(heart_rates, t.heart_rate_trend_delta, t.trend_window),
            "steps": compute_trend([p.scalar for p in data.steps], t.steps_trend_delta, t.trend_window),
            "sleep": compute_sleep_trend(data.sleep, t.trend_window),
            "weight": compute_trend([p.scalar for p in data.weight], t.weight_trend_delta, t.trend_window),
        }

        summary = HealthSummary(
            average_heart_rate=average_hr,
            latest_heart_rate=heart_rates[-1] if heart_rates else None,
            daily_steps_average=steps_average,
            daily_step_goal=t.daily_step_goal,
            sleep_quality=classify_sleep_quality(data.sleep),
            activity_level=activity_level(steps_average, t),
            latest_weight=data.weight[-1].scalar if data.weight else None,
            blood_pressure_category=bp_category,
            latest_blood_pressure=latest_bp if isinstance(latest_bp, BloodPressureValue) else None,
            latest_blood_oxygen=data.blood_oxygen[-1].scalar if data.blood_oxygen else None,
            latest_temperature=data.temperature[-1].scalar if data.temperature else None,
            trends=trends,
            data_points=data.total_points,
            generated_at=now,
        )

        qi_level, qi_score = assess_qi_level(summary)
        summary.tcm_insights = TCMInsights(
            constitution=assess_constitution(summary),
            qi_level=qi_level,
            qi_score=qi_score,
            recommendations=tcm_recommendations(summary),
            seasonal_advice=seasonal_advice(now.month),
        )
        return summary
