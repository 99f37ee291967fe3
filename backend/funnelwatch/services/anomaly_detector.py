"""
Anomaly detection over the daily aggregates.

A pass compares the newest aggregate point of each active funnel (and each of
its steps) with the one before it and with a trailing seven-point average.
Candidates are de-duplicated against recent active alerts before they are
stored; only newly stored critical/warning alerts are pushed to Slack.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from funnelwatch.core.config import settings
from funnelwatch.core.time import ensure_utc, now_utc, utc_day
from funnelwatch.models.models import Alert, Funnel, FunnelDailyAggregate, FunnelStep, StepDailyAggregate

logger = logging.getLogger(__name__)

ALERT_STATUSES = ("active", "acknowledged", "resolved")
NOTIFY_SEVERITIES = ("critical", "warning")
TRAILING_POINTS = 7


@dataclass(frozen=True)
class AlertThresholds:
    drop_off_vs_prev_day: float = 15.0
    drop_off_vs_7day: float = 10.0
    conversion_drop_vs_prev_day: float = 20.0
    volume_drop_vs_prev_day: float = 30.0
    critical_drop_off: float = 50.0
    warning_drop_off: float = 30.0
    dedup_window_hours: int = 24

    @classmethod
    def from_settings(cls) -> "AlertThresholds":
        return cls(
            drop_off_vs_prev_day=float(getattr(settings, "ALERT_DROP_OFF_VS_PREV_DAY_PCT", 15.0)),
            drop_off_vs_7day=float(getattr(settings, "ALERT_DROP_OFF_VS_7DAY_PCT", 10.0)),
            conversion_drop_vs_prev_day=float(getattr(settings, "ALERT_CONVERSION_DROP_VS_PREV_DAY_PCT", 20.0)),
            volume_drop_vs_prev_day=float(getattr(settings, "ALERT_VOLUME_DROP_VS_PREV_DAY_PCT", 30.0)),
            critical_drop_off=float(getattr(settings, "ALERT_CRITICAL_DROP_OFF_PCT", 50.0)),
            warning_drop_off=float(getattr(settings, "ALERT_WARNING_DROP_OFF_PCT", 30.0)),
            dedup_window_hours=int(getattr(settings, "ALERT_DEDUP_WINDOW_HOURS", 24)),
        )


@dataclass
class DetectedAlert:
    funnel_id: int
    funnel_name: str
    severity: str
    alert_type: str
    current_value: float
    percentage_change: float
    message: str
    step_number: Optional[int] = None
    step_name: Optional[str] = None
    previous_day_value: Optional[float] = None
    seven_day_average: Optional[float] = None
    recommendation: Optional[str] = None

    def summary(self) -> dict[str, Any]:
        return {
            "type": self.alert_type,
            "severity": self.severity,
            "message": self.message,
            "funnel": self.funnel_name,
            "step": self.step_name,
        }


@dataclass
class SaveResult:
    saved: list[Alert] = field(default_factory=list)
    suppressed: int = 0
    notified: int = 0


def _relative_change(current: float, baseline: float) -> float:
    return (current - baseline) / baseline * 100.0


def _trailing_average(values: list[float]) -> float:
    window = values[:TRAILING_POINTS]
    return sum(window) / len(window)


class AnomalyDetector:
    def __init__(self, thresholds: AlertThresholds | None = None, notifier: Any = None):
        self.thresholds = thresholds or AlertThresholds.from_settings()
        self.notifier = notifier

    # --- rules -----------------------------------------------------------

    def get_severity(self, drop_off_rate: float, percentage_change: float) -> str:
        if drop_off_rate >= self.thresholds.critical_drop_off or percentage_change > 50:
            return "critical"
        if drop_off_rate >= self.thresholds.warning_drop_off or percentage_change > 25:
            return "warning"
        return "info"

    def get_recommendation(self, step_name: str | None, drop_off_rate: float) -> str:
        name = (step_name or "").lower()
        if "medical" in name or "history" in name:
            return (
                "Medical history steps often see high drop-offs. "
                "Consider progressive disclosure or simplifying questions."
            )
        if "insurance" in name:
            return "Insurance steps can cause friction. Add trust badges and clarify why information is needed."
        if "payment" in name or "checkout" in name:
            return (
                "Check for payment processing issues. "
                "Ensure trust signals are visible and checkout is mobile-friendly."
            )
        if "bmi" in name or "weight" in name:
            return "BMI/weight steps can be sensitive. Consider hiding calculations and showing encouraging messages."
        if drop_off_rate > 40:
            return "High drop-off detected. Review form complexity, validation errors, and mobile experience."
        return "Review recent changes to this step. Check for validation issues or confusing UX."

    def check_funnel_metrics(self, funnel: Funnel, points: list[FunnelDailyAggregate]) -> list[DetectedAlert]:
        """`points` are the funnel's daily aggregates, newest first."""
        if len(points) < 2:
            return []
        latest, previous = points[0], points[1]
        alerts: list[DetectedAlert] = []

        if previous.conversion_rate > 0:
            change = _relative_change(latest.conversion_rate, previous.conversion_rate)
            if change < -self.thresholds.conversion_drop_vs_prev_day:
                alerts.append(
                    DetectedAlert(
                        funnel_id=funnel.id,
                        funnel_name=funnel.name,
                        severity="critical" if change < -30 else "warning",
                        alert_type="conversion",
                        current_value=latest.conversion_rate,
                        previous_day_value=previous.conversion_rate,
                        seven_day_average=_trailing_average([p.conversion_rate for p in points]),
                        percentage_change=change,
                        message=f"Conversion rate dropped by {abs(change):.1f}% vs yesterday",
                        recommendation=(
                            "Review recent changes to the funnel. Check for technical issues or UX problems."
                        ),
                    )
                )

        if previous.total_starts > 0:
            change = _relative_change(latest.total_starts, previous.total_starts)
            if change < -self.thresholds.volume_drop_vs_prev_day:
                alerts.append(
                    DetectedAlert(
                        funnel_id=funnel.id,
                        funnel_name=funnel.name,
                        severity="critical" if change < -50 else "warning",
                        alert_type="volume",
                        current_value=float(latest.total_starts),
                        previous_day_value=float(previous.total_starts),
                        seven_day_average=_trailing_average([float(p.total_starts) for p in points]),
                        percentage_change=change,
                        message=f"Funnel starts decreased by {abs(change):.1f}% vs yesterday",
                        recommendation=(
                            "Check traffic sources and marketing campaigns. "
                            "Verify funnel embed is working correctly."
                        ),
                    )
                )
        return alerts

    def check_step_metrics(
        self,
        funnel: Funnel,
        step: FunnelStep,
        points: list[StepDailyAggregate],
    ) -> list[DetectedAlert]:
        """`points` are the step's daily aggregates, newest first."""
        if len(points) < 2:
            return []
        latest, previous = points[0], points[1]
        average = _trailing_average([p.drop_off_rate for p in points])
        alerts: list[DetectedAlert] = []

        if previous.drop_off_rate > 0:
            change = _relative_change(latest.drop_off_rate, previous.drop_off_rate)
            if change > self.thresholds.drop_off_vs_prev_day:
                alerts.append(
                    DetectedAlert(
                        funnel_id=funnel.id,
                        funnel_name=funnel.name,
                        step_number=step.step_number,
                        step_name=step.step_name,
                        severity=self.get_severity(latest.drop_off_rate, change),
                        alert_type="drop_off",
                        current_value=latest.drop_off_rate,
                        previous_day_value=previous.drop_off_rate,
                        seven_day_average=average,
                        percentage_change=change,
                        message=(
                            f"Drop-off rate at Step {step.step_number} ({step.step_name}) "
                            f"increased by {change:.1f}%"
                        ),
                        recommendation=self.get_recommendation(step.step_name, latest.drop_off_rate),
                    )
                )

        if average > 0:
            change = _relative_change(latest.drop_off_rate, average)
            already_flagged = any(alert.alert_type == "drop_off" for alert in alerts)
            if change > self.thresholds.drop_off_vs_7day and not already_flagged:
                alerts.append(
                    DetectedAlert(
                        funnel_id=funnel.id,
                        funnel_name=funnel.name,
                        step_number=step.step_number,
                        step_name=step.step_name,
                        severity=self.get_severity(latest.drop_off_rate, change),
                        alert_type="step_anomaly",
                        current_value=latest.drop_off_rate,
                        seven_day_average=average,
                        percentage_change=change,
                        message=(
                            f"Step {step.step_number} ({step.step_name}) drop-off is "
                            f"{change:.1f}% above 7-day average"
                        ),
                        recommendation=self.get_recommendation(step.step_name, latest.drop_off_rate),
                    )
                )
        return alerts

    # --- passes ----------------------------------------------------------

    def detect(self, db: Session, now: datetime | None = None) -> list[DetectedAlert]:
        current = ensure_utc(now) or now_utc()
        today = utc_day(current)
        window_start = today - timedelta(days=7)
        alerts: list[DetectedAlert] = []

        funnels = db.query(Funnel).filter(Funnel.status == "active").order_by(Funnel.id.asc()).all()
        for funnel in funnels:
            funnel_points = (
                db.query(FunnelDailyAggregate)
                .filter(
                    FunnelDailyAggregate.funnel_id == funnel.id,
                    FunnelDailyAggregate.day_key >= window_start,
                    FunnelDailyAggregate.day_key <= today,
                )
                .order_by(FunnelDailyAggregate.day_key.desc())
                .all()
            )
            alerts.extend(self.check_funnel_metrics(funnel, funnel_points))

            steps = (
                db.query(FunnelStep)
                .filter(FunnelStep.funnel_id == funnel.id)
                .order_by(FunnelStep.step_number.asc())
                .all()
            )
            if not steps:
                continue
            step_rows = (
                db.query(StepDailyAggregate)
                .filter(
                    StepDailyAggregate.step_id.in_([step.id for step in steps]),
                    StepDailyAggregate.day_key >= window_start,
                    StepDailyAggregate.day_key <= today,
                )
                .order_by(StepDailyAggregate.day_key.desc())
                .all()
            )
            points_by_step: dict[int, list[StepDailyAggregate]] = defaultdict(list)
            for row in step_rows:
                points_by_step[row.step_id].append(row)
            for step in steps:
                alerts.extend(self.check_step_metrics(funnel, step, points_by_step.get(step.id, [])))

        return alerts

    def _find_recent_duplicate(self, db: Session, alert: DetectedAlert, since: datetime) -> Optional[Alert]:
        query = db.query(Alert).filter(
            Alert.funnel_id == alert.funnel_id,
            Alert.alert_type == alert.alert_type,
            Alert.status == "active",
            Alert.created_at >= since,
        )
        if alert.step_number is None:
            query = query.filter(Alert.step_number.is_(None))
        else:
            query = query.filter(Alert.step_number == alert.step_number)
        return query.first()

    def _notify(self, alert: DetectedAlert) -> bool:
        if self.notifier is None or alert.severity not in NOTIFY_SEVERITIES:
            return False
        try:
            return bool(self.notifier.send_alert(alert))
        except Exception as exc:
            logger.warning("Failed to send alert notification (%s): %s", alert.message, exc)
            return False

    def save_alerts(self, db: Session, alerts: list[DetectedAlert], now: datetime | None = None) -> SaveResult:
        current = ensure_utc(now) or now_utc()
        since = current - timedelta(hours=self.thresholds.dedup_window_hours)
        result = SaveResult()

        for alert in alerts:
            if self._find_recent_duplicate(db, alert, since) is not None:
                result.suppressed += 1
                continue
            row = Alert(
                funnel_id=alert.funnel_id,
                step_number=alert.step_number,
                step_name=alert.step_name,
                severity=alert.severity,
                alert_type=alert.alert_type,
                current_value=alert.current_value,
                previous_day_value=alert.previous_day_value,
                seven_day_average=alert.seven_day_average,
                percentage_change=alert.percentage_change,
                message=alert.message,
                recommendation=alert.recommendation,
                status="active",
                created_at=current,
            )
            db.add(row)
            db.commit()
            result.saved.append(row)

            if self._notify(alert):
                result.notified += 1

        return result

    def run_alert_check(self, db: Session, now: datetime | None = None) -> dict[str, Any]:
        current = ensure_utc(now) or now_utc()
        detected = self.detect(db, current)
        saved = self.save_alerts(db, detected, current)
        logger.info(
            "Alert check: detected=%s saved=%s suppressed=%s notified=%s",
            len(detected),
            len(saved.saved),
            saved.suppressed,
            saved.notified,
        )
        return {
            "success": True,
            "detected": len(detected),
            "saved": len(saved.saved),
            "suppressed": saved.suppressed,
            "notified": saved.notified,
            "alerts": [alert.summary() for alert in detected],
            "checked_at": current.isoformat(),
        }


def update_alert_status(
    db: Session,
    alert_id: int,
    status: str,
    actor: str | None = None,
    now: datetime | None = None,
) -> Optional[Alert]:
    """Manual status change. Returns None when the alert doesn't exist."""
    if status not in ALERT_STATUSES:
        raise ValueError(f"Invalid alert status: {status!r}")
    alert = db.get(Alert, alert_id)
    if alert is None:
        return None

    current = ensure_utc(now) or now_utc()
    alert.status = status
    if status == "acknowledged":
        alert.acknowledged_by = actor
        alert.acknowledged_at = current
    elif status == "resolved":
        alert.resolved_at = current
        if alert.acknowledged_at is None:
            alert.acknowledged_by = actor
            alert.acknowledged_at = current
    db.commit()
    db.refresh(alert)
    return alert


def serialize_alert(alert: Alert) -> dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        value = ensure_utc(value)
        return value.isoformat() if value else None

    return {
        "id": alert.id,
        "funnel_id": alert.funnel_id,
        "step_number": alert.step_number,
        "step_name": alert.step_name,
        "severity": alert.severity,
        "type": alert.alert_type,
        "current_value": alert.current_value,
        "previous_day_value": alert.previous_day_value,
        "seven_day_average": alert.seven_day_average,
        "percentage_change": alert.percentage_change,
        "message": alert.message,
        "recommendation": alert.recommendation,
        "status": alert.status,
        "acknowledged_by": alert.acknowledged_by,
        "acknowledged_at": _iso(alert.acknowledged_at),
        "resolved_at": _iso(alert.resolved_at),
        "created_at": _iso(alert.created_at),
    }
