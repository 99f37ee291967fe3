#!/usr/bin/env python3
"""
Run a single anomaly detection pass from the command line.

Usage:
  cd backend
  ./venv/bin/python scripts/check_alerts_once.py --no-notify
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from funnelwatch.core.config import settings
from funnelwatch.core.database import SessionLocal
from funnelwatch.services.anomaly_detector import AlertThresholds, AnomalyDetector
from funnelwatch.services.notifications import SlackNotifier


def main() -> int:
    parser = argparse.ArgumentParser(description="Detect funnel anomalies and store new alerts.")
    parser.add_argument("--json", action="store_true", help="Print the full result payload as JSON.")
    parser.add_argument("--no-notify", action="store_true", help="Store alerts without pushing them to Slack.")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper()))

    notifier = None if args.no_notify else SlackNotifier.from_settings()
    detector = AnomalyDetector(AlertThresholds.from_settings(), notifier)
    db = SessionLocal()
    try:
        result = detector.run_alert_check(db)
    finally:
        db.close()

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"detected={result['detected']} saved={result['saved']} notified={result['notified']}")
        for alert in result["alerts"]:
            print(f"  [{alert['severity']}] {alert['message']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
