#!/usr/bin/env python3
"""
Run a single data sync pass from the command line.

Usage:
  cd backend
  ./venv/bin/python scripts/run_sync_once.py --json
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
from funnelwatch.services.data_sync import run_data_sync
from funnelwatch.services.event_fetcher import EventSourceError, SyncConfigurationError
from funnelwatch.services.sync_lock import SyncInProgressError


def main() -> int:
    parser = argparse.ArgumentParser(description="Fetch entries from the event source and rebuild daily aggregates.")
    parser.add_argument("--json", action="store_true", help="Print the full result payload as JSON.")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper()))

    db = SessionLocal()
    try:
        result = run_data_sync(db)
    except SyncConfigurationError as exc:
        print(json.dumps({"success": False, "error": str(exc), "diagnostics": exc.diagnostics}))
        return 2
    except SyncInProgressError as exc:
        print(json.dumps({"success": False, "error": str(exc)}))
        return 3
    except EventSourceError as exc:
        print(json.dumps({"success": False, "error": str(exc), "status_code": exc.status_code}))
        return 1
    finally:
        db.close()

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(
            f"{result['status']}: {result['entries_processed']} entries, "
            f"{result['days_processed']} days, partial={result['partial']}, "
            f"{result.get('duration_ms', 0)} ms"
        )
        if result.get("message"):
            print(result["message"])
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
