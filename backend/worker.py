#!/usr/bin/env python3
"""
Worker Entry Point - runs the data sync and alert check on an interval.
This is a separate process from the API server; use it when no external
scheduler calls the /api/cron endpoints.
"""
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent))

from funnelwatch.core.config import settings
from funnelwatch.core.database import SessionLocal
from funnelwatch.services.anomaly_detector import AlertThresholds, AnomalyDetector
from funnelwatch.services.data_sync import run_data_sync
from funnelwatch.services.event_fetcher import EventSourceError, SyncConfigurationError
from funnelwatch.services.notifications import SlackNotifier
from funnelwatch.services.sync_lock import SyncInProgressError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)
ERROR_RETRY_SECONDS = max(5, int(os.environ.get("WORKER_ERROR_RETRY_SECONDS", "60")))


async def _healthcheck_handler(
    reader: asyncio.StreamReader, writer: asyncio.StreamWriter
) -> None:
    """Serve a minimal HTTP health response for platform health checks."""
    try:
        request_line = await reader.readline()
        if not request_line:
            return

        parts = request_line.decode("utf-8", errors="ignore").strip().split()
        method = parts[0] if len(parts) >= 1 else "GET"
        path = parts[1] if len(parts) >= 2 else "/"

        # Drain request headers.
        while True:
            line = await reader.readline()
            if not line or line in (b"\r\n", b"\n"):
                break

        if method == "GET" and path == "/health":
            body = json.dumps(
                {
                    "status": "ok",
                    "service": "funnelwatch-worker",
                    "environment": settings.ENVIRONMENT,
                }
            ).encode("utf-8")
            status = "200 OK"
        else:
            body = b'{"status":"not_found"}'
            status = "404 Not Found"

        response = (
            f"HTTP/1.1 {status}\r\n"
            "Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n"
            "\r\n"
        ).encode("utf-8") + body

        writer.write(response)
        await writer.drain()
    except (ConnectionError, asyncio.IncompleteReadError) as e:
        logger.debug("Health probe dropped: %s", e)
    finally:
        writer.close()


async def _start_health_server() -> asyncio.AbstractServer | None:
    """Start lightweight worker health server bound to PORT."""
    port_raw = str(os.environ.get("PORT", "8080") or "8080").strip()
    try:
        port = int(port_raw)
    except ValueError:
        logger.warning(
            "Invalid PORT=%s for worker health server; skipping health endpoint",
            port_raw,
        )
        return None

    server = await asyncio.start_server(_healthcheck_handler, host="0.0.0.0", port=port)
    logger.info("Worker health server listening on 0.0.0.0:%s", port)
    return server


def run_sync_job() -> dict[str, Any] | None:
    db = SessionLocal()
    try:
        return run_data_sync(db)
    except SyncConfigurationError as e:
        logger.error("Sync skipped, not configured: %s (%s)", e, e.diagnostics)
    except SyncInProgressError as e:
        logger.info("Sync skipped: %s", e)
    except EventSourceError as e:
        logger.error("Sync aborted: %s", e)
    finally:
        db.close()
    return None


def run_alert_job() -> dict[str, Any]:
    db = SessionLocal()
    try:
        detector = AnomalyDetector(AlertThresholds.from_settings(), SlackNotifier.from_settings())
        return detector.run_alert_check(db)
    finally:
        db.close()


async def run_cycle() -> None:
    sync_result = await asyncio.to_thread(run_sync_job)
    if sync_result is not None:
        logger.info(
            "Sync %s: entries=%s days=%s partial=%s duration_ms=%s",
            sync_result.get("status"),
            sync_result.get("entries_processed"),
            sync_result.get("days_processed"),
            sync_result.get("partial"),
            sync_result.get("duration_ms"),
        )
    alert_result = await asyncio.to_thread(run_alert_job)
    logger.info(
        "Alert check: detected=%s saved=%s notified=%s",
        alert_result.get("detected"),
        alert_result.get("saved"),
        alert_result.get("notified"),
    )


async def main():
    """Main worker entry point."""
    interval_seconds = max(60, int(settings.SYNC_INTERVAL_MINUTES) * 60)
    logger.info("=" * 60)
    logger.info("FUNNELWATCH WORKER - Starting")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Sync interval: {settings.SYNC_INTERVAL_MINUTES} minutes")

    health_server = await _start_health_server()
    try:
        while True:
            try:
                await run_cycle()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            except SQLAlchemyError as e:
                logger.error(f"Database error in worker cycle: {e}")
                await asyncio.sleep(ERROR_RETRY_SECONDS)
    finally:
        if health_server is not None:
            health_server.close()
            await health_server.wait_closed()
        logger.info("Worker stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
