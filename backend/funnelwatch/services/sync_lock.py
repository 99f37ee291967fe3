"""Per-funnel run lock for the data sync, held as a lease row with an expiry."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from funnelwatch.core.time import ensure_utc, now_utc
from funnelwatch.models.models import SyncLease

logger = logging.getLogger(__name__)


class SyncInProgressError(RuntimeError):
    def __init__(self, name: str, expires_at: datetime | None):
        self.name = name
        self.expires_at = expires_at
        until = expires_at.isoformat() if expires_at else "unknown"
        super().__init__(f"Sync already running for {name} (lease expires {until})")


def sync_lease_name(project_id: str) -> str:
    return f"data_sync:{project_id}"


def acquire_sync_lease(
    db: Session,
    *,
    name: str,
    ttl_seconds: int,
    now: datetime | None = None,
) -> str:
    """Take the lease or raise SyncInProgressError. Expired leases are taken over."""
    current = ensure_utc(now) or now_utc()
    owner = uuid.uuid4().hex
    expires_at = current + timedelta(seconds=max(1, int(ttl_seconds)))

    lease = db.get(SyncLease, name)
    if lease is not None:
        lease_expiry = ensure_utc(lease.expires_at)
        if lease_expiry is not None and lease_expiry > current:
            raise SyncInProgressError(name, lease_expiry)
        previous_owner = lease.owner
        # Only one invocation may win the takeover: match the owner we saw and the expiry.
        taken = (
            db.query(SyncLease)
            .filter(
                SyncLease.name == name,
                SyncLease.owner == previous_owner,
                SyncLease.expires_at <= current,
            )
            .update(
                {"owner": owner, "acquired_at": current, "expires_at": expires_at},
                synchronize_session=False,
            )
        )
        if not taken:
            db.rollback()
            raise SyncInProgressError(name, None)
        logger.warning("Took over expired sync lease %s (previous owner=%s)", name, previous_owner)
    else:
        db.add(SyncLease(name=name, owner=owner, acquired_at=current, expires_at=expires_at))

    try:
        db.commit()
    except IntegrityError as exc:
        # Another invocation inserted the lease between our read and write.
        db.rollback()
        raise SyncInProgressError(name, None) from exc
    return owner


def release_sync_lease(db: Session, *, name: str, owner: str) -> bool:
    deleted = (
        db.query(SyncLease)
        .filter(SyncLease.name == name, SyncLease.owner == owner)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)
