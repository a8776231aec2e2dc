"""Exclusive, TTL-bounded claims on a task name.

A claim is one file created with create-if-absent. It is live while it
is younger than its TTL and, when the owner is on this host, the owner
pid is still running. Owners on another host are judged by TTL alone.
Release and stale reclaim read, compare and rewrite the claim under a
short-lived per-task lock file, so a claim file never goes missing while
someone else still holds it.
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypedDict, cast

from stagerun.config import DEFAULT_CLAIM_TTL_SECONDS
from stagerun.errors import ClaimBusyError, RecordExistsError
from stagerun.state import current_host, parse_timestamp, utcnow
from stagerun.store import RECORD_VERSION, Store

log = logging.getLogger(__name__)

# Record locks are held for one read and one write; older ones are leftovers.
_LOCK_STALE_SECONDS = 30.0
LOCK_ATTEMPTS = 50
_LOCK_RETRY_DELAY = 0.02


class ClaimRecord(TypedDict):
    version: int
    task_name: str
    claim_id: str
    pid: int
    host: str
    acquired_at: str
    ttl_seconds: int


@dataclass
class ClaimHandle:
    task_name: str
    claim_id: str
    pid: int
    host: str
    acquired_at: str
    ttl_seconds: int
    # Set when acquisition replaced a stale claim.
    reclaimed_from: ClaimRecord | None = None

    @property
    def owner(self) -> str:
        return f"{self.pid}@{self.host}"


def pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def claim_owner(claim: ClaimRecord) -> str:
    return f"{claim['pid']}@{claim['host']}"


def claim_age_seconds(claim: ClaimRecord, *, now: datetime | None = None) -> float:
    now = now or datetime.now(UTC)
    return (now - parse_timestamp(claim["acquired_at"])).total_seconds()


def is_live(claim: ClaimRecord, *, now: datetime | None = None) -> bool:
    if claim_age_seconds(claim, now=now) > claim["ttl_seconds"]:
        return False
    if claim["host"] != current_host():
        return True
    return pid_is_alive(claim["pid"])


def read_claim(store: Store, task_name: str) -> ClaimRecord | None:
    return cast("ClaimRecord | None", store.read("claim", task_name))


def has_live_claim(store: Store, task_name: str) -> bool:
    claim = read_claim(store, task_name)
    return claim is not None and is_live(claim)


def _new_claim(task_name: str, ttl_seconds: int) -> ClaimRecord:
    return ClaimRecord(
        version=RECORD_VERSION,
        task_name=task_name,
        claim_id=uuid.uuid4().hex,
        pid=os.getpid(),
        host=current_host(),
        acquired_at=utcnow(),
        ttl_seconds=ttl_seconds,
    )


def _handle(claim: ClaimRecord, reclaimed_from: ClaimRecord | None = None) -> ClaimHandle:
    return ClaimHandle(
        task_name=claim["task_name"],
        claim_id=claim["claim_id"],
        pid=claim["pid"],
        host=claim["host"],
        acquired_at=claim["acquired_at"],
        ttl_seconds=claim["ttl_seconds"],
        reclaimed_from=reclaimed_from,
    )


@contextlib.contextmanager
def record_lock(store: Store, kind: str, key: str, *, attempts: int = 1) -> Iterator[None]:
    """Hold the short-lived lock on one record or raise ``ClaimBusyError``.

    The lock only covers a read and a single write, so a handful of short
    retries is enough for callers that must not give up.
    """
    if not store.try_lock(
        kind,
        key,
        stale_after=_LOCK_STALE_SECONDS,
        attempts=attempts,
        retry_delay=_LOCK_RETRY_DELAY,
    ):
        raise ClaimBusyError(key)
    try:
        yield
    finally:
        store.unlock(kind, key)


def _reclaim(store: Store, task_name: str, ttl_seconds: int) -> ClaimHandle:
    with record_lock(store, "claim", task_name):
        existing = read_claim(store, task_name)
        claim = _new_claim(task_name, ttl_seconds)
        if existing is None:
            try:
                store.create_new("claim", task_name, dict(claim))
            except RecordExistsError:
                raise ClaimBusyError(task_name) from None
            log.info("Claimed %s (%s)", task_name, claim["claim_id"])
            return _handle(claim)
        if is_live(existing):
            raise ClaimBusyError(task_name, owner=claim_owner(existing))
        store.write("claim", task_name, dict(claim))
    log.info(
        "Reclaimed stale claim on %s from %s (acquired %s)",
        task_name,
        claim_owner(existing),
        existing["acquired_at"],
    )
    return _handle(claim, reclaimed_from=existing)


def acquire(
    store: Store,
    task_name: str,
    *,
    ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
) -> ClaimHandle:
    """Claim *task_name* or raise ``ClaimBusyError``.

    A stale claim is reclaimed; the returned handle then records the
    previous owner in ``reclaimed_from``. Never waits for a live owner.
    """
    claim = _new_claim(task_name, ttl_seconds)
    try:
        store.create_new("claim", task_name, dict(claim))
    except RecordExistsError:
        pass
    else:
        log.info("Claimed %s (%s)", task_name, claim["claim_id"])
        return _handle(claim)

    existing = read_claim(store, task_name)
    if existing is not None and is_live(existing):
        raise ClaimBusyError(task_name, owner=claim_owner(existing))
    return _reclaim(store, task_name, ttl_seconds)


def release(store: Store, handle: ClaimHandle) -> bool:
    """Delete the claim if it still belongs to *handle*."""
    with record_lock(store, "claim", handle.task_name, attempts=LOCK_ATTEMPTS):
        current = read_claim(store, handle.task_name)
        released = current is not None and current["claim_id"] == handle.claim_id
        if released:
            store.remove("claim", handle.task_name)
    if released:
        log.info("Released claim on %s", handle.task_name)
    else:
        log.warning("Claim on %s no longer ours; left in place", handle.task_name)
    return released


def remove_stale_claim(store: Store, task_name: str) -> bool:
    """Delete the claim on *task_name* if it is stale; live claims are left alone."""
    with record_lock(store, "claim", task_name, attempts=LOCK_ATTEMPTS):
        existing = read_claim(store, task_name)
        if existing is None or is_live(existing):
            return False
        store.remove("claim", task_name)
    log.info("Removed stale claim on %s held by %s", task_name, claim_owner(existing))
    return True


@contextlib.contextmanager
def claimed(
    store: Store,
    task_name: str,
    *,
    ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
) -> Iterator[ClaimHandle]:
    handle = acquire(store, task_name, ttl_seconds=ttl_seconds)
    try:
        yield handle
    finally:
        release(store, handle)
