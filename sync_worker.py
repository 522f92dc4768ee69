#!/usr/bin/env python3
"""
POS Sync Worker

Pushes committed sales and supplier purchases that are not yet mirrored
remotely (committed, sync_failed, or stuck in sync_pending after a crash) to
the remote API, one at a time, oldest first.

Env vars (see config.py):
  POS_DB_PATH          SQLite DB path (default: pos.db)
  POS_API_BASE         remote API base URL
  POS_RESYNC_INTERVAL  seconds between sweeps (default: 30)
  POS_SYNC_MAX_ATTEMPTS, POS_SYNC_BACKOFF, POS_SYNC_BASE_DELAY

Run:
  python sync_worker.py [--once]
"""
import argparse
import logging
import threading
from typing import Dict, Optional, Set

from pos_store import TransactionRecorder, TransactionStatus
from sync_client import SyncClient, SyncOutcome, SyncResult, request_for

log = logging.getLogger("pos.sync")


class InFlightGuard:
    """Tracks sale ids with a sync in progress so one sale is never pushed twice at once."""

    def __init__(self):
        self._ids: Set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, local_id: str) -> bool:
        with self._lock:
            if local_id in self._ids:
                return False
            self._ids.add(local_id)
            return True

    def release(self, local_id: str):
        with self._lock:
            self._ids.discard(local_id)

    def busy(self, local_id: str) -> bool:
        with self._lock:
            return local_id in self._ids


def sync_transaction(
    recorder: TransactionRecorder,
    client: SyncClient,
    guard: InFlightGuard,
    local_id: str,
    cancel: Optional[threading.Event] = None,
) -> Optional[SyncResult]:
    """Push one committed sale. None when skipped (in flight elsewhere, or already synced).

    Whatever goes wrong after the sale is flagged sync_pending, it ends up
    sync_failed with the attempt counted, so the sweep can retry it later.
    """
    if not guard.acquire(local_id):
        log.info("Sale %s already syncing; skipped", local_id)
        return None
    try:
        txn = recorder.require(local_id)
        if txn.status in (TransactionStatus.SYNCED, TransactionStatus.DRAFT):
            return None
        recorder.mark_sync_pending(local_id)
        try:
            result = client.push_sale(request_for(txn), cancel=cancel)
        except Exception as exc:
            log.exception("Sync of %s raised; recorded as failed", local_id)
            recorder.mark_sync_failed(local_id, f"sync error: {exc}", attempts=1)
            return SyncResult(SyncOutcome.TERMINAL_FAILURE, 1, error=f"sync error: {exc}")
        if result.ok:
            recorder.mark_synced(local_id, result.remote_id, result.invoice_url, attempts=result.attempts,
                                 payment_ids=result.response.payment_ids)
        else:
            if result.reauth_required:
                invalidate = getattr(client.token_provider, "invalidate", None)
                if invalidate:
                    invalidate()
            reason = result.error or result.outcome.value
            if result.cancelled:
                reason = f"cancelled: {reason}"
            recorder.mark_sync_failed(local_id, reason, attempts=result.attempts)
        return result
    finally:
        guard.release(local_id)


def resync_pending(
    recorder: TransactionRecorder,
    client: SyncClient,
    guard: InFlightGuard,
    limit: int = 20,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, int]:
    """Sweep unsynced sales sequentially. Returns counts per outcome."""
    summary = {"synced": 0, "failed": 0, "skipped": 0}
    candidates = recorder.list_by_status(
        TransactionStatus.COMMITTED,
        TransactionStatus.SYNC_FAILED,
        TransactionStatus.SYNC_PENDING,
        limit=limit,
    )
    for txn in candidates:
        if cancel is not None and cancel.is_set():
            break
        try:
            result = sync_transaction(recorder, client, guard, txn.local_id, cancel=cancel)
        except Exception:
            log.exception("Resync of %s failed; moving on", txn.local_id)
            summary["failed"] += 1
            continue
        if result is None:
            summary["skipped"] += 1
        elif result.outcome == SyncOutcome.SUCCESS:
            summary["synced"] += 1
        else:
            summary["failed"] += 1
    if candidates:
        log.info("Resync sweep: synced=%d failed=%d skipped=%d",
                 summary["synced"], summary["failed"], summary["skipped"])
    return summary


class ResyncWorker:
    """Background thread running `resync_pending` every `interval` seconds until stopped."""

    def __init__(self, recorder: TransactionRecorder, client: SyncClient, guard: InFlightGuard,
                 interval: float = 30.0, limit: int = 20):
        self.recorder = recorder
        self.client = client
        self.guard = guard
        self.interval = interval
        self.limit = limit
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="pos-resync", daemon=True)
        self._thread.start()
        log.info("Resync worker started (interval=%ss)", self.interval)

    def stop(self, timeout: Optional[float] = None):
        """Stop the loop; a retry sequence in progress is cancelled and recorded as failed."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)

    def run_once(self) -> Dict[str, int]:
        return resync_pending(self.recorder, self.client, self.guard, limit=self.limit, cancel=self._stop)

    def run_forever(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                log.exception("Resync sweep failed")
            self._stop.wait(self.interval)


def main(argv=None):
    import config
    from pos_service import build_sync_client
    from pos_store import SCHEMA_PATH, connect

    ap = argparse.ArgumentParser(description="Push unsynced POS sales to the remote API")
    ap.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    ap.add_argument("--limit", type=int, default=20, help="Max sales per sweep")
    args = ap.parse_args(argv)

    settings = config.Settings.from_env()
    config.configure_logging(settings.log_level, prefix="sync")
    client = build_sync_client(settings)
    if client is None:
        log.error("POS_API_BASE is not set; nothing to sync against")
        return 2
    conn = connect(settings.db_path, settings.schema_path or SCHEMA_PATH)
    recorder = TransactionRecorder(conn, till_id=settings.till_id)
    worker = ResyncWorker(recorder, client, InFlightGuard(),
                          interval=settings.resync_interval, limit=args.limit)
    log.info("Starting sync worker, interval=%ss, db=%s", settings.resync_interval, settings.db_path)
    try:
        if args.once:
            worker.run_once()
        else:
            worker.run_forever()
    except KeyboardInterrupt:
        log.info("Exiting on Ctrl+C")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
