# Sync Reconciler - replays offline tickets to the cloud once connectivity returns
# Oldest first, one at a time; local_id is the idempotency key so reruns never duplicate

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import is_likely_offline_error
from .offline_cache import OfflineOrderCache
from .order_api import CloudOrderApi
from .orders import OfflineOrder

logger = logging.getLogger(__name__)

SYNCABLE_STATUSES = ('open', 'paid')


@dataclass
class SyncReport:
    synced: int = 0
    skipped_created: int = 0
    paid: int = 0
    error: Optional[str] = None
    offline: bool = False
    already_running: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.already_running


class OfflineOrderReconciler:
    """Pushes queued offline tickets to the cloud order API"""

    def __init__(self, cache: OfflineOrderCache, api: CloudOrderApi):
        self.cache = cache
        self.api = api
        self._running = threading.Lock()

    def pending(self):
        return [o for o in self.cache.list_offline_orders(oldest_first=True) if o.status in SYNCABLE_STATUSES]

    def sync(self) -> SyncReport:
        """Run one reconciliation pass; stops at the first failing ticket."""
        if not self._running.acquire(blocking=False):
            logger.info("Offline sync already in progress")
            return SyncReport(already_running=True)
        try:
            return self._sync_all()
        finally:
            self._running.release()

    def _sync_all(self) -> SyncReport:
        report = SyncReport()
        queued = self.pending()
        if not queued:
            return report

        logger.info("Syncing %d offline ticket(s)", len(queued))
        for order in queued:
            try:
                self._sync_one(order, report)
            except Exception as e:
                report.error = str(e) or 'Failed to sync offline tickets'
                report.offline = is_likely_offline_error(e)
                logger.warning("Offline sync stopped at %s after %d synced: %s",
                               order.local_id, report.synced, report.error)
                return report

        logger.info("Offline tickets synced: %d (%d paid)", report.synced, report.paid)
        return report

    def _resolve_cloud_order_id(self, order: OfflineOrder, report: SyncReport) -> str:
        order_id = self.cache.get_synced_cloud_order_id(order.local_id)
        if order_id:
            report.skipped_created += 1
            return order_id

        existing = self.api.find_order_by_offline_local_id(order.restaurant_id, order.local_id)
        if existing and existing.get('id'):
            order_id = str(existing['id'])
            report.skipped_created += 1
            logger.info("Ticket %s already in cloud as %s", order.local_id, order_id)
        else:
            order.payload.offline_local_id = order.local_id
            order_id = self.api.create_order(order.payload)['id']
            logger.info("Ticket %s created in cloud as %s", order.local_id, order_id)

        self.cache.mark_offline_order_synced(order.local_id, order_id)
        return order_id

    def _sync_one(self, order: OfflineOrder, report: SyncReport):
        order_id = self._resolve_cloud_order_id(order, report)

        if order.status == 'paid' and order.payment is not None:
            self.api.mark_paid(order_id, order.payment)
            self.cache.apply_inventory_for_order(order.local_id, order.payload.inventory_deltas())
            report.paid += 1

        self.cache.remove_offline_order(order.local_id)
        report.synced += 1


class ConnectivityMonitor:
    """Polls cloud health and runs the reconciler when the link comes back"""

    def __init__(self, api: CloudOrderApi, reconciler: OfflineOrderReconciler,
                 interval: float = 15.0, on_report: Callable[[SyncReport], None] = None):
        self.api = api
        self.reconciler = reconciler
        self.interval = interval
        self.on_report = on_report
        self.online = None
        self._stop = threading.Event()
        self.thread = None

    def check(self) -> Optional[SyncReport]:
        """One poll; returns a report when a sync ran."""
        was_online = self.online
        self.online = self.api.health()
        if self.online and was_online is not True:
            logger.info("Cloud reachable, syncing offline tickets")
            report = self.reconciler.sync()
            if report.offline:
                self.online = False
            if self.on_report:
                self.on_report(report)
            return report
        if not self.online and was_online:
            logger.warning("Cloud unreachable, new tickets will be queued offline")
        return None

    def start(self):
        self._stop.clear()
        self.thread = threading.Thread(target=self._run, name='connectivity-monitor', daemon=True)
        self.thread.start()

    def stop(self):
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=2)

    def _run(self):
        while True:
            try:
                self.check()
            except Exception:
                logger.exception("Connectivity check failed")
            if self._stop.wait(self.interval):
                break
