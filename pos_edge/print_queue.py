# Print Queue - durable print jobs drained by a background worker
# One due job per tick; failures back off exponentially until maxAttempts

import logging
import threading
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .clock import parse_iso, to_iso, utc_now, utc_now_iso
from .errors import GatewayError
from .local_store import LocalStore
from .printer_transport import LanPrinterTransport
from .schemas import PrintEnqueueRequest
from .tickets import build_print_data

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 1500
BACKOFF_MAX_MS = 120_000
PRUNE_KEEP_LAST = 350
PRUNE_MAX_AGE_DAYS = 10


def compute_backoff_ms(attempt: int) -> int:
    """1.5s doubling per attempt, capped at 2 minutes."""
    attempt = max(0, int(attempt or 0))
    return max(BACKOFF_BASE_MS, min(BACKOFF_MAX_MS, BACKOFF_BASE_MS * (2 ** attempt)))


def normalize_printers(config: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Well-formed printer entries from a config object (id, ip and port present)."""
    raw = (config or {}).get('printers')
    printers = []
    for p in raw if isinstance(raw, list) else []:
        if not isinstance(p, dict):
            continue
        try:
            port = int(p.get('port'))
        except (TypeError, ValueError):
            continue
        printer = {
            'id': p.get('id') if isinstance(p.get('id'), str) else '',
            'name': p.get('name') if isinstance(p.get('name'), str) else '',
            'ip': p.get('ip') if isinstance(p.get('ip'), str) else '',
            'port': port,
            'createdAt': p.get('createdAt') if isinstance(p.get('createdAt'), str) else None,
        }
        if printer['id'] and printer['ip']:
            printers.append(printer)
    return printers


def normalize_print_routes(config: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    routes = (config or {}).get('printRoutes')
    routes = routes if isinstance(routes, dict) else {}

    def pick(key):
        value = routes.get(key)
        return value.strip() or None if isinstance(value, str) else None

    return {
        'receiptPrinterId': pick('receiptPrinterId'),
        'kitchenPrinterId': pick('kitchenPrinterId'),
    }


def resolve_printer_id(config: Optional[Dict[str, Any]], job: Dict[str, Any]) -> Optional[str]:
    """Explicit printerId wins; otherwise route kitchen jobs and everything else to receipt."""
    explicit = job.get('printerId')
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()
    routes = normalize_print_routes(config)
    if (job.get('kind') or '').strip() == 'kitchen':
        return routes['kitchenPrinterId']
    return routes['receiptPrinterId']


class PrintQueue:
    """Job lifecycle on top of LocalStore: enqueue, process, cancel, retry"""

    def __init__(self, store: LocalStore, transport: LanPrinterTransport):
        self.store = store
        self.transport = transport
        self._tick_lock = threading.Lock()

    def enqueue(self, request: PrintEnqueueRequest) -> Dict[str, Any]:
        now_iso = utc_now_iso()
        job = {
            'id': str(uuid.uuid4()),
            'kind': request.kind,
            'protocol': request.protocol,
            'printerId': request.printer_id,
            'template': request.template,
            'rawBase64': request.raw_base64,
            'status': 'queued',
            'attempts': 0,
            'maxAttempts': request.max_attempts,
            'nextAttemptAt': now_iso,
            'lastError': None,
            'createdAt': now_iso,
            'updatedAt': now_iso,
        }
        self.store.enqueue_print_job(job)
        logger.info("Queued %s print job %s (%s)", job['kind'], job['id'], job['protocol'])
        return job

    def list_jobs(self, status: str = '', limit: int = 200) -> List[Dict[str, Any]]:
        jobs = self.store.read_print_queue()
        if status:
            jobs = [job for job in jobs if job.get('status') == status]
        return jobs[-limit:]

    def cancel(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.store.cancel_print_job(job_id, utc_now_iso())

    def retry(self, job_id: str) -> Optional[Dict[str, Any]]:
        now_iso = utc_now_iso()
        return self.store.update_print_job(job_id, {
            'status': 'queued',
            'nextAttemptAt': now_iso,
            'updatedAt': now_iso,
        })

    def recover_interrupted(self) -> int:
        """Requeue jobs left in 'printing' by a crash mid-send."""
        recovered = 0
        for job in self.store.read_print_queue():
            if job.get('status') == 'printing' and job.get('id'):
                self.retry(job['id'])
                recovered += 1
        if recovered:
            logger.warning("Requeued %d print job(s) interrupted mid-send", recovered)
        return recovered

    def _next_due(self, jobs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        now = utc_now()
        for job in jobs:
            if job.get('status') != 'queued':
                continue
            due = parse_iso(job.get('nextAttemptAt') or job.get('createdAt'))
            if due is None or due <= now:
                return job
        return None

    def _record_failure(self, job: Dict[str, Any], message: str):
        attempts = max(0, int(job.get('attempts') or 0)) + 1
        max_attempts = max(1, int(job.get('maxAttempts') or 10))
        terminal = attempts >= max_attempts
        next_attempt = None if terminal else to_iso(utc_now() + timedelta(milliseconds=compute_backoff_ms(attempts - 1)))
        self.store.update_print_job(job['id'], {
            'status': 'failed' if terminal else 'queued',
            'attempts': attempts,
            'maxAttempts': max_attempts,
            'lastError': message,
            'nextAttemptAt': next_attempt,
            'updatedAt': utc_now_iso(),
        })
        if terminal:
            logger.error("Print job %s failed permanently after %d attempts: %s", job['id'], attempts, message)
        else:
            logger.warning("Print job %s attempt %d failed: %s", job['id'], attempts, message)

    def process_tick(self) -> Dict[str, Any]:
        """Process at most one due job."""
        if not self._tick_lock.acquire(blocking=False):
            return {'ok': True, 'skipped': True}
        try:
            return self._process_one()
        finally:
            self._tick_lock.release()

    def _process_one(self) -> Dict[str, Any]:
        config = self.store.read_config() or {}
        with self.store.lock:
            job = self._next_due(self.store.read_print_queue())
            if job is None:
                self.store.prune_print_queue(PRUNE_KEEP_LAST, PRUNE_MAX_AGE_DAYS)
                return {'ok': True, 'processed': 0}
            if not job.get('id'):
                self.store.write_print_queue([j for j in self.store.read_print_queue() if j.get('id')])
                return {'ok': True, 'processed': 0}
            self.store.update_print_job(job['id'], {'status': 'printing', 'updatedAt': utc_now_iso()})

        printer_id = resolve_printer_id(config, job)
        printer = next((p for p in normalize_printers(config) if p['id'] == printer_id), None)
        if printer is None:
            self._record_failure(job, 'Printer not found (check routes or printerId)')
            return {'ok': True, 'processed': 1, 'failed': 1}

        try:
            data = build_print_data(job.get('protocol') or 'escpos', job.get('template'), job.get('rawBase64'))
            self.transport.send(printer['ip'], printer['port'], data)
        except GatewayError as e:
            self._record_failure(job, e.message)
            self.store.prune_print_queue(PRUNE_KEEP_LAST, PRUNE_MAX_AGE_DAYS)
            return {'ok': True, 'processed': 1, 'failed': 1}

        self.store.update_print_job(job['id'], {
            'status': 'succeeded',
            'lastError': None,
            'nextAttemptAt': None,
            'updatedAt': utc_now_iso(),
        })
        logger.info("Print job %s printed on %s:%s", job['id'], printer['ip'], printer['port'])
        self.store.prune_print_queue(PRUNE_KEEP_LAST, PRUNE_MAX_AGE_DAYS)
        return {'ok': True, 'processed': 1, 'succeeded': 1}


class PrintQueueWorker:
    """Background thread ticking the print queue"""

    def __init__(self, queue: PrintQueue, tick_ms: int = 1500):
        self.queue = queue
        self.tick_seconds = tick_ms / 1000.0
        self._stop = threading.Event()
        self.thread = None

    def start(self):
        self._stop.clear()
        self.queue.recover_interrupted()
        self.thread = threading.Thread(target=self._run, name='print-queue', daemon=True)
        self.thread.start()
        logger.info("Print worker started (tick %.1fs)", self.tick_seconds)

    def stop(self):
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=2)
        logger.info("Print worker stopped")

    def _run(self):
        while not self._stop.wait(self.tick_seconds):
            try:
                self.queue.process_tick()
            except Exception:
                logger.exception("Print worker tick failed")
