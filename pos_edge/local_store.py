# Local Store - on-disk state private to the gateway process
# config.json (pairing + printers + routes), outbox.jsonl (pending cloud events)
# and print_queue.json (durable print jobs), all under one data directory

import json
import logging
import os
import tempfile
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .clock import parse_iso, utc_now

logger = logging.getLogger(__name__)

FINISHED_JOB_STATUSES = ('succeeded', 'failed', 'canceled')


def _atomic_write_text(path: Path, text: str):
    """Write to a temp file beside path, then rename it over path."""
    fd, tmp_path = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class LocalStore:
    """JSON config, JSON-Lines outbox and print queue with serialized mutations"""

    def __init__(self, data_dir):
        self.data_dir = Path(data_dir)
        self.config_path = self.data_dir / 'config.json'
        self.outbox_path = self.data_dir / 'outbox.jsonl'
        self.print_queue_path = self.data_dir / 'print_queue.json'
        # Re-entrant so update_config can call read/write under the same hold
        self.lock = threading.RLock()

    def _ensure_data_dir(self):
        self.data_dir.mkdir(parents=True, exist_ok=True)

    # -- config -----------------------------------------------------------

    def read_config(self) -> Optional[Dict[str, Any]]:
        """Return the stored config object; None when missing or malformed."""
        with self.lock:
            try:
                self._ensure_data_dir()
                if not self.config_path.exists():
                    return None
                parsed = json.loads(self.config_path.read_text(encoding='utf-8'))
            except (OSError, ValueError) as e:
                logger.warning("Unreadable config %s: %s", self.config_path, e)
                return None
            if not isinstance(parsed, dict):
                return None
            return parsed

    def write_config(self, config: Dict[str, Any]):
        """Replace the whole config object atomically."""
        with self.lock:
            self._ensure_data_dir()
            _atomic_write_text(self.config_path, json.dumps(config, indent=2))

    def update_config(self, mutate: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any]:
        """Read-modify-write the config as one step with respect to other callers."""
        with self.lock:
            current = self.read_config() or {}
            updated = mutate(dict(current))
            self.write_config(updated)
            return updated

    # -- outbox -----------------------------------------------------------

    def _read_outbox_lines(self) -> List[str]:
        if not self.outbox_path.exists():
            return []
        raw = self.outbox_path.read_text(encoding='utf-8')
        return [line for line in raw.split('\n') if line.strip()]

    @staticmethod
    def _parse_event(line: str) -> Optional[Dict[str, Any]]:
        try:
            parsed = json.loads(line)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def append_outbox_event(self, event: Dict[str, Any]):
        """Append one event as a single JSON line."""
        line = json.dumps(event, separators=(',', ':')) + '\n'
        with self.lock:
            self._ensure_data_dir()
            with open(self.outbox_path, 'a', encoding='utf-8') as f:
                f.write(line)

    def read_outbox_events(self, limit: int = 500) -> List[Dict[str, Any]]:
        """Up to limit events from the front of the outbox; corrupt lines are skipped."""
        with self.lock:
            try:
                lines = self._read_outbox_lines()
            except OSError as e:
                logger.warning("Unreadable outbox %s: %s", self.outbox_path, e)
                return []
        events = []
        for line in lines:
            if len(events) >= max(0, limit):
                break
            event = self._parse_event(line)
            if event is None:
                logger.debug("Skipping corrupt outbox line: %.80s", line)
                continue
            events.append(event)
        return events

    def drop_outbox_events(self, count: int) -> int:
        """Remove the first count events (and any corrupt lines before them)."""
        if count <= 0:
            return 0
        with self.lock:
            lines = self._read_outbox_lines()
            dropped = 0
            cut = 0
            for cut, line in enumerate(lines, start=1):
                if self._parse_event(line) is not None:
                    dropped += 1
                if dropped >= count:
                    break
            else:
                cut = len(lines)
            remaining = lines[cut:]
            self._ensure_data_dir()
            _atomic_write_text(self.outbox_path, ''.join(f'{line}\n' for line in remaining))
            return dropped

    def count_outbox_events(self) -> int:
        with self.lock:
            try:
                return len(self._read_outbox_lines())
            except OSError:
                return 0

    # -- print queue ------------------------------------------------------

    def read_print_queue(self) -> List[Dict[str, Any]]:
        with self.lock:
            try:
                if not self.print_queue_path.exists():
                    return []
                parsed = json.loads(self.print_queue_path.read_text(encoding='utf-8'))
            except (OSError, ValueError) as e:
                logger.warning("Unreadable print queue %s: %s", self.print_queue_path, e)
                return []
            if not isinstance(parsed, list):
                return []
            return [job for job in parsed if isinstance(job, dict)]

    def write_print_queue(self, jobs: List[Dict[str, Any]]):
        with self.lock:
            self._ensure_data_dir()
            _atomic_write_text(self.print_queue_path, json.dumps(jobs, indent=2))

    def enqueue_print_job(self, job: Dict[str, Any]):
        with self.lock:
            jobs = self.read_print_queue()
            jobs.append(job)
            self.write_print_queue(jobs)

    def update_print_job(self, job_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self.lock:
            jobs = self.read_print_queue()
            for i, job in enumerate(jobs):
                if job.get('id') == job_id:
                    jobs[i] = {**job, **patch}
                    self.write_print_queue(jobs)
                    return jobs[i]
            return None

    def cancel_print_job(self, job_id: str, now_iso: str) -> Optional[Dict[str, Any]]:
        """Cancel a job that has not printed yet; finished jobs are returned unchanged."""
        with self.lock:
            for job in self.read_print_queue():
                if job.get('id') != job_id:
                    continue
                if job.get('status') == 'succeeded':
                    return job
                return self.update_print_job(job_id, {
                    'status': 'canceled',
                    'nextAttemptAt': None,
                    'updatedAt': now_iso,
                })
            return None

    def prune_print_queue(self, keep_last: int = 350, max_age_days: int = 10) -> int:
        """Drop finished jobs older than max_age_days, then cap the queue at keep_last."""
        with self.lock:
            jobs = self.read_print_queue()
            cutoff = utc_now() - timedelta(days=max_age_days)
            kept = []
            for job in jobs:
                if job.get('status') in FINISHED_JOB_STATUSES:
                    stamp = parse_iso(job.get('updatedAt') or job.get('createdAt'))
                    if stamp is not None and stamp < cutoff:
                        continue
                kept.append(job)
            if len(kept) > keep_last:
                kept = kept[-keep_last:]
            removed = len(jobs) - len(kept)
            if removed:
                self.write_print_queue(kept)
            return removed
