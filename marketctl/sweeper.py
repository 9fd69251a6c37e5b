"""Lifecycle sweeper expiring open jobs past their deadline."""

import logging
import signal
import time
from datetime import datetime
from typing import Callable, List, Optional

from .errors import TransientError
from .events import JobStatusChanged, SideEffects, job_channel
from .models import JobStatus, utcnow
from .retry import retry_on_conflict
from .state_machine import SWEEPER_ACTOR, is_terminal
from .storage import Storage

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Deadline passed without an accepted bid"


class Sweeper:
    """Expires stale open jobs, once or on an interval."""

    def __init__(self, storage: Storage, side_effects: Optional[SideEffects] = None,
                 clock: Callable[[], datetime] = utcnow, sweeper_id: int = 1):
        self.storage = storage
        self.side_effects = side_effects or SideEffects()
        self.clock = clock
        self.sweeper_id = sweeper_id
        self.running = True

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        self.running = False

    def run(self, interval: Optional[float] = None) -> None:
        """Run the sweep loop until signalled."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        if interval is None:
            interval = self.storage.get_config().sweep_interval
        logger.info("[Sweeper %s] Started (every %.0fs)", self.sweeper_id, interval)
        while self.running:
            try:
                self.sweep_once()
            except Exception:
                logger.exception("[Sweeper %s] Sweep failed", self.sweeper_id)
            slept = 0.0
            while self.running and slept < interval:
                time.sleep(min(1.0, interval - slept))
                slept += 1.0
        logger.info("[Sweeper %s] Stopped", self.sweeper_id)

    def sweep_once(self, now: Optional[datetime] = None) -> List[str]:
        """Expire every open job whose deadline is before ``now``."""
        now = now or self.clock()
        expired = []
        for job in self.storage.get_jobs_by_status(JobStatus.OPEN):
            if job.deadline < now:
                try:
                    if self._expire(job.id, now):
                        expired.append(job.id)
                except TransientError:
                    # Left open; the next pass picks it up again
                    logger.warning("[Sweeper %s] Job %s busy, skipped", self.sweeper_id, job.id)
        if expired:
            logger.info("[Sweeper %s] Expired %d job(s): %s", self.sweeper_id, len(expired), ", ".join(expired))
        self.prune_locks()
        return expired

    def prune_locks(self) -> List[str]:
        """Remove lock files left behind by jobs that reached a terminal state."""
        pruned = []
        for job_id in self.storage.locked_job_ids():
            job = self.storage.get_job(job_id)
            if job is not None and not is_terminal(job.status):
                continue
            if self.storage.prune_lock(job_id):
                pruned.append(job_id)
        if pruned:
            logger.debug("[Sweeper %s] Removed %d stale lock file(s)", self.sweeper_id, len(pruned))
        return pruned

    def _expire(self, job_id: str, now: datetime) -> bool:
        config = self.storage.get_config()

        def attempt():
            job = self.storage.get_job(job_id)
            if job is None or job.status != JobStatus.OPEN or job.deadline >= now:
                return None
            job.set_status(JobStatus.EXPIRED, now, changed_by=SWEEPER_ACTOR, reason=EXPIRY_REASON)
            self.storage.commit(jobs=[job])
            return job

        job = retry_on_conflict(attempt, config, f"expire job {job_id}")
        if job is None:
            return False
        changed = JobStatusChanged(job_id=job.id, job_title=job.title, old_status=JobStatus.OPEN.value,
                                   new_status=JobStatus.EXPIRED.value, changed_by=SWEEPER_ACTOR,
                                   reason=EXPIRY_REASON)
        self.side_effects.publish(job_channel(job.id), changed)
        self.side_effects.notify(job.poster_id, changed)
        return True
