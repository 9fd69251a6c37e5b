"""Persistent document storage using a JSON file with locking."""

import json
import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import ConflictError
from .models import Account, Config, Job, JobStatus

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)


class Storage:
    """File-based storage for jobs and accounts with version stamps.

    Jobs and accounts live in one ``market.json`` document so a commit
    touching both is a single atomic file replace.
    """

    def __init__(self, data_dir: str = ".marketctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.market_file = self.data_dir / "market.json"
        self.config_file = self.data_dir / "config.json"
        self.locks_dir = self.data_dir / "locks"
        self.locks_dir.mkdir(exist_ok=True)
        self.store_lock_file = self.locks_dir / "store.lock"

        # Initialize files if they don't exist
        with self._store_lock():
            if not self.market_file.exists():
                self._write_json(self.market_file, {"jobs": {}, "accounts": {}})
        if not self.config_file.exists():
            self._write_json(self.config_file, {})

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(f".{os.getpid()}.tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return {}
        with open(file_path, "r") as f:
            return json.load(f)

    def _read_market(self) -> Dict[str, Dict[str, Any]]:
        data = self._read_json(self.market_file)
        data.setdefault("jobs", {})
        data.setdefault("accounts", {})
        return data

    @contextmanager
    def _store_lock(self) -> Iterator[None]:
        """Hold the exclusive store lock for a read-modify-write cycle."""
        fd = os.open(str(self.store_lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            if sys.platform == "win32":
                try:
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        job_data = self._read_market()["jobs"].get(job_id)
        return Job(**job_data) if job_data is not None else None

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get an account by ID."""
        account_data = self._read_market()["accounts"].get(account_id)
        return Account(**account_data) if account_data is not None else None

    def get_all_jobs(self) -> List[Job]:
        jobs = self._read_market()["jobs"]
        return sorted((Job(**job_data) for job_data in jobs.values()), key=lambda j: j.created_at)

    def get_jobs_by_status(self, status: JobStatus) -> List[Job]:
        """Get all jobs in a specific status."""
        return [job for job in self.get_all_jobs() if job.status == status]

    def get_all_accounts(self) -> List[Account]:
        accounts = self._read_market()["accounts"]
        return sorted((Account(**data) for data in accounts.values()), key=lambda a: a.created_at)

    def commit(self, jobs: Iterable[Job] = (), accounts: Iterable[Account] = ()) -> None:
        """Write documents atomically if every version stamp still matches.

        A document with version 0 is inserted and must not exist yet.
        Every written document has its version bumped in place. Raises
        ConflictError and writes nothing if any stamp is stale.
        """
        jobs = list(jobs)
        accounts = list(accounts)
        with self._store_lock():
            data = self._read_market()
            for section, docs in (("jobs", jobs), ("accounts", accounts)):
                for doc in docs:
                    stored = data[section].get(doc.id)
                    stored_version = stored["version"] if stored is not None else 0
                    if stored_version != doc.version:
                        logger.debug(
                            "Version conflict on %s %s: have %s, stored %s",
                            section, doc.id, doc.version, stored_version,
                        )
                        raise ConflictError(f"{section}/{doc.id} changed since it was read")

            for section, docs in (("jobs", jobs), ("accounts", accounts)):
                for doc in docs:
                    record = doc.model_dump(mode="json")
                    record["version"] = doc.version + 1
                    data[section][doc.id] = record
            self._write_json(self.market_file, data)

        for doc in jobs + accounts:
            doc.version += 1

    def acquire_lock(self, job_id: str) -> Optional[int]:
        """Acquire a lock for a job. Returns lock file descriptor or None if locked."""
        lock_file = self.locks_dir / f"{job_id}.lock"
        try:
            fd = os.open(str(lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
            if sys.platform == "win32":
                try:
                    msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
                except OSError:
                    os.close(fd)
                    return None
            else:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except OSError:
                    os.close(fd)
                    return None
            return fd
        except OSError:
            return None

    def release_lock(self, fd: int) -> None:
        """Release a lock."""
        try:
            if sys.platform == "win32":
                try:
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def job_lock(self, job_id: str) -> Iterator[None]:
        """Exclusive job-scoped critical section. Raises ConflictError if held."""
        fd = self.acquire_lock(job_id)
        if fd is None:
            raise ConflictError(f"job {job_id} is locked by another acceptance")
        try:
            yield
        finally:
            self.release_lock(fd)

    def locked_job_ids(self) -> List[str]:
        """IDs of jobs that have a lock file on disk."""
        return sorted(p.stem for p in self.locks_dir.glob("*.lock") if p != self.store_lock_file)

    def prune_lock(self, job_id: str) -> bool:
        """Delete a job's lock file unless someone holds it."""
        fd = self.acquire_lock(job_id)
        if fd is None:
            return False
        try:
            (self.locks_dir / f"{job_id}.lock").unlink()
        except OSError as e:
            logger.debug("Could not remove lock file for job %s: %s", job_id, e)
            return False
        finally:
            self.release_lock(fd)
        return True

    def get_config(self) -> Config:
        """Get current configuration."""
        config_data = self._read_json(self.config_file)
        return Config(**config_data)

    def set_config(self, config: Config) -> None:
        """Persist explicitly set configuration values."""
        self._write_json(self.config_file, config.model_dump(mode="json", exclude_unset=True))

    def get_stats(self) -> Dict[str, int]:
        """Get job, bid and account statistics."""
        data = self._read_market()
        stats = {status.value: 0 for status in JobStatus}
        stats.update({"total": len(data["jobs"]), "bids": 0, "accounts": len(data["accounts"])})
        for job_data in data["jobs"].values():
            status = job_data.get("status", JobStatus.OPEN.value)
            if status in stats:
                stats[status] += 1
            for bid in job_data.get("bids", []):
                stats["bids"] += 1
                key = f"bids_{bid.get('status')}"
                stats[key] = stats.get(key, 0) + 1
        return stats
