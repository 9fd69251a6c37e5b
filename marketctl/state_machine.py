"""Job status machine: valid transitions and who may request them.

Job lifecycle:
    open -> in_progress -> completed
                        -> disputed -> completed | cancelled
    open -> cancelled
    open -> expired

Pure computation. Persistence and notifications are handled by the
marketplace service.
"""

from typing import Dict, List, Optional, Set

from .models import Job, JobStatus

SWEEPER_ACTOR = "system:sweeper"

_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.OPEN: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED, JobStatus.EXPIRED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.DISPUTED},
    JobStatus.DISPUTED: {JobStatus.COMPLETED, JobStatus.CANCELLED},
    # Terminal states
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
    JobStatus.EXPIRED: set(),
}


def valid_transitions(status: JobStatus) -> Set[JobStatus]:
    return set(_TRANSITIONS.get(status, set()))


def is_terminal(status: JobStatus) -> bool:
    return not _TRANSITIONS.get(status)


def validate_transition(job: Job, target: JobStatus) -> List[str]:
    """Check if a transition is valid. Returns errors (empty = OK)."""
    allowed = valid_transitions(job.status)
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed))
        return [
            f"Cannot change status from {job.status.value} to {target.value}. "
            f"Allowed from {job.status.value}: [{allowed_str}]"
        ]
    return []


def validate_actor(job: Job, target: JobStatus, actor_id: str) -> Optional[str]:
    """Return an error if ``actor_id`` may not move ``job`` to ``target``."""
    is_poster = actor_id == job.poster_id
    is_assignee = job.assigned_bidder_id is not None and actor_id == job.assigned_bidder_id

    if target == JobStatus.IN_PROGRESS:
        return "Jobs are assigned by accepting a bid"
    if target == JobStatus.EXPIRED:
        if actor_id != SWEEPER_ACTOR:
            return "Only the lifecycle sweeper can expire jobs"
        return None
    if target == JobStatus.CANCELLED:
        if not is_poster:
            return "Only the job poster can cancel a job"
        return None
    if target == JobStatus.COMPLETED:
        if is_assignee:
            return None
        if is_poster and job.status == JobStatus.DISPUTED:
            return None
        return "Only the assigned bidder can mark a job as completed"
    if target == JobStatus.DISPUTED:
        if not (is_poster or is_assignee):
            return "Only the poster or the assigned bidder can dispute a job"
        return None
    return f"Unsupported status {target.value}"
