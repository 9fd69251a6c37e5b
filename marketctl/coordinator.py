"""Assignment coordinator: the atomic award of a job to one bid.

Accepting a bid touches two documents, the job (with its embedded bids)
and the winning bidder's account. Both are re-read and re-checked inside
the job's critical section and written by a single versioned commit, so an
acceptance either lands completely or not at all:

1. re-check the bidder's capacity against a fresh copy of the ledger
2. consume one credit unless the bidder is on an active paid plan
3. accept the target bid
4. reject every other pending bid on the job
5. move the job to ``in_progress``
6. commit, then run the side effects

A commit that loses a race (stale version stamp or another acceptance
holding the job lock) is retried from step 1 after a backoff delay.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from . import ledger
from .errors import (
    CapacityExceededError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from .events import (
    REJECTION_MESSAGE,
    BidAccepted,
    BidRejected,
    JobAssigned,
    SideEffects,
    job_channel,
    user_channel,
)
from .models import Account, Bid, BidStatus, Job, JobStatus, utcnow
from .retry import retry_on_conflict
from .storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class Assignment:
    """Outcome of a committed acceptance."""
    job: Job
    bid: Bid
    bidder: Account
    rejected: List[Bid] = field(default_factory=list)
    credit_consumed: bool = False


class AssignmentCoordinator:
    """Awards jobs to bids under a job-scoped critical section."""

    def __init__(self, storage: Storage, side_effects: Optional[SideEffects] = None,
                 clock: Callable = utcnow):
        self.storage = storage
        self.side_effects = side_effects or SideEffects()
        self.clock = clock

    def accept_bid(self, job_id: str, bid_id: str, poster_id: str,
                   response_message: Optional[str] = None) -> Assignment:
        config = self.storage.get_config()

        def attempt() -> Assignment:
            with self.storage.job_lock(job_id):
                return self._assign(job_id, bid_id, poster_id, response_message,
                                    config.free_credit_quota)

        assignment = retry_on_conflict(attempt, config, f"accept bid {bid_id} on job {job_id}")
        logger.info(
            "Job %s assigned to %s via bid %s (%d competing bids rejected)",
            job_id, assignment.bidder.id, bid_id, len(assignment.rejected),
        )
        self._after_commit(assignment, poster_id)
        return assignment

    def _assign(self, job_id: str, bid_id: str, poster_id: str,
                response_message: Optional[str], quota: int) -> Assignment:
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.poster_id != poster_id:
            raise ForbiddenError("Only the job poster can accept bids")
        if job.status != JobStatus.OPEN:
            raise InvalidStateError(f"Job {job_id} is {job.status.value}, not open")
        bid = job.get_bid(bid_id)
        if bid is None:
            raise NotFoundError(f"Bid {bid_id} not found on job {job_id}")
        if bid.status != BidStatus.PENDING:
            raise InvalidStateError(f"Bid {bid_id} is {bid.status.value}, not pending")

        bidder = self.storage.get_account(bid.bidder_id)
        if bidder is None:
            raise NotFoundError(f"Bidder account {bid.bidder_id} not found")
        if bidder.banned:
            raise ForbiddenError("The selected bidder's account is suspended")
        if not ledger.has_capacity(bidder, quota):
            raise CapacityExceededError(
                f"The selected bidder has used all {quota} free job credits. "
                f"They must upgrade to a paid plan before being awarded more jobs; "
                f"please select another bid."
            )

        now = self.clock()
        credit_consumed = ledger.consume_credit(bidder)
        bid.respond(BidStatus.ACCEPTED, response_message, now)

        rejected = []
        for other in job.bids:
            if other.id != bid.id and other.status == BidStatus.PENDING:
                other.respond(BidStatus.REJECTED, REJECTION_MESSAGE, now)
                rejected.append(other)

        job.assigned_bidder_id = bidder.id
        job.accepted_bid_id = bid.id
        job.set_status(JobStatus.IN_PROGRESS, now, changed_by=poster_id)

        # Account always committed: its version stamp guards the capacity check
        # even when no credit moved.
        self.storage.commit(jobs=[job], accounts=[bidder])
        return Assignment(job=job, bid=bid, bidder=bidder, rejected=rejected,
                          credit_consumed=credit_consumed)

    def _after_commit(self, assignment: Assignment, poster_id: str) -> None:
        job, bid = assignment.job, assignment.bid
        effects = self.side_effects

        effects.create_job_conversation(job.id, poster_id, bid.bidder_id)

        assigned = JobAssigned(job_id=job.id, job_title=job.title, poster_id=poster_id,
                               bidder_id=bid.bidder_id, bid_id=bid.id)
        effects.publish(job_channel(job.id), assigned)
        effects.publish(user_channel(bid.bidder_id), assigned)

        effects.notify(bid.bidder_id, BidAccepted(job_id=job.id, job_title=job.title,
                                                  bid_id=bid.id, message=bid.response_message))
        for other in assignment.rejected:
            effects.notify(other.bidder_id, BidRejected(job_id=job.id, job_title=job.title,
                                                        bid_id=other.id, message=other.response_message))
