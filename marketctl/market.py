"""Marketplace operations: accounts, job posting, bids and status updates."""

import logging
import math
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from . import ledger, state_machine
from .coordinator import Assignment, AssignmentCoordinator
from .errors import (
    CapacityExceededError,
    DuplicateBidError,
    ForbiddenError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from .events import (
    BidRejected,
    BidSubmitted,
    JobStatusChanged,
    SideEffects,
    job_channel,
)
from .models import (
    Account,
    Bid,
    BidStatus,
    Job,
    JobStatus,
    PlanStatus,
    Tier,
    utcnow,
)
from .retry import retry_on_conflict
from .storage import Storage

logger = logging.getLogger(__name__)

CANCELLATION_MESSAGE = "The job was cancelled"


class Marketplace:
    """Manages marketplace operations."""

    def __init__(self, storage: Storage, side_effects: Optional[SideEffects] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.side_effects = side_effects or SideEffects()
        self.clock = clock
        self.coordinator = AssignmentCoordinator(storage, self.side_effects, clock)

    # Lookups

    def get_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def get_account(self, account_id: str) -> Account:
        account = self.storage.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        if status is not None:
            return self.storage.get_jobs_by_status(status)
        return self.storage.get_all_jobs()

    def list_accounts(self) -> List[Account]:
        return self.storage.get_all_accounts()

    # Accounts

    def create_account(self, name: str, tier: Tier = Tier.FREE,
                       account_id: Optional[str] = None) -> Account:
        if not name.strip():
            raise InvalidRequestError("Account name is required")
        fields = {"id": account_id} if account_id else {}
        account = Account(name=name, tier=tier, created_at=self.clock(), **fields)

        def attempt() -> None:
            if self.storage.get_account(account.id) is not None:
                raise InvalidStateError(f"Account {account.id} already exists")
            self.storage.commit(accounts=[account])

        retry_on_conflict(attempt, self.storage.get_config(), f"create account {account.id}")
        logger.info("Account %s created (%s tier)", account.id, tier.value)
        return account

    def remaining_credits(self, account_id: str) -> Optional[int]:
        config = self.storage.get_config()
        return ledger.remaining_credits(self.get_account(account_id), config.free_credit_quota)

    def next_allowed_post_time(self, account_id: str) -> Optional[datetime]:
        config = self.storage.get_config()
        return ledger.next_allowed_post_time(self.get_account(account_id), self.clock(),
                                             config.post_cooldown_hours)

    def adjust_credits(self, account_id: str, delta: int) -> Account:
        """Administrative credit adjustment, clamped at zero."""
        def attempt() -> Account:
            account = self.get_account(account_id)
            account.credits_used = max(0, account.credits_used + delta)
            self.storage.commit(accounts=[account])
            return account

        account = retry_on_conflict(attempt, self.storage.get_config(),
                                    f"adjust credits for {account_id}")
        logger.info("Account %s credits adjusted by %+d to %d", account_id, delta, account.credits_used)
        return account

    def set_plan(self, account_id: str, tier: Tier,
                 plan_status: PlanStatus = PlanStatus.ACTIVE) -> Account:
        def attempt() -> Account:
            account = self.get_account(account_id)
            account.tier = tier
            account.plan_status = plan_status
            self.storage.commit(accounts=[account])
            return account

        account = retry_on_conflict(attempt, self.storage.get_config(), f"set plan for {account_id}")
        logger.info("Account %s plan set to %s (%s)", account_id, tier.value, plan_status.value)
        return account

    def set_banned(self, account_id: str, banned: bool) -> Account:
        def attempt() -> Account:
            account = self.get_account(account_id)
            account.banned = banned
            self.storage.commit(accounts=[account])
            return account

        return retry_on_conflict(attempt, self.storage.get_config(), f"ban update for {account_id}")

    # Jobs

    def post_job(self, poster_id: str, title: str, deadline: datetime,
                 description: str = "", budget: Optional[float] = None) -> Job:
        """Create an open job, enforcing the posting throttle."""
        config = self.storage.get_config()
        if not title.strip():
            raise InvalidRequestError("Job title is required")
        if budget is not None and (not math.isfinite(budget) or budget <= 0):
            raise InvalidRequestError("Budget must be greater than 0")
        if deadline.tzinfo is None or deadline.utcoffset() is None:
            raise InvalidRequestError("Deadline must include a timezone")

        def attempt() -> Job:
            poster = self.get_account(poster_id)
            if poster.banned:
                raise ForbiddenError("Account suspended")
            now = self.clock()
            if deadline <= now:
                raise InvalidRequestError("Deadline must be in the future")
            next_allowed = ledger.next_allowed_post_time(poster, now, config.post_cooldown_hours)
            if next_allowed is not None:
                raise CapacityExceededError(
                    f"Free plans can post one job every {config.post_cooldown_hours:g} hours. "
                    f"Try again in {ledger.format_time_remaining(next_allowed, now)} "
                    f"or upgrade for unlimited posting.",
                    retry_at=next_allowed,
                )

            job = Job(poster_id=poster_id, title=title, description=description,
                      budget=budget, deadline=deadline, created_at=now, updated_at=now)
            job.set_status(JobStatus.OPEN, now, changed_by=poster_id)
            poster.last_job_posted_at = now
            poster.jobs_posted += 1
            self.storage.commit(jobs=[job], accounts=[poster])
            return job

        job = retry_on_conflict(attempt, config, f"post job for {poster_id}")
        logger.info("Job %s posted by %s", job.id, poster_id)
        return job

    def submit_bid(self, job_id: str, bidder_id: str, amount: float, message: str = "") -> Bid:
        """Append a pending bid to an open job."""
        config = self.storage.get_config()

        def attempt() -> Tuple[Job, Bid]:
            job = self.get_job(job_id)
            bidder = self.get_account(bidder_id)
            if bidder.banned:
                raise ForbiddenError("Account suspended")
            if job.poster_id == bidder_id:
                raise ForbiddenError("You cannot bid on your own job")
            if job.status != JobStatus.OPEN:
                raise InvalidStateError("This job is no longer accepting bids")
            now = self.clock()
            if job.deadline < now:
                raise InvalidStateError("The bidding deadline has passed")
            if job.live_bid_for(bidder_id) is not None:
                raise DuplicateBidError("You already have an active bid on this job")
            self._validate_amount(job, amount, config.budget_tolerance)
            if config.enforce_capacity_on_submit and not ledger.has_capacity(bidder, config.free_credit_quota):
                raise CapacityExceededError(
                    f"You have used all {config.free_credit_quota} free job credits. "
                    f"Upgrade to a paid plan for unlimited jobs."
                )

            bid = Bid(bidder_id=bidder_id, proposed_amount=amount, message=message, applied_at=now)
            job.bids.append(bid)
            job.updated_at = now
            self.storage.commit(jobs=[job])
            return job, bid

        job, bid = retry_on_conflict(attempt, config, f"submit bid on job {job_id}")
        logger.info("Bid %s submitted on job %s by %s", bid.id, job_id, bidder_id)
        self.side_effects.notify(job.poster_id, BidSubmitted(
            job_id=job.id, job_title=job.title, bid_id=bid.id,
            bidder_id=bidder_id, proposed_amount=amount,
        ))
        return bid

    @staticmethod
    def _validate_amount(job: Job, amount: float, tolerance: float) -> None:
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidRequestError("Proposed amount must be greater than 0")
        if job.budget is None:
            return
        low = job.budget * (1 - tolerance)
        high = job.budget * (1 + tolerance)
        if not low <= amount <= high:
            raise InvalidRequestError(
                f"Proposed amount {amount:g} is too far from the budget {job.budget:g}. "
                f"Please propose between {low:g} and {high:g}."
            )

    def withdraw_bid(self, job_id: str, bid_id: str, bidder_id: str) -> Bid:
        """Withdraw a pending bid. The ledger is not touched."""
        def attempt() -> Bid:
            job = self.get_job(job_id)
            bid = job.get_bid(bid_id)
            if bid is None:
                raise NotFoundError(f"Bid {bid_id} not found on job {job_id}")
            if bid.bidder_id != bidder_id:
                raise ForbiddenError("Only the bidder can withdraw this bid")
            if bid.status != BidStatus.PENDING:
                raise InvalidStateError(f"Bid {bid_id} is {bid.status.value}, not pending")
            now = self.clock()
            bid.respond(BidStatus.WITHDRAWN, None, now)
            job.updated_at = now
            self.storage.commit(jobs=[job])
            return bid

        bid = retry_on_conflict(attempt, self.storage.get_config(), f"withdraw bid {bid_id}")
        logger.info("Bid %s on job %s withdrawn", bid_id, job_id)
        return bid

    def reject_bid(self, job_id: str, bid_id: str, poster_id: str,
                   response_message: Optional[str] = None) -> Bid:
        """Reject a single pending bid without awarding the job."""
        def attempt() -> Tuple[Job, Bid]:
            job = self.get_job(job_id)
            if job.poster_id != poster_id:
                raise ForbiddenError("Only the job poster can reject bids")
            if job.status != JobStatus.OPEN:
                raise InvalidStateError(f"Job {job_id} is {job.status.value}, not open")
            bid = job.get_bid(bid_id)
            if bid is None:
                raise NotFoundError(f"Bid {bid_id} not found on job {job_id}")
            if bid.status != BidStatus.PENDING:
                raise InvalidStateError(f"Bid {bid_id} is {bid.status.value}, not pending")
            now = self.clock()
            bid.respond(BidStatus.REJECTED, response_message, now)
            job.updated_at = now
            self.storage.commit(jobs=[job])
            return job, bid

        job, bid = retry_on_conflict(attempt, self.storage.get_config(), f"reject bid {bid_id}")
        logger.info("Bid %s on job %s rejected", bid_id, job_id)
        self.side_effects.notify(bid.bidder_id, BidRejected(
            job_id=job.id, job_title=job.title, bid_id=bid.id, message=response_message,
        ))
        return bid

    def accept_bid(self, job_id: str, bid_id: str, poster_id: str,
                   response_message: Optional[str] = None) -> Assignment:
        return self.coordinator.accept_bid(job_id, bid_id, poster_id, response_message)

    def update_status(self, job_id: str, new_status: JobStatus, actor_id: str,
                      reason: Optional[str] = None) -> Job:
        """Guarded single-document status transition."""
        rejected: List[Bid] = []

        def attempt() -> Tuple[Job, JobStatus]:
            rejected.clear()
            job = self.get_job(job_id)
            errors = state_machine.validate_transition(job, new_status)
            if errors:
                raise InvalidStateError(errors[0])
            denied = state_machine.validate_actor(job, new_status, actor_id)
            if denied:
                raise ForbiddenError(denied)
            if new_status == JobStatus.DISPUTED and not (reason and reason.strip()):
                raise InvalidRequestError("A reason is required to dispute a job")

            old_status = job.status
            now = self.clock()
            if new_status == JobStatus.COMPLETED:
                job.completed_at = now
            elif new_status == JobStatus.DISPUTED:
                job.dispute_reason = reason
            elif new_status == JobStatus.CANCELLED:
                for bid in job.bids_with_status(BidStatus.PENDING):
                    bid.respond(BidStatus.REJECTED, CANCELLATION_MESSAGE, now)
                    rejected.append(bid)
            job.set_status(new_status, now, changed_by=actor_id, reason=reason)
            self.storage.commit(jobs=[job])
            return job, old_status

        job, old_status = retry_on_conflict(attempt, self.storage.get_config(),
                                            f"set job {job_id} to {new_status.value}")
        logger.info("Job %s moved from %s to %s by %s", job_id, old_status.value, new_status.value, actor_id)

        changed = JobStatusChanged(job_id=job.id, job_title=job.title, old_status=old_status.value,
                                   new_status=new_status.value, changed_by=actor_id, reason=reason)
        self.side_effects.publish(job_channel(job.id), changed)
        for party in {job.poster_id, job.assigned_bidder_id} - {actor_id, None}:
            self.side_effects.notify(party, changed)
        for bid in rejected:
            self.side_effects.notify(bid.bidder_id, BidRejected(
                job_id=job.id, job_title=job.title, bid_id=bid.id, message=bid.response_message,
            ))
        return job
