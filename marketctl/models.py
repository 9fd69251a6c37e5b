"""Data models for jobs, bids, accounts and configuration."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import AwareDatetime, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


class JobStatus(str, Enum):
    """Job lifecycle states."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    EXPIRED = "expired"


class BidStatus(str, Enum):
    """Bid lifecycle states."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class Tier(str, Enum):
    FREE = "free"
    PAID = "paid"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Bid(BaseModel):
    """An offer to perform a job, embedded in the job record."""
    id: str = Field(default_factory=new_id)
    bidder_id: str
    proposed_amount: float = Field(gt=0, allow_inf_nan=False)
    message: str = ""
    status: BidStatus = BidStatus.PENDING
    applied_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    response_message: Optional[str] = None

    def respond(self, status: BidStatus, message: Optional[str], when: datetime) -> None:
        self.status = status
        self.response_message = message
        self.responded_at = when


class StatusChange(BaseModel):
    status: JobStatus
    changed_at: datetime = Field(default_factory=utcnow)
    changed_by: Optional[str] = None
    reason: Optional[str] = None


class Job(BaseModel):
    """Job document owning its embedded bids."""
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    poster_id: str
    budget: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    status: JobStatus = JobStatus.OPEN
    deadline: AwareDatetime
    assigned_bidder_id: Optional[str] = None
    accepted_bid_id: Optional[str] = None
    bids: List[Bid] = Field(default_factory=list)
    status_history: List[StatusChange] = Field(default_factory=list)
    dispute_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        for bid in self.bids:
            if bid.id == bid_id:
                return bid
        return None

    def live_bid_for(self, bidder_id: str) -> Optional[Bid]:
        """The bidder's non-withdrawn bid on this job, if any."""
        for bid in self.bids:
            if bid.bidder_id == bidder_id and bid.status != BidStatus.WITHDRAWN:
                return bid
        return None

    def bids_with_status(self, status: BidStatus) -> List[Bid]:
        return [bid for bid in self.bids if bid.status == status]

    def set_status(self, status: JobStatus, when: datetime,
                   changed_by: Optional[str] = None, reason: Optional[str] = None) -> None:
        self.status = status
        self.updated_at = when
        self.status_history.append(
            StatusChange(status=status, changed_at=when, changed_by=changed_by, reason=reason)
        )

    def invariant_violations(self) -> List[str]:
        """Check the award invariants. Returns violations (empty = OK)."""
        errors = []
        accepted = self.bids_with_status(BidStatus.ACCEPTED)
        if len(accepted) > 1:
            errors.append(f"Job {self.id} has {len(accepted)} accepted bids")
        if accepted:
            if self.status == JobStatus.OPEN:
                errors.append(f"Job {self.id} is open with an accepted bid")
            if self.accepted_bid_id not in {bid.id for bid in accepted}:
                errors.append(
                    f"Job {self.id} accepted_bid_id={self.accepted_bid_id} "
                    f"does not match accepted bid"
                )
            if self.bids_with_status(BidStatus.PENDING):
                errors.append(f"Job {self.id} still has pending bids after award")
        elif self.accepted_bid_id is not None:
            errors.append(f"Job {self.id} names accepted bid {self.accepted_bid_id} but none is accepted")

        live = {}
        for bid in self.bids:
            if bid.status == BidStatus.WITHDRAWN:
                continue
            if bid.bidder_id in live:
                errors.append(f"Bidder {bid.bidder_id} holds more than one live bid on job {self.id}")
            live[bid.bidder_id] = bid.id
        return errors


class Account(BaseModel):
    """User account carrying the usage ledger."""
    id: str = Field(default_factory=new_id)
    name: str
    tier: Tier = Tier.FREE
    plan_status: PlanStatus = PlanStatus.ACTIVE
    credits_used: int = Field(default=0, ge=0)
    banned: bool = False
    last_job_posted_at: Optional[datetime] = None
    jobs_posted: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def has_active_paid_plan(self) -> bool:
        return self.tier == Tier.PAID and self.plan_status == PlanStatus.ACTIVE


class Config(BaseSettings):
    """System configuration.

    Values persisted in the data directory win over ``MARKETCTL_*``
    environment variables, which win over the defaults below.
    """
    model_config = SettingsConfigDict(env_prefix="MARKETCTL_", validate_assignment=True)

    free_credit_quota: int = Field(default=3, ge=0)
    post_cooldown_hours: float = Field(default=3.0, ge=0)
    enforce_capacity_on_submit: bool = True
    budget_tolerance: float = Field(default=0.5, ge=0)  # proposals must fall within +/- this share of budget
    max_commit_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.05, ge=0)  # seconds
    backoff_base: float = Field(default=2.0, ge=1)  # exponential backoff base
    backoff_max_delay: float = Field(default=2.0, ge=0)  # seconds
    sweep_interval: float = Field(default=60.0, gt=0)  # seconds
    log_level: str = "INFO"
