"""Post-commit side effects: notifications, broadcasts and conversations.

Every call made through ``SideEffects`` is best-effort. A failing
collaborator is logged and never undoes or fails the committed change.
"""

import logging
from typing import Annotated, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

REJECTION_MESSAGE = "Another applicant was selected"


def job_channel(job_id: str) -> str:
    return f"job:{job_id}:updates"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}:notifications"


class BidSubmitted(BaseModel):
    kind: Literal["bid_submitted"] = "bid_submitted"
    job_id: str
    job_title: str
    bid_id: str
    bidder_id: str
    proposed_amount: float


class BidAccepted(BaseModel):
    kind: Literal["bid_accepted"] = "bid_accepted"
    job_id: str
    job_title: str
    bid_id: str
    message: Optional[str] = None


class BidRejected(BaseModel):
    kind: Literal["bid_rejected"] = "bid_rejected"
    job_id: str
    job_title: str
    bid_id: str
    message: Optional[str] = None


class JobAssigned(BaseModel):
    kind: Literal["job_assigned"] = "job_assigned"
    job_id: str
    job_title: str
    poster_id: str
    bidder_id: str
    bid_id: str
    status: str = "assigned"


class JobStatusChanged(BaseModel):
    kind: Literal["job_status_changed"] = "job_status_changed"
    job_id: str
    job_title: str
    old_status: str
    new_status: str
    changed_by: Optional[str] = None
    reason: Optional[str] = None


EventPayload = Annotated[
    Union[BidSubmitted, BidAccepted, BidRejected, JobAssigned, JobStatusChanged],
    Field(discriminator="kind"),
]


class Notifier(Protocol):
    def notify(self, user_id: str, kind: str, payload: EventPayload) -> None: ...


class Broadcaster(Protocol):
    def publish(self, channel: str, event_name: str, payload: EventPayload) -> None: ...


class ConversationService(Protocol):
    def create_job_conversation(self, job_id: str, poster_id: str, bidder_id: str) -> None: ...


class LoggingNotifier:
    def notify(self, user_id: str, kind: str, payload: EventPayload) -> None:
        logger.info("notify user=%s kind=%s payload=%s", user_id, kind, payload.model_dump_json())


class LoggingBroadcaster:
    def publish(self, channel: str, event_name: str, payload: EventPayload) -> None:
        logger.info("publish channel=%s event=%s payload=%s", channel, event_name, payload.model_dump_json())


class LoggingConversationService:
    def create_job_conversation(self, job_id: str, poster_id: str, bidder_id: str) -> None:
        logger.info("conversation job=%s poster=%s bidder=%s", job_id, poster_id, bidder_id)


class SideEffects:
    """Best-effort facade over the external collaborators."""

    def __init__(self,
                 notifier: Optional[Notifier] = None,
                 broadcaster: Optional[Broadcaster] = None,
                 conversations: Optional[ConversationService] = None):
        self.notifier = notifier or LoggingNotifier()
        self.broadcaster = broadcaster or LoggingBroadcaster()
        self.conversations = conversations or LoggingConversationService()

    def notify(self, user_id: str, payload: EventPayload) -> bool:
        try:
            self.notifier.notify(user_id, payload.kind, payload)
            return True
        except Exception:
            logger.exception("Failed to notify %s of %s", user_id, payload.kind)
            return False

    def publish(self, channel: str, payload: EventPayload) -> bool:
        try:
            self.broadcaster.publish(channel, payload.kind, payload)
            return True
        except Exception:
            logger.exception("Failed to publish %s on %s", payload.kind, channel)
            return False

    def create_job_conversation(self, job_id: str, poster_id: str, bidder_id: str) -> bool:
        try:
            self.conversations.create_job_conversation(job_id, poster_id, bidder_id)
            return True
        except Exception:
            logger.exception("Failed to create conversation for job %s", job_id)
            return False
