"""Tests for bid acceptance: the atomic award of a job."""

import logging
import threading
from datetime import timedelta

import pytest

from marketctl.coordinator import AssignmentCoordinator
from marketctl.errors import (
    CapacityExceededError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    TransientError,
)
from marketctl.events import REJECTION_MESSAGE, SideEffects
from marketctl.market import Marketplace
from marketctl.models import BidStatus, JobStatus, PlanStatus, Tier
from marketctl.sweeper import Sweeper


def _bidder(market, account_id, credits_used=0, tier=Tier.FREE):
    market.create_account(account_id.title(), tier, account_id=account_id)
    if credits_used:
        market.adjust_credits(account_id, credits_used)
    return market.get_account(account_id)


def _fast_retries(storage, attempts=10):
    cfg = storage.get_config()
    cfg.max_commit_attempts = attempts
    cfg.retry_base_delay = 0.005
    cfg.backoff_max_delay = 0.05
    storage.set_config(cfg)


class FailingCollaborator:
    def notify(self, user_id, kind, payload):
        raise RuntimeError("notification service down")

    def publish(self, channel, event_name, payload):
        raise RuntimeError("broadcaster down")

    def create_job_conversation(self, job_id, poster_id, bidder_id):
        raise RuntimeError("conversation service down")


class TestScenarios:
    def test_accept_consumes_last_credit_and_rejects_competitors(self, market, open_job, poster):
        """Scenario A."""
        _bidder(market, "x", credits_used=2)
        _bidder(market, "y")
        b1 = market.submit_bid(open_job.id, "x", 120.0)
        b2 = market.submit_bid(open_job.id, "y", 100.0)

        assignment = market.accept_bid(open_job.id, b1.id, poster.id, "See you Monday")

        job = market.get_job(open_job.id)
        assert job.get_bid(b1.id).status == BidStatus.ACCEPTED
        assert job.get_bid(b1.id).response_message == "See you Monday"
        assert job.get_bid(b1.id).responded_at is not None
        assert job.get_bid(b2.id).status == BidStatus.REJECTED
        assert job.get_bid(b2.id).response_message == REJECTION_MESSAGE
        assert job.status == JobStatus.IN_PROGRESS
        assert job.assigned_bidder_id == "x"
        assert job.accepted_bid_id == b1.id
        assert market.get_account("x").credits_used == 3
        assert assignment.credit_consumed
        assert [b.id for b in assignment.rejected] == [b2.id]
        assert job.invariant_violations() == []

    def test_exhausted_bidder_cannot_be_awarded(self, market, open_job, poster, storage):
        """Scenario B."""
        _bidder(market, "x", credits_used=2)
        _bidder(market, "y")
        b1 = market.submit_bid(open_job.id, "x", 120.0)
        b2 = market.submit_bid(open_job.id, "y", 100.0)
        # Capacity consumed elsewhere after the bid was placed
        market.adjust_credits("x", 1)
        before = storage.get_job(open_job.id)

        with pytest.raises(CapacityExceededError, match="upgrade"):
            market.accept_bid(open_job.id, b1.id, poster.id)

        job = market.get_job(open_job.id)
        assert job.status == JobStatus.OPEN
        assert job.get_bid(b1.id).status == BidStatus.PENDING
        assert job.get_bid(b2.id).status == BidStatus.PENDING
        assert job.version == before.version
        assert market.get_account("x").credits_used == 3

    def test_withdraw_then_rebid(self, market, open_job):
        """Scenario C."""
        _bidder(market, "x")
        first = market.submit_bid(open_job.id, "x", 90.0)
        withdrawn = market.withdraw_bid(open_job.id, first.id, "x")
        assert withdrawn.status == BidStatus.WITHDRAWN

        second = market.submit_bid(open_job.id, "x", 95.0)

        job = market.get_job(open_job.id)
        assert [b.status for b in job.bids] == [BidStatus.WITHDRAWN, BidStatus.PENDING]
        assert second.id != first.id
        assert market.get_account("x").credits_used == 0

    def test_expired_job_refuses_bids(self, market, open_job, storage, clock):
        """Scenario D."""
        _bidder(market, "x")
        clock.advance(days=4)
        expired = Sweeper(storage, clock=clock).sweep_once()

        assert expired == [open_job.id]
        assert market.get_job(open_job.id).status == JobStatus.EXPIRED
        with pytest.raises(InvalidStateError):
            market.submit_bid(open_job.id, "x", 100.0)


class TestPreconditions:
    def test_only_poster_can_accept(self, market, open_job):
        _bidder(market, "x")
        bid = market.submit_bid(open_job.id, "x", 100.0)
        with pytest.raises(ForbiddenError):
            market.accept_bid(open_job.id, bid.id, "x")

    def test_unknown_job(self, market, poster):
        with pytest.raises(NotFoundError):
            market.accept_bid("missing", "bid", poster.id)

    def test_unknown_bid(self, market, open_job, poster):
        with pytest.raises(NotFoundError):
            market.accept_bid(open_job.id, "missing", poster.id)

    def test_withdrawn_bid_cannot_be_accepted(self, market, open_job, poster):
        _bidder(market, "x")
        bid = market.submit_bid(open_job.id, "x", 100.0)
        market.withdraw_bid(open_job.id, bid.id, "x")
        with pytest.raises(InvalidStateError):
            market.accept_bid(open_job.id, bid.id, poster.id)

    def test_banned_bidder_cannot_be_awarded(self, market, open_job, poster):
        _bidder(market, "x")
        bid = market.submit_bid(open_job.id, "x", 100.0)
        market.set_banned("x", True)
        with pytest.raises(ForbiddenError):
            market.accept_bid(open_job.id, bid.id, poster.id)
        assert market.get_job(open_job.id).status == JobStatus.OPEN

    def test_cancelled_job_cannot_be_awarded(self, market, open_job, poster):
        _bidder(market, "x")
        bid = market.submit_bid(open_job.id, "x", 100.0)
        market.update_status(open_job.id, JobStatus.CANCELLED, poster.id)
        with pytest.raises(InvalidStateError):
            market.accept_bid(open_job.id, bid.id, poster.id)


class TestLedger:
    def test_paid_bidder_does_not_consume_credits(self, market, open_job, poster):
        _bidder(market, "x", credits_used=7, tier=Tier.PAID)
        bid = market.submit_bid(open_job.id, "x", 100.0)

        assignment = market.accept_bid(open_job.id, bid.id, poster.id)

        assert not assignment.credit_consumed
        assert market.get_account("x").credits_used == 7

    def test_lapsed_paid_plan_falls_back_to_quota(self, market, open_job, poster):
        _bidder(market, "x", credits_used=3, tier=Tier.PAID)
        bid = market.submit_bid(open_job.id, "x", 100.0)
        market.set_plan("x", Tier.PAID, PlanStatus.EXPIRED)

        with pytest.raises(CapacityExceededError):
            market.accept_bid(open_job.id, bid.id, poster.id)

    def test_credits_never_exceed_quota_across_jobs(self, market, poster, clock):
        _bidder(market, "x")
        jobs = [
            market.post_job(poster.id, f"Job {i}", clock() + timedelta(days=2))
            for i in range(4)
        ]
        bids = [market.submit_bid(job.id, "x", 50.0) for job in jobs]

        for job, bid in zip(jobs[:3], bids[:3]):
            market.accept_bid(job.id, bid.id, poster.id)
        with pytest.raises(CapacityExceededError):
            market.accept_bid(jobs[3].id, bids[3].id, poster.id)

        assert market.get_account("x").credits_used == 3
        assert market.get_job(jobs[3].id).status == JobStatus.OPEN


class TestIdempotence:
    def test_second_acceptance_is_invalid_and_silent(self, market, open_job, poster,
                                                     notifier, broadcaster, conversations):
        _bidder(market, "x")
        bid = market.submit_bid(open_job.id, "x", 100.0)
        market.accept_bid(open_job.id, bid.id, poster.id)
        sent = len(notifier.sent)
        published = len(broadcaster.published)

        with pytest.raises(InvalidStateError):
            market.accept_bid(open_job.id, bid.id, poster.id)

        assert len(notifier.sent) == sent
        assert len(broadcaster.published) == published
        assert len(conversations.created) == 1
        assert market.get_account("x").credits_used == 1


class TestSideEffects:
    def test_post_commit_effects(self, market, open_job, poster, notifier, broadcaster, conversations):
        _bidder(market, "x")
        _bidder(market, "y")
        _bidder(market, "z")
        winner = market.submit_bid(open_job.id, "x", 100.0)
        market.submit_bid(open_job.id, "y", 110.0)
        loser = market.submit_bid(open_job.id, "z", 105.0)
        market.withdraw_bid(open_job.id, loser.id, "z")
        notifier.sent.clear()

        market.accept_bid(open_job.id, winner.id, poster.id)

        assert conversations.created == [(open_job.id, poster.id, "x")]
        channels = [channel for channel, _, _ in broadcaster.published]
        assert channels == [f"job:{open_job.id}:updates", "user:x:notifications"]
        assert {event for _, event, _ in broadcaster.published} == {"job_assigned"}
        kinds = {(user, kind) for user, kind, _ in notifier.sent}
        # Withdrawn bidders are not told about the award
        assert kinds == {("x", "bid_accepted"), ("y", "bid_rejected")}

    def test_failing_collaborators_do_not_undo_assignment(self, storage, clock, caplog):
        failing = FailingCollaborator()
        market = Marketplace(storage, SideEffects(failing, failing, failing), clock)
        market.create_account("Poster", Tier.PAID, account_id="poster")
        job = market.post_job("poster", "Paint fence", clock() + timedelta(days=1))
        _bidder(market, "x")
        _bidder(market, "y")
        bid = market.submit_bid(job.id, "x", 80.0)
        market.submit_bid(job.id, "y", 85.0)

        with caplog.at_level(logging.ERROR, logger="marketctl.events"):
            assignment = market.accept_bid(job.id, bid.id, "poster")

        assert assignment.job.status == JobStatus.IN_PROGRESS
        assert market.get_job(job.id).status == JobStatus.IN_PROGRESS
        assert any("conversation" in record.getMessage() for record in caplog.records)


class TestConcurrency:
    def test_racing_acceptances_on_one_job(self, storage, clock, side_effects):
        _fast_retries(storage)
        market = Marketplace(storage, side_effects, clock)
        market.create_account("Poster", Tier.PAID, account_id="poster")
        job = market.post_job("poster", "Move piano", clock() + timedelta(days=1))
        _bidder(market, "x")
        _bidder(market, "y")
        bids = [market.submit_bid(job.id, "x", 300.0), market.submit_bid(job.id, "y", 280.0)]

        barrier = threading.Barrier(2)
        outcomes = []

        def accept(bid):
            coordinator = AssignmentCoordinator(storage, side_effects, clock)
            barrier.wait()
            try:
                outcomes.append(coordinator.accept_bid(job.id, bid.id, "poster"))
            except InvalidStateError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=accept, args=(bid,)) for bid in bids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, InvalidStateError)]
        assert len(winners) == 1
        assert len(losers) == 1

        final = storage.get_job(job.id)
        assert final.invariant_violations() == []
        assert len(final.bids_with_status(BidStatus.ACCEPTED)) == 1
        assert final.accepted_bid_id == winners[0].bid.id

    def test_racing_acceptances_across_jobs_share_one_credit(self, storage, clock, side_effects):
        _fast_retries(storage)
        market = Marketplace(storage, side_effects, clock)
        market.create_account("Poster", Tier.PAID, account_id="poster")
        _bidder(market, "x", credits_used=2)
        jobs = [market.post_job("poster", f"Job {i}", clock() + timedelta(days=1)) for i in range(2)]
        bids = [market.submit_bid(job.id, "x", 40.0) for job in jobs]

        barrier = threading.Barrier(2)
        outcomes = []

        def accept(job, bid):
            coordinator = AssignmentCoordinator(storage, side_effects, clock)
            barrier.wait()
            try:
                outcomes.append(coordinator.accept_bid(job.id, bid.id, "poster"))
            except CapacityExceededError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=accept, args=pair) for pair in zip(jobs, bids)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(isinstance(o, CapacityExceededError) for o in outcomes) == 1
        assert storage.get_account("x").credits_used == 3
        statuses = sorted(storage.get_job(job.id).status.value for job in jobs)
        assert statuses == ["in_progress", "open"]

    def test_held_job_lock_surfaces_transient_error(self, market, open_job, poster, storage):
        _fast_retries(storage, attempts=2)
        _bidder(market, "x")
        bid = market.submit_bid(open_job.id, "x", 100.0)

        with storage.job_lock(open_job.id):
            with pytest.raises(TransientError, match="try again later"):
                market.accept_bid(open_job.id, bid.id, poster.id)

        assert market.get_job(open_job.id).status == JobStatus.OPEN
        assert market.get_account("x").credits_used == 0

    def test_submission_does_not_wait_for_job_lock(self, market, open_job, storage):
        _bidder(market, "x")
        with storage.job_lock(open_job.id):
            bid = market.submit_bid(open_job.id, "x", 100.0)
        assert market.get_job(open_job.id).get_bid(bid.id).status == BidStatus.PENDING
