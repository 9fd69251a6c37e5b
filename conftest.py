"""Shared fixtures for the marketctl test suite."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from marketctl.events import SideEffects
from marketctl.market import Marketplace
from marketctl.models import Tier
from marketctl.storage import Storage


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, kind, payload):
        self.sent.append((user_id, kind, payload))


class RecordingBroadcaster:
    def __init__(self):
        self.published = []

    def publish(self, channel, event_name, payload):
        self.published.append((channel, event_name, payload))


class RecordingConversations:
    def __init__(self):
        self.created = []

    def create_job_conversation(self, job_id, poster_id, bidder_id):
        self.created.append((job_id, poster_id, bidder_id))


@pytest.fixture
def storage(tmp_path):
    return Storage(str(tmp_path / "data"))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def conversations():
    return RecordingConversations()


@pytest.fixture
def side_effects(notifier, broadcaster, conversations):
    return SideEffects(notifier, broadcaster, conversations)


@pytest.fixture
def market(storage, side_effects, clock):
    return Marketplace(storage, side_effects, clock)


@pytest.fixture
def poster(market):
    return market.create_account("Priya", Tier.PAID, account_id="poster")


@pytest.fixture
def open_job(market, poster, clock):
    return market.post_job(poster.id, "Fix kitchen sink", clock() + timedelta(days=3),
                           description="Leaking under the counter")
