"""Root pytest configuration."""

from contextlib import ExitStack
from pathlib import Path
from unittest.mock import patch

import pytest
from dotenv import load_dotenv

# Load environment variables before tests run
_root = Path(__file__).parent
load_dotenv(_root / ".env")
load_dotenv(_root / ".env.local", override=True)


@pytest.fixture(scope="session")
def event_loop_policy():
    """Use default event loop policy for all async tests."""
    import asyncio

    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test fresh counters, senders, sources and semaphores."""
    import school_notify.counters as counters
    import school_notify.health as health
    import school_notify.notifications.channels as channels
    import school_notify.notifications.dispatcher as dispatcher
    import school_notify.rate_limit as rate_limit
    import school_notify.reminders.source as source

    def _reset():
        counters._store = None
        health._monitor = None
        rate_limit._limiter = None
        channels._senders = None
        source._source = None
        dispatcher._semaphores.clear()

    _reset()
    yield
    _reset()


@pytest.fixture
def fake_db():
    """
    In-memory notification tables.

    Patches the store/dedup query functions and get_connection /
    get_transaction for the duration of the test.
    """
    from school_notify.tests.fakes import FakeDatabase

    db = FakeDatabase()
    with ExitStack() as stack:
        for target, replacement in db.patches():
            stack.enter_context(patch(target, replacement))
        yield db


@pytest.fixture
def mock_scheduler():
    """A MagicMock in place of the APScheduler instance."""
    from unittest.mock import MagicMock

    scheduler = MagicMock()
    scheduler.get_jobs.return_value = []
    scheduler.get_job.return_value = None
    with patch("school_notify.notifications.scheduler._scheduler", scheduler):
        yield scheduler
