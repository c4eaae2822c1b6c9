import pytest

from mediaqueue.routes.jobs import limiter
from mediaqueue.services.clock import ManualClock
from mediaqueue.services.events import EventBus
from mediaqueue.services.handlers import HandlerRegistry
from mediaqueue.services.job_manager import JobQueueManager, QueueLimits
from mediaqueue.services.snapshot_store import MemorySnapshotStore
from mediaqueue.utils import metrics


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    limiter.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return MemorySnapshotStore(clock=clock)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def limits():
    return QueueLimits()


@pytest.fixture
def queue(store, clock, bus, limits):
    return JobQueueManager(store, clock=clock, events=bus, limits=limits)


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def recorded(bus):
    """Every event emitted on the bus, in order"""
    events = []
    bus.subscribe("*", events.append)
    return events
