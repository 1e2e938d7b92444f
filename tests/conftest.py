import threading

import pytest

from botjobs.config import EngineConfig
from botjobs.exceptions import ActionFailed
from botjobs.registry import ActionRegistry
from botjobs.storage import Storage


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def storage(db_path):
    return Storage(db_path)


@pytest.fixture
def config():
    return EngineConfig(batch_size=3, max_attempts=3, job_timeout=2.0, stale_after=60.0, concurrency=4)


@pytest.fixture
def calls():
    """Payloads seen by the test actions, in call order."""
    return []


@pytest.fixture
def registry(calls):
    """
    Actions used across the tests:
      ok      - records the payload and succeeds
      boom    - raises RuntimeError
      refuse  - raises ActionFailed
    """
    lock = threading.Lock()
    registry = ActionRegistry()

    @registry.action("ok")
    def ok(payload):
        with lock:
            calls.append(payload)

    @registry.action("boom")
    def boom(payload):
        raise RuntimeError("kaboom")

    @registry.action("refuse")
    def refuse(payload):
        raise ActionFailed("not allowed")

    return registry
