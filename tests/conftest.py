"""Shared test fixtures for Anek Bot."""
import asyncio
import random
import time

import pytest
import pytest_asyncio

from ingestion.fingerprint import fingerprint_text
from models.schemas import JokeCandidate, JokeSource


def make_candidate(content: str = "Why?", source: JokeSource = JokeSource.REDDIT,
                   source_url: str = "u") -> JokeCandidate:
    return JokeCandidate(
        content=content,
        source=source,
        source_url=source_url,
        content_hash=fingerprint_text(content),
    )


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll an async predicate until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(interval)
    return await predicate()


@pytest.fixture
def candidate_factory():
    return make_candidate


@pytest.fixture
def wait_until():
    return eventually


@pytest_asyncio.fixture
async def memory_queue():
    from job_queue.message_queue import InMemoryMessageQueue
    queue = InMemoryMessageQueue(visibility_timeout=30.0, max_deliveries=10)
    await queue.connect()
    yield queue
    await queue.close()


@pytest.fixture
def memory_store():
    from database.store_memory import InMemoryJokeStore
    return InMemoryJokeStore(rng=random.Random(7))


@pytest.fixture
def stop_event() -> asyncio.Event:
    return asyncio.Event()


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Factories cache module-level instances; isolate every test."""
    from config import settings as settings_module
    from database.store_factory import reset_store
    from job_queue.message_queue import reset_message_queue
    yield
    reset_store()
    reset_message_queue()
    settings_module._settings = None
