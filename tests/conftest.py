from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from helpers import FakeProducer
from task_manager.db.memory_store import InMemoryTaskStore
from task_manager.messaging.publisher import WebCrawlRequestPublisher
from task_manager.messaging.router import MessageRouter
from task_manager.service import TaskLifecycleService
from task_manager.tracing import TracingAdapter


@pytest.fixture
def tracing() -> TracingAdapter:
    return TracingAdapter()


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def producer() -> FakeProducer:
    return FakeProducer()


@pytest.fixture
def publisher(producer: FakeProducer, tracing: TracingAdapter) -> WebCrawlRequestPublisher:
    return WebCrawlRequestPublisher(
        producer,
        topic="requests-web-crawl",
        tracing=tracing,
        source="task-manager",
        version="1.0.0",
        timeout_seconds=0.2,
    )


@pytest.fixture
def service(store: InMemoryTaskStore, publisher: WebCrawlRequestPublisher) -> TaskLifecycleService:
    return TaskLifecycleService(store, publisher)


@pytest.fixture
def router(service: TaskLifecycleService, tracing: TracingAdapter) -> MessageRouter:
    return MessageRouter(service, tracing)


@pytest.fixture
def received_at() -> datetime:
    return datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def quiet_logger() -> logging.Logger:
    return logging.getLogger("tests")
