from __future__ import annotations

import logging
from datetime import datetime

import pytest

from helpers import FakeProducer, base_body
from task_manager.db.memory_store import InMemoryTaskStore
from task_manager.errors import ConflictError, InfrastructureError, NotFoundError
from task_manager.messaging.publisher import WebCrawlRequestPublisher
from task_manager.messaging.validators import NewTaskBody
from task_manager.models import TaskStatus
from task_manager.service import TaskLifecycleService
from task_manager.tracing import TracingAdapter

MISSING_ID = "00000000-0000-4000-8000-000000000000"


def test_create_task_persists_and_publishes(
    service: TaskLifecycleService, producer: FakeProducer, tracing: TracingAdapter, received_at: datetime
) -> None:
    task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())

    assert task.status is TaskStatus.NEW
    assert service.get_task(task.id) == task
    assert len(producer.produced) == 1
    assert producer.produced[0]["key"] == task.id.encode("utf-8")
    assert producer.last_headers()["task_id"] == task.id


def test_complete_task(service: TaskLifecycleService, tracing: TracingAdapter, received_at: datetime) -> None:
    task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())

    done = service.complete_task(task.id, "done", tracing.start_span())

    assert done.status is TaskStatus.COMPLETED
    assert done.crawl_result == "done"
    assert service.get_task(task.id).status is TaskStatus.COMPLETED


def test_replayed_completion_is_a_conflict(
    service: TaskLifecycleService, tracing: TracingAdapter, received_at: datetime
) -> None:
    task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())
    done = service.complete_task(task.id, "done", tracing.start_span())

    with pytest.raises(ConflictError) as exc_info:
        service.complete_task(task.id, "done again", tracing.start_span())

    assert exc_info.value.current_status == "completed"
    assert exc_info.value.requested_status == "completed"
    assert service.get_task(task.id) == done


def test_error_after_completion_is_a_conflict(
    service: TaskLifecycleService, tracing: TracingAdapter, received_at: datetime
) -> None:
    task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())
    service.complete_task(task.id, "done", tracing.start_span())

    with pytest.raises(ConflictError):
        service.error_task(task.id, "boom", tracing.start_span())
    assert service.get_task(task.id).error_message is None


def test_error_task(service: TaskLifecycleService, tracing: TracingAdapter, received_at: datetime) -> None:
    task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())
    failed = service.error_task(task.id, "timeout", tracing.start_span())
    assert failed.status is TaskStatus.ERROR
    assert failed.error_message == "timeout"
    assert failed.crawl_result is None


def test_update_unknown_task_is_not_found(service: TaskLifecycleService, tracing: TracingAdapter) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        service.error_task(MISSING_ID, "x", tracing.start_span())
    assert exc_info.value.task_id == MISSING_ID


def test_missed_update_on_non_terminal_task_is_retried(
    publisher, tracing: TracingAdapter, received_at: datetime
) -> None:
    class _Lagging(InMemoryTaskStore):
        def transition(self, task_id, to_status, extra, from_status=TaskStatus.NEW):
            return None

    lagging = _Lagging()
    service = TaskLifecycleService(lagging, publisher)
    task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())

    with pytest.raises(InfrastructureError):
        service.complete_task(task.id, "done", tracing.start_span())
    assert lagging.get(task.id).status is TaskStatus.NEW


def test_publish_failure_keeps_task(
    store: InMemoryTaskStore, tracing: TracingAdapter, received_at: datetime, caplog
) -> None:
    publisher = WebCrawlRequestPublisher(FakeProducer("fail"), "requests-web-crawl", tracing, timeout_seconds=0.2)
    service = TaskLifecycleService(store, publisher)

    with caplog.at_level(logging.WARNING, logger="task_manager.service"):
        task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())

    assert store.get(task.id) == task
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert task.id in warnings[0].getMessage()
    assert "requests-web-crawl" in warnings[0].getMessage()


def test_unexpected_publisher_exception_keeps_task(
    store: InMemoryTaskStore, tracing: TracingAdapter, received_at: datetime, caplog
) -> None:
    class _Broken:
        topic = "requests-web-crawl"

        def publish(self, *args, **kwargs):
            raise RuntimeError("producer closed")

    service = TaskLifecycleService(store, _Broken())
    with caplog.at_level(logging.WARNING, logger="task_manager.service"):
        task = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())

    assert store.get(task.id) is not None
    assert "RuntimeError: producer closed" in caplog.text


def test_store_failure_propagates(tracing: TracingAdapter, publisher, received_at: datetime) -> None:
    class _Down(InMemoryTaskStore):
        def create(self, body, received_at):
            raise InfrastructureError("MySQL 连接池获取超时")

    service = TaskLifecycleService(_Down(), publisher)
    with pytest.raises(InfrastructureError):
        service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())


def test_list_and_metrics(service: TaskLifecycleService, tracing: TracingAdapter, received_at: datetime) -> None:
    a = service.create_task(NewTaskBody(**base_body()), received_at, tracing.start_span())
    service.create_task(NewTaskBody(**base_body(user_email="c@d.com")), received_at, tracing.start_span())
    service.complete_task(a.id, "done", tracing.start_span())

    assert [t.id for t in service.list_tasks(status=TaskStatus.COMPLETED)] == [a.id]
    assert len(service.list_tasks(user_email="c@d.com")) == 1

    metrics = service.get_metrics(hours=1)
    assert metrics["total"] == 2
    assert metrics["by_status"] == {"new": 1, "completed": 1, "error": 0}
    assert metrics["window_hours"] == 1
    assert metrics["created_in_window"] == 2
