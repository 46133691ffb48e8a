"""
进程内任务存储（线程安全）。

与 MySqlTaskStore 同一契约：id 由存储生成，迁移是“检查 + 写入”在同一把锁内的原子操作。
用于测试和 STORE_BACKEND=memory 的本地联调，服务重启后数据丢失。
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional

from task_manager.db.task_store import check_transition, to_utc_naive
from task_manager.messaging.validators import BaseTaskBody
from task_manager.models import Task, TaskStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InMemoryTaskStore:
    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()

    def create(self, body: BaseTaskBody, received_at: datetime) -> Task:
        now = _utcnow()
        with self._lock:
            task_id = str(uuid.uuid4())
            while task_id in self._tasks:
                task_id = str(uuid.uuid4())
            task = Task(
                id=task_id,
                user_email=body.user_email,
                user_query=body.user_query,
                base_url=body.base_url,
                status=TaskStatus.NEW,
                received_at=to_utc_naive(received_at),
                created_at=now,
                updated_at=now,
            )
            self._tasks[task_id] = task
        logger.debug("任务已写入内存存储：task_id=%s", task_id)
        return task

    def transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        extra: Mapping[str, str],
        from_status: TaskStatus = TaskStatus.NEW,
    ) -> Optional[Task]:
        values = check_transition(from_status, to_status, extra)
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != from_status:
                return None
            now = _utcnow()
            updated = replace(task, status=to_status, updated_at=now, finished_at=now, **values)
            self._tasks[task_id] = updated
            return updated

    def get(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        user_email: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Task]:
        with self._lock:
            tasks = list(self._tasks.values())
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        if user_email:
            tasks = [t for t in tasks if t.user_email == user_email]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks[offset:offset + limit]

    def count_by_status(self) -> Dict[TaskStatus, int]:
        counts = {s: 0 for s in TaskStatus}
        with self._lock:
            for task in self._tasks.values():
                counts[task.status] += 1
        return counts

    def count_created_since(self, hours: int) -> Dict[TaskStatus, int]:
        since = _utcnow() - timedelta(hours=hours)
        counts = {s: 0 for s in TaskStatus}
        with self._lock:
            for task in self._tasks.values():
                if task.created_at >= since:
                    counts[task.status] += 1
        return counts

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass
