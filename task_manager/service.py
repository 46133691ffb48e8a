"""
任务生命周期服务：校验通过后的业务编排（持久化 -> 下游发布）。

状态机只有两步：NEW 由 create_task 创建；NEW -> COMPLETED / NEW -> ERROR 各只能成功一次。
条件更新未命中时再查一次，区分“任务不存在”（NotFoundError）与“已是终态”（ConflictError）。
两者都是至少一次投递下的正常现象，由 router 记录 warning 并跳过，不重试。
回查仍是 NEW 说明与并发写入交错，按 InfrastructureError 抛出，由消费层重新投递。
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Union

from task_manager.db.task_store import TaskStore
from task_manager.errors import ConflictError, InfrastructureError, NotFoundError, PublishError
from task_manager.messaging.publisher import PublishResult
from task_manager.messaging.validators import BaseTaskBody
from task_manager.models import Task, TaskStatus
from task_manager.tracing import TraceContext

logger = logging.getLogger(__name__)

LogLike = Union[logging.Logger, logging.LoggerAdapter]


class Publisher(Protocol):
    topic: str

    def publish(
        self, task_id: str, body: BaseTaskBody, trace_ctx: TraceContext, log: Optional[LogLike] = None
    ) -> PublishResult: ...


class TaskLifecycleService:
    def __init__(self, store: TaskStore, publisher: Publisher):
        self._store = store
        self._publisher = publisher

    # ========== 写操作（消息驱动） ==========

    def create_task(
        self,
        body: BaseTaskBody,
        received_at: datetime,
        trace_ctx: TraceContext,
        log: Optional[LogLike] = None,
    ) -> Task:
        """
        创建任务并触发下游 web crawl 请求。

        下游发布失败只记录 PublishError（warning），任务照常返回，不回滚。

        Raises:
            InfrastructureError: 存储不可用/超时（消息需要重新投递）
        """
        log = log or logger
        task = self._store.create(body, received_at)
        log.info("任务已创建：task_id=%s status=%s", task.id, task.status.value)

        result = self._publish(task, body, trace_ctx, log)
        if not result.success:
            error = PublishError(task.id, result.topic, result.error)
            log.warning("%s（任务已保留，需人工重放）", error)
        return task

    def _publish(self, task: Task, body: BaseTaskBody, trace_ctx: TraceContext, log: LogLike) -> PublishResult:
        try:
            return self._publisher.publish(task.id, body, trace_ctx, log)
        except Exception as e:
            # 发布方任何意外都不能影响已提交的创建
            log.debug("下游发布异常：task_id=%s", task.id, exc_info=True)
            return PublishResult(success=False, topic=self._publisher.topic, error=f"{type(e).__name__}: {e}")

    def complete_task(
        self,
        task_id: str,
        crawl_result: str,
        trace_ctx: TraceContext,
        log: Optional[LogLike] = None,
    ) -> Task:
        """NEW -> COMPLETED。"""
        return self._transition(task_id, TaskStatus.COMPLETED, {"crawl_result": crawl_result}, log or logger)

    def error_task(
        self,
        task_id: str,
        error_message: str,
        trace_ctx: TraceContext,
        log: Optional[LogLike] = None,
    ) -> Task:
        """NEW -> ERROR。"""
        return self._transition(task_id, TaskStatus.ERROR, {"error_message": error_message}, log or logger)

    def _transition(self, task_id: str, target: TaskStatus, extra: Dict[str, str], log: LogLike) -> Task:
        task = self._store.transition(task_id, target, extra, from_status=TaskStatus.NEW)
        if task is not None:
            log.info("任务状态已更新：task_id=%s status=%s", task.id, task.status.value)
            return task

        current = self._store.get(task_id)
        if current is None:
            raise NotFoundError(task_id)
        if not current.status.is_terminal:
            # 条件更新未命中但回读仍是 NEW：与并发写入交错，按基础设施错误重新投递
            raise InfrastructureError(f"状态迁移未生效：task_id={task_id} status={current.status.value}")
        raise ConflictError(task_id, current.status.value, target.value)

    # ========== 只读查询（Web API） ==========

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._store.get(task_id)

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        user_email: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Task]:
        return self._store.list_tasks(status=status, user_email=user_email, limit=limit, offset=offset)

    def get_metrics(self, hours: int = 24) -> dict:
        """任务统计：全量按状态计数 + 最近 hours 小时内创建的任务计数。"""
        totals = self._store.count_by_status()
        recent = self._store.count_created_since(hours)
        return {
            "total": sum(totals.values()),
            "by_status": {s.value: n for s, n in totals.items()},
            "window_hours": hours,
            "created_in_window": sum(recent.values()),
            "created_in_window_by_status": {s.value: n for s, n in recent.items()},
        }
