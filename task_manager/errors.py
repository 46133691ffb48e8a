"""
错误分类。

处理策略（由 MessageRouter 统一落地）：
- ValidationError：消息格式错误，跳过并提交 offset，不重试
- NotFoundError：更新消息引用了不存在的任务，跳过，warning
- ConflictError：任务已是终态（重复/乱序投递），跳过，warning
- InfrastructureError：存储或消息总线不可用/超时，不提交 offset，触发重新投递
- PublishError：任务已创建但下游发布失败，warning，不影响本条消息的处理结果
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class TaskManagerError(Exception):
    """本服务所有业务/基础设施错误的基类。"""


@dataclass(frozen=True)
class FieldError:
    """单个字段的校验错误。"""
    location: str  # headers / body
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"location": self.location, "field": self.field, "message": self.message}

    def __str__(self) -> str:
        return f"{self.location}.{self.field}: {self.message}"


class ValidationError(TaskManagerError):
    def __init__(self, errors: List[FieldError]):
        self.errors = list(errors)
        super().__init__("消息校验失败：" + "; ".join(str(e) for e in self.errors))


class NotFoundError(TaskManagerError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"任务不存在：task_id={task_id}")


class ConflictError(TaskManagerError):
    """请求的状态迁移不合法（通常是重复投递导致的二次迁移）。"""

    def __init__(self, task_id: str, current_status: str, requested_status: str):
        self.task_id = task_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"任务状态冲突：task_id={task_id} current={current_status} requested={requested_status}"
        )


class InfrastructureError(TaskManagerError):
    """存储/总线不可用或超时；调用方应让消息重新投递。"""


class PublishError(TaskManagerError):
    def __init__(self, task_id: str, topic: str, reason: Optional[str] = None):
        self.task_id = task_id
        self.topic = topic
        self.reason = reason
        super().__init__(f"下游发布失败：task_id={task_id} topic={topic} error={reason}")
