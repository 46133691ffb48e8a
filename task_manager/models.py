"""
领域模型：任务状态与任务实体。

状态机：
    NEW --> COMPLETED
    NEW --> ERROR
COMPLETED / ERROR 为终态，不允许再迁移。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TaskStatus(Enum):
    """任务状态枚举（取值与数据库保持一致）。"""
    NEW = "new"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR)

    @classmethod
    def parse(cls, raw: Any) -> "TaskStatus":
        """
        解析消息头中的 status（大小写不敏感，"NEW" 与 "new" 等价）。

        Raises:
            ValueError: 取值不在枚举内
        """
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, str):
            raise ValueError(f"status 必须是字符串，实际：{raw!r}")
        value = raw.strip().lower()
        for member in cls:
            if member.value == value:
                return member
        raise ValueError(f"不支持的 status：{raw!r}，可选值：NEW/COMPLETED/ERROR")


# 允许的迁移：from -> {to}
ALLOWED_TRANSITIONS = {
    TaskStatus.NEW: {TaskStatus.COMPLETED, TaskStatus.ERROR},
    TaskStatus.COMPLETED: set(),
    TaskStatus.ERROR: set(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


@dataclass(frozen=True)
class Task:
    """任务实体（与 web_crawl_tasks 表一一对应）。"""
    id: str
    user_email: str
    user_query: str
    base_url: str
    status: TaskStatus
    received_at: datetime
    created_at: datetime
    updated_at: datetime
    crawl_result: Optional[str] = None
    error_message: Optional[str] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_email": self.user_email,
            "user_query": self.user_query,
            "base_url": self.base_url,
            "status": self.status.value,
            "received_at": self.received_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "crawl_result": self.crawl_result,
            "error_message": self.error_message,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Task":
        """从 DictCursor 返回的行构造实体。"""
        return cls(
            id=row["id"],
            user_email=row["user_email"],
            user_query=row["user_query"],
            base_url=row["base_url"],
            status=TaskStatus(row["status"]),
            received_at=row["received_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            crawl_result=row.get("crawl_result"),
            error_message=row.get("error_message"),
            finished_at=row.get("finished_at"),
        )
