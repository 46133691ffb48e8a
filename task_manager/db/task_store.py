"""
任务持久化层。

唯一的状态迁移原语是条件更新：
    UPDATE ... WHERE id = ? AND status = 'new'
受影响行数为 0 即“已被迁移或不存在”，并发重复消息下也不会出现先读后写的竞态。
不要把它改成 SELECT + UPDATE。
"""

from __future__ import annotations

import logging
import queue
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Optional, Protocol

import pymysql

from task_manager.db.mysql import MySqlPool, init_schema
from task_manager.db.schema_tasks import TASKS_SCHEMA
from task_manager.errors import InfrastructureError
from task_manager.messaging.validators import BaseTaskBody
from task_manager.models import Task, TaskStatus, can_transition

logger = logging.getLogger(__name__)

# 迁移时允许写入的附加列（对应目标状态）
TRANSITION_COLUMNS: Dict[TaskStatus, str] = {
    TaskStatus.COMPLETED: "crawl_result",
    TaskStatus.ERROR: "error_message",
}

_COLUMNS = (
    "id, user_email, user_query, base_url, status, crawl_result, error_message, "
    "received_at, finished_at, created_at, updated_at"
)


def to_utc_naive(value: datetime) -> datetime:
    """DATETIME 列不带时区，统一按 UTC 存储。"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class TaskStore(Protocol):
    """任务存储接口（MySQL / 内存两种实现）。"""

    def create(self, body: BaseTaskBody, received_at: datetime) -> Task: ...

    def transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        extra: Mapping[str, str],
        from_status: TaskStatus = TaskStatus.NEW,
    ) -> Optional[Task]: ...

    def get(self, task_id: str) -> Optional[Task]: ...

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        user_email: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Task]: ...

    def count_by_status(self) -> Dict[TaskStatus, int]: ...

    def count_created_since(self, hours: int) -> Dict[TaskStatus, int]: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


def check_transition(
    from_status: TaskStatus, to_status: TaskStatus, extra: Mapping[str, str]
) -> Dict[str, str]:
    """校验迁移是否在状态机内，且只写目标状态对应的那一列。"""
    if not can_transition(from_status, to_status):
        raise ValueError(f"不允许的状态迁移：{from_status.value} -> {to_status.value}")
    column = TRANSITION_COLUMNS[to_status]
    unknown = set(extra) - {column}
    if unknown:
        raise ValueError(f"迁移到 {to_status.value} 不允许写入字段：{sorted(unknown)}")
    return {column: extra.get(column)}


class MySqlTaskStore:
    """基于 MySQL 的任务存储。"""

    def __init__(self, db_pool: MySqlPool):
        self._db = db_pool

    def init_schema(self) -> None:
        with self._session("init_schema"):
            init_schema(self._db, TASKS_SCHEMA)

    @contextmanager
    def _session(self, operation: str) -> Iterator[None]:
        """把驱动层/连接池异常统一转换为 InfrastructureError。"""
        try:
            yield
        except queue.Empty as e:
            raise InfrastructureError(f"MySQL 连接池获取超时：operation={operation}") from e
        except pymysql.MySQLError as e:
            raise InfrastructureError(f"MySQL 操作失败：operation={operation} error={e}") from e

    def create(self, body: BaseTaskBody, received_at: datetime) -> Task:
        """
        插入新任务（status=new），id 由数据库列默认值生成。

        同一事务内用 LAST_INSERT_ID() 回读，拿到的一定是本连接刚插入的行。
        """
        with self._session("create"):
            with self._db.connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(
                        """
                        INSERT INTO web_crawl_tasks (user_email, user_query, base_url, status, received_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (
                            body.user_email,
                            body.user_query,
                            body.base_url,
                            TaskStatus.NEW.value,
                            to_utc_naive(received_at),
                        ),
                    )
                    cursor.execute(f"SELECT {_COLUMNS} FROM web_crawl_tasks WHERE seq = LAST_INSERT_ID()")
                    row = cursor.fetchone()
        if row is None:
            raise InfrastructureError("插入任务后回读失败")
        return Task.from_row(row)

    def transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        extra: Mapping[str, str],
        from_status: TaskStatus = TaskStatus.NEW,
    ) -> Optional[Task]:
        """
        条件更新：仅当任务当前处于 from_status 时迁移到 to_status。

        Returns:
            更新后的任务；受影响行数为 0 时返回 None（不存在或已迁移，由调用方区分）
        """
        values = check_transition(from_status, to_status, extra)
        column, value = next(iter(values.items()))

        with self._session("transition"):
            with self._db.connection() as conn:
                with conn.cursor() as cursor:
                    affected = cursor.execute(
                        f"""
                        UPDATE web_crawl_tasks
                        SET status = %s, {column} = %s, finished_at = CURRENT_TIMESTAMP(3)
                        WHERE id = %s AND status = %s
                        """,
                        (to_status.value, value, task_id, from_status.value),
                    )
                    if not affected:
                        return None
                    # 行锁持有到 commit，这里读到的就是本语句写入的结果
                    cursor.execute(f"SELECT {_COLUMNS} FROM web_crawl_tasks WHERE id = %s", (task_id,))
                    row = cursor.fetchone()
        if row is None:
            raise InfrastructureError(f"迁移后回读失败：task_id={task_id}")
        return Task.from_row(row)

    def get(self, task_id: str) -> Optional[Task]:
        with self._session("get"):
            with self._db.connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(f"SELECT {_COLUMNS} FROM web_crawl_tasks WHERE id = %s", (task_id,))
                    row = cursor.fetchone()
        return Task.from_row(row) if row else None

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        user_email: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Task]:
        """按创建时间倒序列出任务，可按状态/邮箱过滤。"""
        where: List[str] = []
        params: List[object] = []
        if status is not None:
            where.append("status = %s")
            params.append(status.value)
        if user_email:
            where.append("user_email = %s")
            params.append(user_email)

        sql = f"SELECT {_COLUMNS} FROM web_crawl_tasks"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, seq DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])

        with self._session("list_tasks"):
            with self._db.connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(sql, tuple(params))
                    rows = cursor.fetchall()
        return [Task.from_row(r) for r in rows or []]

    def count_by_status(self) -> Dict[TaskStatus, int]:
        with self._session("count_by_status"):
            with self._db.connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT status, COUNT(*) AS cnt FROM web_crawl_tasks GROUP BY status")
                    rows = cursor.fetchall()
        return _fill_counts(rows)

    def count_created_since(self, hours: int) -> Dict[TaskStatus, int]:
        """最近 hours 小时内创建的任务数（按当前状态分组）。"""
        with self._session("count_created_since"):
            with self._db.connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(
                        """
                        SELECT status, COUNT(*) AS cnt FROM web_crawl_tasks
                        WHERE created_at >= CURRENT_TIMESTAMP(3) - INTERVAL %s HOUR
                        GROUP BY status
                        """,
                        (hours,),
                    )
                    rows = cursor.fetchall()
        return _fill_counts(rows)

    def ping(self) -> bool:
        try:
            with self._session("ping"):
                with self._db.connection() as conn:
                    with conn.cursor() as cursor:
                        cursor.execute("SELECT 1")
                        cursor.fetchone()
            return True
        except InfrastructureError:
            logger.warning("MySQL 健康检查失败", exc_info=True)
            return False

    def close(self) -> None:
        self._db.close()


def _fill_counts(rows) -> Dict[TaskStatus, int]:
    counts = {s: 0 for s in TaskStatus}
    for row in rows or []:
        counts[TaskStatus(row["status"])] = int(row["cnt"])
    return counts
