"""
MySQL 连接层（PyMySQL）。

设计目标：
- 连接复用（简易连接池，所有分区 worker 共享）
- 每个连接都带 connect/read/write 超时，超时由上层转换为基础设施错误
- 会话时区固定为 UTC，CURRENT_TIMESTAMP 与应用写入的时间一致
"""

from __future__ import annotations

import logging
import queue
from contextlib import contextmanager
from typing import Iterator, Optional

import pymysql
from pymysql.connections import Connection
from pymysql.cursors import DictCursor

logger = logging.getLogger(__name__)


class MySqlPool:
    """
    简易连接池。

    说明：
    - 为了减少依赖，这里不引入第三方连接池库；
    - 连接在首次使用时创建，服务启动阶段数据库短暂不可用不会直接崩溃；
    - 池耗尽时 checkout 等待 timeout 秒，超时抛 queue.Empty。
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        pool_size: int = 5,
        timeout_seconds: int = 10,
    ) -> None:
        self._dsn = dict(
            host=host,
            port=port,
            user=user,
            password=password,
            database=database,
            charset="utf8mb4",
            cursorclass=DictCursor,
            autocommit=False,
            connect_timeout=timeout_seconds,
            read_timeout=timeout_seconds,
            write_timeout=timeout_seconds,
            init_command="SET time_zone = '+00:00'",
        )
        self._timeout = timeout_seconds
        size = max(pool_size, 1)
        # None 占位表示“可新建连接”的名额
        self._pool: "queue.Queue[Optional[Connection]]" = queue.Queue(maxsize=size)
        for _ in range(size):
            self._pool.put(None)

    def _new_conn(self) -> Connection:
        return pymysql.connect(**self._dsn)

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """借出一个连接；块正常结束则 commit，异常则 rollback 后继续抛出。"""
        slot: Optional[Connection] = self._pool.get(timeout=self._timeout)
        conn: Optional[Connection] = None
        try:
            conn = slot if slot is not None else self._new_conn()
            if slot is not None:
                # 避免复用到已断开的连接
                try:
                    conn.ping(reconnect=True)
                except pymysql.MySQLError:
                    logger.warning("MySQL ping 失败，重建连接")
                    conn.close()
                    conn = self._new_conn()
            yield conn
            conn.commit()
        except Exception:
            if conn is not None:
                try:
                    conn.rollback()
                except pymysql.MySQLError:
                    logger.exception("MySQL rollback 失败，丢弃该连接")
                    _close_quietly(conn)
                    conn = None
            raise
        finally:
            self._pool.put(conn)

    def close(self) -> None:
        """关闭池中所有空闲连接。"""
        while True:
            try:
                conn = self._pool.get_nowait()
            except queue.Empty:
                return
            if conn is not None:
                _close_quietly(conn)


def _close_quietly(conn: Connection) -> None:
    try:
        conn.close()
    except pymysql.MySQLError:
        logger.debug("关闭 MySQL 连接失败", exc_info=True)


def init_schema(pool: MySqlPool, schema_sql: str) -> None:
    """初始化表结构（按分号切分逐条执行）。"""
    statements = [s.strip() for s in schema_sql.split(";") if s.strip()]
    with pool.connection() as conn:
        with conn.cursor() as cur:
            for stmt in statements:
                cur.execute(stmt)
    logger.info("MySQL schema 初始化完成：statements=%s", len(statements))
