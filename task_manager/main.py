"""
程序入口：消费 task-status 消息，维护任务状态，并向下游发布 web crawl 请求。

运行：
    python -m task_manager.main
"""

from __future__ import annotations

import logging
import signal

from task_manager.config import Settings, settings
from task_manager.db.memory_store import InMemoryTaskStore
from task_manager.db.mysql import MySqlPool
from task_manager.db.task_store import MySqlTaskStore, TaskStore
from task_manager.errors import InfrastructureError
from task_manager.logging_config import setup_logging
from task_manager.messaging.consumer import PartitionedConsumer, create_consumer
from task_manager.messaging.publisher import WebCrawlRequestPublisher, create_producer
from task_manager.messaging.router import MessageRouter
from task_manager.service import TaskLifecycleService
from task_manager.tracing import TracingAdapter
from task_manager.web.app import create_flask_app, run_flask_in_thread

logger = logging.getLogger(__name__)


def build_store(s: Settings) -> TaskStore:
    if s.store_backend == "memory":
        logger.warning("使用内存存储（STORE_BACKEND=memory），服务重启后数据丢失")
        return InMemoryTaskStore()
    if s.store_backend != "mysql":
        raise ValueError(f"STORE_BACKEND 取值错误，期望 mysql/memory，实际：{s.store_backend!r}")

    pool = MySqlPool(
        host=s.mysql_host,
        port=s.mysql_port,
        user=s.mysql_user,
        password=s.mysql_password,
        database=s.mysql_database,
        pool_size=s.mysql_pool_size,
        timeout_seconds=s.store_timeout_seconds,
    )
    store = MySqlTaskStore(pool)
    # 初始化失败不阻塞常驻：消息处理时会以 InfrastructureError 重试
    try:
        store.init_schema()
    except InfrastructureError:
        logger.exception("MySQL 初始化失败：请检查 MYSQL_* 配置与权限（服务仍会常驻）")
    return store


def main() -> None:
    setup_logging(settings.log_level)
    logger.info(
        "服务启动：task-manager inbound=%s outbound=%s",
        settings.task_status_topic,
        settings.web_crawl_request_topic,
    )

    tracing = TracingAdapter()
    store = build_store(settings)
    publisher = WebCrawlRequestPublisher(
        create_producer(settings),
        topic=settings.web_crawl_request_topic,
        tracing=tracing,
        source=settings.publish_source,
        version=settings.publish_version,
        timeout_seconds=settings.publish_timeout_seconds,
    )
    service = TaskLifecycleService(store, publisher)
    router = MessageRouter(service, tracing)
    consumer = PartitionedConsumer(
        create_consumer(settings),
        topic=settings.task_status_topic,
        router=router,
        poll_timeout_seconds=settings.kafka_poll_timeout_seconds,
        max_pending=settings.consumer_max_pending,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
    )

    def _handle_signal(signum, _frame) -> None:
        logger.info("收到退出信号：%s，准备退出", signum)
        consumer.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if settings.flask_enabled:
        app = create_flask_app(service, store, consumer.status)
        run_flask_in_thread(app, settings.flask_host, settings.flask_port, bool(settings.flask_debug))

    try:
        consumer.run()
    finally:
        publisher.close()
        store.close()
        logger.info("服务已退出")


if __name__ == "__main__":
    main()
