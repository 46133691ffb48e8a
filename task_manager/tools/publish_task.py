"""
命令行工具：向 task-status topic 发布一条任务消息（本地联调用）。

示例：
    python -m task_manager.tools.publish_task new --email a@b.com --query "find X" --url https://x.com
    python -m task_manager.tools.publish_task completed --task-id <uuid> --email a@b.com \
        --query "find X" --url https://x.com --result done
    python -m task_manager.tools.publish_task error --task-id <uuid> --email a@b.com \
        --query "find X" --url https://x.com --error-message timeout

每次发布都开启新的 trace，traceparent 写在消息头里，便于在日志中串联整条链路。
更新消息以 task_id 为 key，保证与该任务的其他消息落在同一分区。
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from confluent_kafka import Producer

from task_manager.config import settings
from task_manager.logging_config import setup_logging
from task_manager.models import TaskStatus
from task_manager.tracing import TracingAdapter

logger = logging.getLogger(__name__)


def build_message(
    status: TaskStatus,
    email: str,
    query: str,
    url: str,
    tracing: TracingAdapter,
    task_id: Optional[str] = None,
    crawl_result: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Tuple[Optional[bytes], bytes, List[Tuple[str, bytes]]]:
    """构造 (key, value, headers)。"""
    trace_ctx = tracing.start_span()
    headers: Dict[str, str] = {
        "status": status.name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "traceparent": trace_ctx.traceparent,
    }
    body: Dict[str, str] = {"user_email": email, "user_query": query, "base_url": url}

    if status is not TaskStatus.NEW:
        if not task_id:
            raise ValueError("COMPLETED/ERROR 消息必须提供 --task-id")
        headers["task_id"] = task_id
    if status is TaskStatus.COMPLETED:
        body["crawl_result"] = crawl_result or ""
    if status is TaskStatus.ERROR:
        body["error_message"] = error_message or ""

    key = task_id.encode("utf-8") if task_id else None
    value = json.dumps(body, ensure_ascii=False).encode("utf-8")
    return key, value, [(k, v.encode("utf-8")) for k, v in headers.items()]


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="发布 task-status 消息")
    parser.add_argument("status", choices=["new", "completed", "error"])
    parser.add_argument("--email", required=True)
    parser.add_argument("--query", required=True)
    parser.add_argument("--url", required=True)
    parser.add_argument("--task-id")
    parser.add_argument("--result", help="COMPLETED 的 crawl_result")
    parser.add_argument("--error-message", help="ERROR 的 error_message")
    parser.add_argument("--topic", default=settings.task_status_topic)
    parser.add_argument("--timeout", type=float, default=10.0)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging(settings.log_level)
    args = _parse_args(argv)

    try:
        key, value, headers = build_message(
            TaskStatus.parse(args.status),
            args.email,
            args.query,
            args.url,
            TracingAdapter(),
            task_id=args.task_id,
            crawl_result=args.result,
            error_message=args.error_message,
        )
    except ValueError as e:
        logger.error("参数错误：%s", e)
        return 2

    errors: List[str] = []

    def _on_delivery(err, msg) -> None:
        if err is not None:
            errors.append(str(err))
        else:
            logger.info("消息已发布：topic=%s partition=%s offset=%s", msg.topic(), msg.partition(), msg.offset())

    producer = Producer(settings.kafka_common_config())
    producer.produce(args.topic, key=key, value=value, headers=headers, on_delivery=_on_delivery)
    remaining = producer.flush(args.timeout)
    if remaining or errors:
        logger.error("消息发布失败：remaining=%s errors=%s", remaining, errors)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
