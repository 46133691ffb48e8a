"""
下游发布：任务创建成功后发出 web crawl 请求。

- key = task_id，保证同一任务的后续消息落在同一分区
- header 写入延续的 traceparent/tracestate（同一 trace，新 span）
- 发布失败只返回 success=False，由生命周期服务记录 PublishError（附 task_id/topic/error 便于人工重放）；
  不在这里自动重试，也不回滚已创建的任务
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from confluent_kafka import KafkaException, Producer
from pydantic import ValidationError as PydanticValidationError

from task_manager.config import Settings
from task_manager.messaging.validators import BaseTaskBody, WebCrawlRequestBody, WebCrawlRequestHeaders
from task_manager.tracing import TraceContext, TracingAdapter

logger = logging.getLogger(__name__)

LogLike = Union[logging.Logger, logging.LoggerAdapter]


@dataclass(frozen=True)
class PublishResult:
    success: bool
    topic: str
    error: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None


def create_producer(settings: Settings) -> Producer:
    """创建共享的 Kafka Producer（所有分区 worker 共用一个）。"""
    timeout_ms = int(settings.publish_timeout_seconds * 1000)
    conf = settings.kafka_common_config()
    conf.update({
        "acks": "all",
        "enable.idempotence": True,
        "message.timeout.ms": timeout_ms,
        "request.timeout.ms": min(timeout_ms, 30000),
        "compression.type": "snappy",
    })
    return Producer(conf)


class _Delivery:
    """单条消息的投递回执（回调可能在任意调用 poll 的线程里执行）。"""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.error: Optional[str] = None
        self.partition: Optional[int] = None
        self.offset: Optional[int] = None

    def __call__(self, err: Any, msg: Any) -> None:
        if err is not None:
            self.error = str(err)
        else:
            self.partition = msg.partition()
            self.offset = msg.offset()
        self.done.set()


class WebCrawlRequestPublisher:
    def __init__(
        self,
        producer: Producer,
        topic: str,
        tracing: TracingAdapter,
        source: str = "task-manager",
        version: str = "1.0.0",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._producer = producer
        self._topic = topic
        self._tracing = tracing
        self._source = source
        self._version = version
        self._timeout = timeout_seconds

    @property
    def topic(self) -> str:
        return self._topic

    def build_message(
        self, task_id: str, body: BaseTaskBody, trace_ctx: TraceContext
    ) -> Tuple[bytes, bytes, List[Tuple[str, bytes]]]:
        """
        构造出站消息 (key, value, headers)。

        Raises:
            pydantic.ValidationError: 出站 header/body 不符合下游约定
        """
        headers: Dict[str, Any] = {
            "task_id": task_id,
            "source": self._source,
            "version": self._version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._tracing.inject(trace_ctx, headers)
        checked_headers = WebCrawlRequestHeaders.model_validate(headers)
        checked_body = WebCrawlRequestBody.model_validate(
            {"user_email": body.user_email, "user_query": body.user_query, "base_url": body.base_url}
        )

        value = json.dumps(checked_body.model_dump(), ensure_ascii=False).encode("utf-8")
        kafka_headers = [
            (k, str(v).encode("utf-8"))
            for k, v in checked_headers.model_dump(exclude_none=True).items()
        ]
        return checked_headers.task_id.encode("utf-8"), value, kafka_headers

    def publish(
        self,
        task_id: str,
        body: BaseTaskBody,
        trace_ctx: TraceContext,
        log: Optional[LogLike] = None,
    ) -> PublishResult:
        log = log or logger
        try:
            key, value, headers = self.build_message(task_id, body, trace_ctx)
        except PydanticValidationError as e:
            return self._failed(f"出站消息校验失败：{e}")

        delivery = _Delivery()
        try:
            self._producer.produce(
                topic=self._topic,
                key=key,
                value=value,
                headers=headers,
                on_delivery=delivery,
            )
        except (BufferError, KafkaException) as e:
            return self._failed(str(e))

        deadline = time.monotonic() + self._timeout
        while not delivery.done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._failed(f"等待投递回执超时（{self._timeout}s）")
            self._producer.poll(min(remaining, 0.1))

        if delivery.error:
            return self._failed(delivery.error)

        log.info(
            "web crawl 请求已发布：task_id=%s topic=%s partition=%s offset=%s",
            task_id,
            self._topic,
            delivery.partition,
            delivery.offset,
        )
        return PublishResult(
            success=True,
            topic=self._topic,
            partition=delivery.partition,
            offset=delivery.offset,
        )

    def _failed(self, error: str) -> PublishResult:
        # 失败日志由调用方以 PublishError 记录（含 task_id/topic/error）
        return PublishResult(success=False, topic=self._topic, error=error)

    def close(self, timeout_seconds: float = 5.0) -> None:
        remaining = self._producer.flush(timeout_seconds)
        if remaining:
            logger.warning("Producer 关闭时仍有未投递消息：remaining=%s", remaining)
        else:
            logger.info("Producer 已 flush")
