"""
task-status 消息路由：按 header.status 分发到生命周期服务，并决定何时提交 offset。

处理结果：
- PROCESSED           创建/迁移成功                  -> 提交
- SKIPPED_INVALID     header/body 校验失败（毒消息）  -> 提交，不重试
- SKIPPED_NOT_FOUND   更新消息引用的任务不存在         -> 提交，不重试
- SKIPPED_CONFLICT    任务已是终态（重复/乱序投递）    -> 提交，不重试
- InfrastructureError 向上抛出，不提交，由消费层重新投递
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from task_manager.errors import ConflictError, InfrastructureError, NotFoundError, ValidationError
from task_manager.messaging.validators import validate_message
from task_manager.models import TaskStatus
from task_manager.service import TaskLifecycleService
from task_manager.tracing import TracingAdapter

logger = logging.getLogger(__name__)


class ProcessingOutcome(Enum):
    PROCESSED = "processed"
    SKIPPED_INVALID = "skipped_invalid"
    SKIPPED_NOT_FOUND = "skipped_not_found"
    SKIPPED_CONFLICT = "skipped_conflict"


def decode_headers(raw: Optional[List[Tuple[str, Any]]]) -> Dict[str, str]:
    """
    Kafka header（[(key, bytes)]）转成 dict。

    同名 header 取第一个；值为 None 的跳过；非 UTF-8 字节按 replace 解码（由校验层拒绝）。
    """
    headers: Dict[str, str] = {}
    for key, value in raw or []:
        if value is None or key in headers:
            continue
        if isinstance(value, (bytes, bytearray)):
            headers[key] = bytes(value).decode("utf-8", errors="replace")
        else:
            headers[key] = str(value)
    return headers


class MessageRouter:
    def __init__(self, service: TaskLifecycleService, tracing: TracingAdapter):
        self._service = service
        self._tracing = tracing

    def route(
        self,
        headers: Mapping[str, str],
        raw_body: Union[bytes, str, None],
        log_fields: Optional[Mapping[str, Any]] = None,
    ) -> ProcessingOutcome:
        """
        处理一条消息直到终态结果。

        Raises:
            InfrastructureError: 存储/总线不可用，调用方不得提交 offset
        """
        trace_ctx = self._tracing.start_span(self._tracing.extract(headers))
        log = self._tracing.bind(trace_ctx, logger, **dict(log_fields or {}))

        result = validate_message(headers, raw_body)
        for warning in result.warnings:
            log.debug("消息头字段已忽略：%s", warning)
        if not result.is_valid:
            log.error("%s，跳过（不重试）：status=%r", ValidationError(result.errors), headers.get("status"))
            return ProcessingOutcome.SKIPPED_INVALID

        header, body = result.header, result.body
        try:
            if result.status is TaskStatus.NEW:
                if headers.get("task_id"):
                    log.debug("NEW 消息携带的 task_id 已忽略：task_id=%s", headers.get("task_id"))
                self._service.create_task(body, header.timestamp, trace_ctx, log)
            elif result.status is TaskStatus.COMPLETED:
                self._service.complete_task(header.task_id, body.crawl_result, trace_ctx, log)
            else:
                self._service.error_task(header.task_id, body.error_message, trace_ctx, log)
        except NotFoundError as e:
            log.warning("%s，跳过（不重试）", e)
            return ProcessingOutcome.SKIPPED_NOT_FOUND
        except ConflictError as e:
            log.warning("%s，重复或乱序投递，跳过（不重试）", e)
            return ProcessingOutcome.SKIPPED_CONFLICT
        except InfrastructureError as e:
            log.error("基础设施错误，不提交 offset，等待重新投递：error=%s", e)
            raise

        return ProcessingOutcome.PROCESSED

    def handle(self, message: Any, ack: Callable[[], None]) -> ProcessingOutcome:
        """
        处理一条 Kafka 消息；只有在得到终态结果后才调用 ack（提交 offset）。

        InfrastructureError 直接抛出，ack 不会被调用。
        """
        headers = decode_headers(message.headers())
        outcome = self.route(
            headers,
            message.value(),
            {"topic": message.topic(), "partition": message.partition(), "offset": message.offset()},
        )
        # 每种结果都是终态；需要重投的情况以异常形式表达，不会走到这里
        ack()
        return outcome
