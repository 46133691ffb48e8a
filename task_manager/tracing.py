"""
W3C Trace Context 传播。

只依赖三个能力：extract（从消息头解析）、bind（日志附带链路字段）、inject（写入下游消息头）。
链路上下文按消息显式传递，不使用进程级全局变量，保证多分区并发处理时互不串号。

traceparent 格式：00-<32hex trace_id>-<16hex span_id>-<2hex flags>
参考：https://www.w3.org/TR/trace-context/
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Mapping, MutableMapping, Optional, Tuple

logger = logging.getLogger(__name__)

TRACEPARENT_PATTERN = r"^00-[0-9a-f]{32}-[0-9a-f]{16}-[0-9a-f]{2}$"
TRACESTATE_MAX_LENGTH = 512

_TRACEPARENT_RE = re.compile(r"^00-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")
_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def generate_trace_id() -> str:
    return secrets.token_hex(16)


def generate_span_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True)
class TraceContext:
    """单跳的链路上下文（不落库）。"""
    trace_id: str
    span_id: str
    parent_span_id: Optional[str] = None
    trace_state: Optional[str] = None
    trace_flags: str = "01"

    @property
    def traceparent(self) -> str:
        return f"00-{self.trace_id}-{self.span_id}-{self.trace_flags}"

    def log_fields(self) -> Dict[str, str]:
        fields = {"trace_id": self.trace_id, "span_id": self.span_id}
        if self.parent_span_id:
            fields["parent_span_id"] = self.parent_span_id
        if self.trace_state:
            fields["trace_state"] = self.trace_state
        return fields


def parse_traceparent(value: str) -> Optional[Tuple[str, str, str]]:
    """解析 traceparent，返回 (trace_id, span_id, flags)；格式非法或全零 ID 返回 None。"""
    if not isinstance(value, str):
        return None
    match = _TRACEPARENT_RE.match(value.strip())
    if not match:
        return None
    trace_id, span_id, flags = match.groups()
    if trace_id == _ZERO_TRACE_ID or span_id == _ZERO_SPAN_ID:
        return None
    return trace_id, span_id, flags


class TraceLoggerAdapter(logging.LoggerAdapter):
    """
    绑定了链路字段的 logger。

    每条日志末尾追加 key=value（trace_id/span_id/...），同时写入 record 的 extra，
    便于 JSON formatter 等采集端直接取字段。
    """

    def __init__(self, logger: logging.Logger, fields: Mapping[str, Any]):
        super().__init__(logger, dict(fields))
        self._suffix = " ".join(f"{k}={v}" for k, v in self.extra.items() if v is not None)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        if not self.isEnabledFor(level):
            return
        msg, kwargs = self.process(msg, kwargs)
        if self._suffix:
            # 有 args 时 msg 会再经过 % 格式化
            suffix = self._suffix.replace("%", "%%") if args else self._suffix
            msg = f"{msg} {suffix}"
        self.logger.log(level, msg, *args, **kwargs)


class TracingAdapter:
    """链路上下文的提取 / 绑定 / 注入。"""

    def extract(self, headers: Mapping[str, Any]) -> Optional[TraceContext]:
        """
        从入站消息头解析上游链路上下文。

        - 没有 traceparent：返回 None（不是错误）
        - traceparent 非法：记录一次 warning，返回 None，由调用方开启新链路
        - tracestate 超长：丢弃 tracestate，保留 traceparent
        """
        raw = headers.get("traceparent")
        if raw is None or raw == "":
            return None

        parsed = parse_traceparent(raw)
        if parsed is None:
            logger.warning("traceparent 格式非法，忽略并开启新链路：traceparent=%r", raw)
            return None

        trace_id, span_id, flags = parsed
        state = headers.get("tracestate") or None
        if state is not None and (not isinstance(state, str) or len(state) > TRACESTATE_MAX_LENGTH):
            logger.warning("tracestate 非法或超长（>%s），忽略：trace_id=%s", TRACESTATE_MAX_LENGTH, trace_id)
            state = None

        return TraceContext(trace_id=trace_id, span_id=span_id, trace_state=state, trace_flags=flags)

    def start_span(self, parent: Optional[TraceContext] = None) -> TraceContext:
        """开启一个 span：有父上下文则延续同一 trace，否则开启新 trace。"""
        if parent is None:
            return TraceContext(trace_id=generate_trace_id(), span_id=generate_span_id())
        return TraceContext(
            trace_id=parent.trace_id,
            span_id=generate_span_id(),
            parent_span_id=parent.span_id,
            trace_state=parent.trace_state,
            trace_flags=parent.trace_flags,
        )

    def bind(self, trace_ctx: TraceContext, log: logging.Logger, **fields: Any) -> TraceLoggerAdapter:
        """返回在一条消息处理期间使用的 logger，所有日志自动带链路字段。"""
        merged: Dict[str, Any] = dict(fields)
        merged.update(trace_ctx.log_fields())
        return TraceLoggerAdapter(log, merged)

    def inject(self, trace_ctx: TraceContext, headers: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        """
        把延续的链路写入出站消息头。

        出站消息使用 trace_ctx 的子 span（同一 trace_id，新 span_id），
        下游消费者的 span 会挂在本次创建任务的 span 之下。
        """
        child = self.start_span(trace_ctx)
        headers["traceparent"] = child.traceparent
        if child.trace_state:
            headers["tracestate"] = child.trace_state
        return headers
