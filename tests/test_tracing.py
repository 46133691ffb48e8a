from __future__ import annotations

import logging

from helpers import VALID_TRACEPARENT
from task_manager.tracing import (
    TRACESTATE_MAX_LENGTH,
    TraceContext,
    TraceLoggerAdapter,
    TracingAdapter,
    parse_traceparent,
)


def test_parse_traceparent_valid() -> None:
    assert parse_traceparent(VALID_TRACEPARENT) == (
        "4bf92f3577b34da6a3ce929d0e0e4736",
        "00f067aa0ba902b7",
        "01",
    )


def test_parse_traceparent_rejects_bad_values() -> None:
    assert parse_traceparent("garbage") is None
    assert parse_traceparent("01-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01") is None
    # 大写十六进制不合法
    assert parse_traceparent("00-4BF92F3577B34DA6A3CE929D0E0E4736-00f067aa0ba902b7-01") is None
    assert parse_traceparent("00-" + "0" * 32 + "-00f067aa0ba902b7-01") is None
    assert parse_traceparent("00-4bf92f3577b34da6a3ce929d0e0e4736-" + "0" * 16 + "-01") is None


def test_extract_missing_traceparent_returns_none(tracing: TracingAdapter) -> None:
    assert tracing.extract({}) is None
    assert tracing.extract({"traceparent": ""}) is None


def test_extract_malformed_traceparent_logs_warning(tracing: TracingAdapter, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="task_manager.tracing"):
        assert tracing.extract({"traceparent": "not-a-traceparent"}) is None
    assert "traceparent" in caplog.text


def test_extract_keeps_tracestate(tracing: TracingAdapter) -> None:
    ctx = tracing.extract({"traceparent": VALID_TRACEPARENT, "tracestate": "vendor=abc"})
    assert ctx is not None
    assert ctx.trace_id == "4bf92f3577b34da6a3ce929d0e0e4736"
    assert ctx.span_id == "00f067aa0ba902b7"
    assert ctx.trace_state == "vendor=abc"


def test_extract_drops_oversized_tracestate(tracing: TracingAdapter) -> None:
    ctx = tracing.extract(
        {"traceparent": VALID_TRACEPARENT, "tracestate": "x" * (TRACESTATE_MAX_LENGTH + 1)}
    )
    assert ctx is not None
    assert ctx.trace_state is None


def test_start_span_without_parent_opens_new_trace(tracing: TracingAdapter) -> None:
    a = tracing.start_span()
    b = tracing.start_span()
    assert len(a.trace_id) == 32 and len(a.span_id) == 16
    assert a.parent_span_id is None
    assert a.trace_id != b.trace_id


def test_start_span_continues_parent_trace(tracing: TracingAdapter) -> None:
    parent = tracing.extract({"traceparent": VALID_TRACEPARENT, "tracestate": "k=v"})
    child = tracing.start_span(parent)
    assert child.trace_id == parent.trace_id
    assert child.span_id != parent.span_id
    assert child.parent_span_id == parent.span_id
    assert child.trace_state == "k=v"


def test_inject_writes_child_span(tracing: TracingAdapter) -> None:
    ctx = TraceContext(trace_id="a" * 32, span_id="b" * 16, trace_state="k=v")
    headers = tracing.inject(ctx, {})

    parsed = parse_traceparent(headers["traceparent"])
    assert parsed is not None
    trace_id, span_id, flags = parsed
    assert trace_id == ctx.trace_id
    assert span_id != ctx.span_id
    assert flags == "01"
    assert headers["tracestate"] == "k=v"


def test_inject_without_tracestate(tracing: TracingAdapter) -> None:
    headers = tracing.inject(tracing.start_span(), {"task_id": "x"})
    assert "tracestate" not in headers
    assert headers["task_id"] == "x"


def test_bind_appends_trace_fields(tracing: TracingAdapter, caplog) -> None:
    ctx = TraceContext(trace_id="a" * 32, span_id="b" * 16, parent_span_id="c" * 16)
    log = tracing.bind(ctx, logging.getLogger("tests.trace"), partition=3)

    with caplog.at_level(logging.INFO, logger="tests.trace"):
        log.info("处理消息：%s", "x")

    record = caplog.records[-1]
    assert record.getMessage().startswith("处理消息：x ")
    assert f"trace_id={'a' * 32}" in record.getMessage()
    assert f"parent_span_id={'c' * 16}" in record.getMessage()
    assert "partition=3" in record.getMessage()
    assert record.trace_id == "a" * 32
    assert record.span_id == "b" * 16


def test_logger_adapter_keeps_percent_in_fields(caplog) -> None:
    log = TraceLoggerAdapter(logging.getLogger("tests.trace"), {"trace_state": "a=50%"})
    with caplog.at_level(logging.INFO, logger="tests.trace"):
        log.info("done")
        log.info("done %s", "x")
    assert caplog.records[-2].getMessage() == "done trace_state=a=50%"
    assert caplog.records[-1].getMessage() == "done x trace_state=a=50%"
