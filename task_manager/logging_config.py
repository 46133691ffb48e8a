"""
日志配置。

目标：
- 结构化日志（以 key=value 方式输出 task_id/topic/partition/offset 等关键字段）
- 链路字段（trace_id/span_id）由 tracing.TraceLoggerAdapter 按消息追加
- 兼容 Linux 容器/系统日志采集（输出到 stdout）
"""

from __future__ import annotations

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """初始化全局日志配置。"""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] - %(message)s"

    logging.basicConfig(
        level=numeric_level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # 降低第三方库日志噪音
    logging.getLogger("werkzeug").setLevel(max(numeric_level, logging.WARNING))
    logging.getLogger("confluent_kafka").setLevel(max(numeric_level, logging.INFO))
