"""
Kafka 消息校验（按 status 区分 header / body 结构）。

header：
    BaseTaskHeader          status + timestamp + traceparent/tracestate（可选）
    ├── NewTaskHeader       NEW（task_id 即使存在也忽略）
    └── TaskUpdateHeader    COMPLETED / ERROR，必须带 task_id（UUID v4）

body：
    BaseTaskBody            user_email + user_query + base_url
    ├── NewTaskBody
    ├── CompletedTaskBody   + crawl_result
    └── ErrorTaskBody       + error_message

校验函数不抛异常，统一返回 ValidationResult（字段级错误列表），由 router 决定跳过。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from task_manager.errors import FieldError
from task_manager.models import TaskStatus
from task_manager.tracing import TRACEPARENT_PATTERN, TRACESTATE_MAX_LENGTH

UUID_V4_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)

# RFC 5322 的常用子集：local@domain.tld
EMAIL_RE = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)

TRACE_HEADER_FIELDS = ("traceparent", "tracestate")

# ISO-8601 日期时间：YYYY-MM-DDTHH:MM[:SS[.ffffff]][Z|±HH:MM]
ISO_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d{1,6})?)?(?:Z|z|[+-]\d{2}:?\d{2})?$"
)


def _check_uuid_v4(value: Any) -> str:
    if not isinstance(value, str) or not UUID_V4_RE.match(value.strip()):
        raise ValueError("task_id 必须是 UUID v4")
    return value.strip().lower()


# ========== Header ==========


class TraceHeaders(BaseModel):
    """W3C Trace Context 头（可选，出现时才校验）。"""

    model_config = ConfigDict(extra="ignore")

    traceparent: Optional[str] = Field(default=None, pattern=TRACEPARENT_PATTERN)
    tracestate: Optional[str] = Field(default=None, max_length=TRACESTATE_MAX_LENGTH)


class BaseTaskHeader(TraceHeaders):
    status: TaskStatus
    timestamp: datetime

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, v: Any) -> TaskStatus:
        return TaskStatus.parse(v)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _iso_string_only(cls, v: Any) -> Any:
        # pydantic 也接受 unix 时间戳（数字或数字字符串），这里只允许 ISO-8601 字符串
        if not isinstance(v, str) or not ISO_DATETIME_RE.match(v.strip()):
            raise ValueError("timestamp 必须是 ISO-8601 字符串")
        return v.strip()


class NewTaskHeader(BaseTaskHeader):
    pass


class TaskUpdateHeader(BaseTaskHeader):
    task_id: str

    @field_validator("task_id", mode="before")
    @classmethod
    def _uuid_v4(cls, v: Any) -> str:
        return _check_uuid_v4(v)


# ========== Body ==========


class BaseTaskBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_email: str = Field(max_length=255)
    user_query: str = Field(min_length=1, max_length=1000)
    base_url: str = Field(max_length=2048)

    @field_validator("user_email")
    @classmethod
    def _email(cls, v: str) -> str:
        if not EMAIL_RE.match(v):
            raise ValueError("user_email 不是合法邮箱")
        return v

    @field_validator("base_url")
    @classmethod
    def _absolute_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc or any(c.isspace() for c in v):
            raise ValueError("base_url 必须是 http(s) 绝对地址")
        return v


class NewTaskBody(BaseTaskBody):
    pass


class CompletedTaskBody(BaseTaskBody):
    crawl_result: str = Field(min_length=1, max_length=10000)


class ErrorTaskBody(BaseTaskBody):
    error_message: str = Field(min_length=1, max_length=10000)


TaskHeader = Union[NewTaskHeader, TaskUpdateHeader]
TaskBody = Union[NewTaskBody, CompletedTaskBody, ErrorTaskBody]

HEADER_MODELS: Dict[TaskStatus, Type[BaseTaskHeader]] = {
    TaskStatus.NEW: NewTaskHeader,
    TaskStatus.COMPLETED: TaskUpdateHeader,
    TaskStatus.ERROR: TaskUpdateHeader,
}

BODY_MODELS: Dict[TaskStatus, Type[BaseTaskBody]] = {
    TaskStatus.NEW: NewTaskBody,
    TaskStatus.COMPLETED: CompletedTaskBody,
    TaskStatus.ERROR: ErrorTaskBody,
}


# ========== 出站消息（下游 web crawl 请求） ==========


class WebCrawlRequestHeaders(TraceHeaders):
    task_id: str
    source: str = Field(min_length=1)
    version: str = Field(min_length=1)
    timestamp: Optional[str] = None

    @field_validator("task_id", mode="before")
    @classmethod
    def _uuid_v4(cls, v: Any) -> str:
        return _check_uuid_v4(v)


class WebCrawlRequestBody(BaseTaskBody):
    pass


# ========== 校验入口 ==========


@dataclass
class ValidationResult:
    """校验结果：is_valid 为 True 时 header/body 一定有值。"""
    status: Optional[TaskStatus] = None
    header: Optional[TaskHeader] = None
    body: Optional[TaskBody] = None
    errors: List[FieldError] = field(default_factory=list)
    # 不影响处理的问题（如 traceparent 非法，会被丢弃并开启新链路）
    warnings: List[FieldError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error_dicts(self) -> List[dict]:
        return [e.to_dict() for e in self.errors]


def _to_field_errors(location: str, exc: PydanticValidationError) -> List[FieldError]:
    out: List[FieldError] = []
    for err in exc.errors():
        name = ".".join(str(x) for x in err.get("loc", ())) or "__root__"
        out.append(FieldError(location=location, field=name, message=err.get("msg", "invalid")))
    return out


def _validate_model(
    model: Type[BaseModel], data: Mapping[str, Any], location: str
) -> Tuple[Optional[BaseModel], List[FieldError]]:
    try:
        return model.model_validate(dict(data)), []
    except PydanticValidationError as exc:
        return None, _to_field_errors(location, exc)


def validate_headers(status: TaskStatus, headers: Mapping[str, Any]) -> ValidationResult:
    """
    按 status 校验消息头。

    traceparent/tracestate 非法只记为 warning：丢弃这两个字段后重新校验，
    链路由 TracingAdapter 重新开启，消息照常处理。
    """
    result = ValidationResult(status=status)
    model = HEADER_MODELS[status]

    header, errors = _validate_model(model, headers, "headers")
    trace_errors = [e for e in errors if e.field in TRACE_HEADER_FIELDS]
    if trace_errors:
        result.warnings.extend(trace_errors)
        stripped = {k: v for k, v in headers.items() if k not in TRACE_HEADER_FIELDS}
        header, errors = _validate_model(model, stripped, "headers")

    result.header = header  # type: ignore[assignment]
    result.errors.extend(errors)
    return result


def decode_body(raw_body: Union[bytes, str, None]) -> Tuple[Optional[Dict[str, Any]], List[FieldError]]:
    """把消息 value 解析成 JSON 对象。"""
    if raw_body is None or raw_body == b"" or raw_body == "":
        return None, [FieldError("body", "__root__", "消息体为空")]
    try:
        text = raw_body.decode("utf-8") if isinstance(raw_body, (bytes, bytearray)) else raw_body
        payload = json.loads(text)
    except UnicodeDecodeError:
        return None, [FieldError("body", "__root__", "消息体不是 UTF-8")]
    except json.JSONDecodeError as e:
        return None, [FieldError("body", "__root__", f"消息体不是合法 JSON：{e.msg}")]
    if not isinstance(payload, dict):
        return None, [FieldError("body", "__root__", "消息体必须是 JSON 对象")]
    return payload, []


def validate_body(status: TaskStatus, payload: Mapping[str, Any]) -> Tuple[Optional[TaskBody], List[FieldError]]:
    body, errors = _validate_model(BODY_MODELS[status], payload, "body")
    return body, errors  # type: ignore[return-value]


def validate_message(headers: Mapping[str, Any], raw_body: Union[bytes, str, None]) -> ValidationResult:
    """
    校验一条入站消息（header + body）。

    status 缺失或非法时直接返回，不再继续校验 body（无法确定 body 结构）。
    """
    raw_status = headers.get("status")
    if raw_status is None or raw_status == "":
        return ValidationResult(errors=[FieldError("headers", "status", "缺少 status")])
    try:
        status = TaskStatus.parse(raw_status)
    except ValueError as e:
        return ValidationResult(errors=[FieldError("headers", "status", str(e))])

    result = validate_headers(status, headers)

    payload, decode_errors = decode_body(raw_body)
    if decode_errors:
        result.errors.extend(decode_errors)
        return result

    body, body_errors = validate_body(status, payload or {})
    result.body = body
    result.errors.extend(body_errors)
    return result
