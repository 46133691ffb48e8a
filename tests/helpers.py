"""测试用的假对象与消息构造工具（不依赖 Kafka / MySQL）。"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

VALID_TRACEPARENT = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


class FakeDeliveredMessage:
    def __init__(self, topic: str, partition: int, offset: int) -> None:
        self._topic = topic
        self._partition = partition
        self._offset = offset

    def topic(self) -> str:
        return self._topic

    def partition(self) -> int:
        return self._partition

    def offset(self) -> int:
        return self._offset


class FakeProducer:
    """
    模拟 confluent_kafka.Producer。

    mode:
        ok          poll 时回调成功
        fail        poll 时回调 err
        raise       produce 直接抛 BufferError
        silent      永不回调（用于超时）
    """

    def __init__(self, mode: str = "ok") -> None:
        self.mode = mode
        self.produced: List[Dict[str, Any]] = []
        self._pending: List[Tuple[Callable, Dict[str, Any]]] = []
        # 多个分区线程共用一个 producer
        self._lock = threading.Lock()

    def produce(self, topic, key=None, value=None, headers=None, on_delivery=None) -> None:
        if self.mode == "raise":
            raise BufferError("Local: Queue full")
        record = {"topic": topic, "key": key, "value": value, "headers": headers}
        with self._lock:
            self.produced.append(record)
            record["offset"] = len(self.produced) - 1
            if on_delivery is not None:
                self._pending.append((on_delivery, record))

    def poll(self, timeout: float = 0) -> int:
        if self.mode == "silent":
            return 0
        with self._lock:
            pending, self._pending = self._pending, []
        served = 0
        for callback, record in pending:
            if self.mode == "fail":
                callback("KafkaError{code=_MSG_TIMED_OUT}", None)
            else:
                callback(None, FakeDeliveredMessage(record["topic"], 0, record["offset"]))
            served += 1
        return served

    def flush(self, timeout: float = 0) -> int:
        self.poll(0)
        return 0

    # 便于断言
    def last_headers(self) -> Dict[str, str]:
        return {k: v.decode("utf-8") for k, v in self.produced[-1]["headers"]}

    def last_body(self) -> Dict[str, Any]:
        return json.loads(self.produced[-1]["value"].decode("utf-8"))


class FakeKafkaMessage:
    def __init__(
        self,
        headers: Dict[str, str],
        body: Any,
        topic: str = "task-status",
        partition: int = 0,
        offset: int = 0,
    ) -> None:
        self._headers = [(k, v.encode("utf-8")) for k, v in headers.items()]
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode("utf-8")
        elif isinstance(body, str):
            body = body.encode("utf-8")
        self._value = body
        self._topic = topic
        self._partition = partition
        self._offset = offset

    def headers(self) -> List[Tuple[str, bytes]]:
        return self._headers

    def value(self) -> Optional[bytes]:
        return self._value

    def topic(self) -> str:
        return self._topic

    def partition(self) -> int:
        return self._partition

    def offset(self) -> int:
        return self._offset

    def error(self) -> None:
        return None


class FakeConsumer:
    """模拟 confluent_kafka.Consumer：按顺序吐出消息，记录 commit/pause/resume。"""

    def __init__(self, messages: Optional[List[Any]] = None) -> None:
        self.messages = list(messages or [])
        self.commits: List[Tuple[str, int, int]] = []
        self.paused: List[int] = []
        self.resumed: List[int] = []
        self.closed = False
        self.on_empty: Optional[Callable[[], None]] = None

    def subscribe(self, topics, on_assign=None, on_revoke=None) -> None:
        self.topics = topics
        self.on_assign = on_assign
        self.on_revoke = on_revoke

    def poll(self, timeout: float = 0) -> Any:
        if self.messages:
            return self.messages.pop(0)
        if self.on_empty is not None:
            self.on_empty()
        return None

    def commit(self, offsets=None, asynchronous: bool = True) -> None:
        for tp in offsets or []:
            self.commits.append((tp.topic, tp.partition, tp.offset))

    def pause(self, partitions) -> None:
        self.paused.extend(tp.partition for tp in partitions)

    def resume(self, partitions) -> None:
        self.resumed.extend(tp.partition for tp in partitions)

    def close(self) -> None:
        self.closed = True


def new_task_headers(**overrides: str) -> Dict[str, str]:
    headers = {"status": "NEW", "timestamp": "2024-05-01T10:00:00Z"}
    headers.update(overrides)
    return headers


def update_headers(status: str, task_id: str, **overrides: str) -> Dict[str, str]:
    headers = {"status": status, "timestamp": "2024-05-01T11:00:00Z", "task_id": task_id}
    headers.update(overrides)
    return headers


def base_body(**overrides: str) -> Dict[str, str]:
    body = {"user_email": "a@b.com", "user_query": "find X", "base_url": "https://x.com"}
    body.update(overrides)
    return body


