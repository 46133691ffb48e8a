"""
分区有序消费（confluent-kafka）。

模型：
- 主线程跑 poll 循环，按分区把消息放进对应 PartitionWorker 的队列
- 每个分区一个工作线程，严格按到达顺序处理；不同分区并行
- offset 只在 router 给出终态结果后同步提交（enable.auto.commit=False），从不预先提交
- 基础设施错误：不提交，指数退避后重试同一条消息（等价于重新投递），直到成功、分区被回收或服务停止
- 背压：分区积压超过 max_pending 时 pause，回落到一半以下再 resume

生产方约定：状态更新消息必须以 task_id 作为 key，保证同一任务的消息落在同一分区。
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Dict, List, Optional, Set

from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition

from task_manager.config import Settings
from task_manager.errors import InfrastructureError
from task_manager.messaging.router import MessageRouter

logger = logging.getLogger(__name__)


def create_consumer(settings: Settings) -> Consumer:
    conf = settings.kafka_common_config()
    conf.update({
        "group.id": settings.kafka_consumer_group,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,  # 只在终态结果后手动提交
        "max.poll.interval.ms": 300000,
        "session.timeout.ms": 45000,
    })
    return Consumer(conf)


def _backoff_seconds(base: int, max_seconds: int, attempt: int) -> int:
    """指数退避（带上限）。"""
    if base <= 0:
        base = 1
    sec = base * (2**attempt)
    return min(sec, max(max_seconds, 1))


class PartitionWorker:
    """单个分区的顺序处理线程。"""

    def __init__(
        self,
        consumer: Consumer,
        topic: str,
        partition: int,
        router: MessageRouter,
        backoff_base_seconds: int = 1,
        backoff_max_seconds: int = 60,
    ) -> None:
        self._consumer = consumer
        self._topic = topic
        self._partition = partition
        self._router = router
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name=f"partition-{topic}-{partition}"
        )

    @property
    def partition(self) -> int:
        return self._partition

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        self._thread.start()
        logger.info("分区工作线程已启动：topic=%s partition=%s", self._topic, self._partition)

    def submit(self, message: Any) -> None:
        self._queue.put(message)

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """停止线程；队列中未处理的消息直接丢弃（未提交，会被重新投递）。"""
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("分区工作线程未在超时内退出：topic=%s partition=%s", self._topic, self._partition)
        dropped = self._drain()
        logger.info(
            "分区工作线程已停止：topic=%s partition=%s dropped=%s", self._topic, self._partition, dropped
        )

    def _drain(self) -> int:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return dropped
            dropped += 1

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self.process(message)

    def process(self, message: Any) -> bool:
        """
        处理一条消息直到终态结果。

        Returns:
            True 表示已得到终态结果；False 表示在重试中被停止（未提交）
        """
        attempt = 0
        while not self._stop.is_set():
            try:
                self._router.handle(message, ack=lambda: self._commit(message))
                return True
            except InfrastructureError:
                # router 已记录带链路字段的错误日志
                pass
            except Exception:
                # 未预期异常同样不提交，避免丢消息
                logger.exception(
                    "消息处理异常：topic=%s partition=%s offset=%s",
                    message.topic(),
                    message.partition(),
                    message.offset(),
                )

            delay = _backoff_seconds(self._backoff_base, self._backoff_max, attempt)
            logger.warning(
                "消息将重新处理：topic=%s partition=%s offset=%s attempt=%s backoff=%ss",
                message.topic(),
                message.partition(),
                message.offset(),
                attempt + 1,
                delay,
            )
            attempt += 1
            self._stop.wait(delay)
        return False

    def _commit(self, message: Any) -> None:
        """同步提交 offset+1；提交失败只记录（后续更高 offset 的提交会覆盖）。"""
        if self._stop.is_set():
            # 分区已被回收，新的所有者会从已提交位置重新消费
            logger.warning(
                "分区已停止，跳过 offset 提交：topic=%s partition=%s offset=%s",
                message.topic(),
                message.partition(),
                message.offset(),
            )
            return
        tp =TopicPartition(message.topic(), message.partition(), message.offset() + 1)
        try:
            self._consumer.commit(offsets=[tp], asynchronous=False)
        except KafkaException as e:
            logger.warning(
                "offset 提交失败：topic=%s partition=%s offset=%s error=%s",
                message.topic(),
                message.partition(),
                message.offset(),
                e,
            )


class PartitionedConsumer:
    def __init__(
        self,
        consumer: Consumer,
        topic: str,
        router: MessageRouter,
        poll_timeout_seconds: float = 1.0,
        max_pending: int = 100,
        backoff_base_seconds: int = 1,
        backoff_max_seconds: int = 60,
    ) -> None:
        self._consumer = consumer
        self._topic = topic
        self._router = router
        self._poll_timeout = poll_timeout_seconds
        self._max_pending = max(max_pending, 1)
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._workers: Dict[int, PartitionWorker] = {}
        self._paused: Set[int] = set()
        self._lock = threading.RLock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def status(self) -> dict:
        with self._lock:
            return {
                "running": self._running,
                "topic": self._topic,
                "partitions": sorted(self._workers),
                "paused": sorted(self._paused),
                "pending": {p: w.pending for p, w in self._workers.items()},
            }

    def run(self) -> None:
        """订阅并阻塞运行 poll 循环，直到 stop() 被调用。"""
        self._running = True
        self._consumer.subscribe([self._topic], on_assign=self._on_assign, on_revoke=self._on_revoke)
        logger.info("Consumer 已订阅：topic=%s", self._topic)
        try:
            while self._running:
                message = self._consumer.poll(timeout=self._poll_timeout)
                self._resume_drained()
                if message is None:
                    continue
                error = message.error()
                if error is not None:
                    if error.code() != KafkaError._PARTITION_EOF:
                        logger.error("Consumer 错误：%s", error)
                    continue
                self._dispatch(message)
        finally:
            self._running = False
            self._shutdown()

    def stop(self) -> None:
        logger.info("Consumer 停止请求")
        self._running = False

    def _dispatch(self, message: Any) -> None:
        partition = message.partition()
        with self._lock:
            worker = self._workers.get(partition)
            if worker is None:
                worker = self._start_worker(partition)
            worker.submit(message)
            if worker.pending >= self._max_pending and partition not in self._paused:
                self._consumer.pause([TopicPartition(self._topic, partition)])
                self._paused.add(partition)
                logger.warning("分区积压，暂停拉取：partition=%s pending=%s", partition, worker.pending)

    def _resume_drained(self) -> None:
        with self._lock:
            if not self._paused:
                return
            resumed: List[int] = []
            for partition in self._paused:
                worker = self._workers.get(partition)
                if worker is None or worker.pending <= self._max_pending // 2:
                    resumed.append(partition)
            if resumed:
                self._consumer.resume([TopicPartition(self._topic, p) for p in resumed])
                self._paused.difference_update(resumed)
                logger.info("分区积压已回落，恢复拉取：partitions=%s", resumed)

    def _start_worker(self, partition: int) -> PartitionWorker:
        worker = PartitionWorker(
            self._consumer,
            self._topic,
            partition,
            self._router,
            backoff_base_seconds=self._backoff_base,
            backoff_max_seconds=self._backoff_max,
        )
        self._workers[partition] = worker
        worker.start()
        return worker

    def _on_assign(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        logger.info("分区已分配：%s", [p.partition for p in partitions])
        with self._lock:
            for tp in partitions:
                if tp.partition not in self._workers:
                    self._start_worker(tp.partition)

    def _on_revoke(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        logger.info("分区被回收：%s", [p.partition for p in partitions])
        with self._lock:
            for tp in partitions:
                worker = self._workers.pop(tp.partition, None)
                self._paused.discard(tp.partition)
                if worker is not None:
                    worker.stop()

    def _shutdown(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
            self._paused.clear()
        for worker in workers:
            worker.stop()
        try:
            self._consumer.close()
            logger.info("Consumer 已关闭")
        except KafkaException:
            logger.exception("Consumer 关闭失败")
