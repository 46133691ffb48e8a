"""
配置模块：从环境变量读取运行参数。

说明：
- 优先读取 .env（若存在），便于本地/容器化部署；
- 生产环境推荐直接注入环境变量，避免在镜像/服务器落盘敏感信息；
- 本服务只消费这些配置（topic、连接参数、超时），不负责管理外部资源本身。
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（Pydantic v2）。"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ---------- 存储 ----------
    # mysql：生产；memory：本地联调（进程内，不持久化）
    store_backend: str = Field(default="mysql", alias="STORE_BACKEND")
    store_timeout_seconds: int = Field(default=10, alias="STORE_TIMEOUT_SECONDS")

    # ---------- MySQL ----------
    mysql_host: str = Field(default="127.0.0.1", alias="MYSQL_HOST")
    mysql_port: int = Field(default=3306, alias="MYSQL_PORT")
    mysql_user: str = Field(default="root", alias="MYSQL_USER")
    mysql_password: str = Field(default="", alias="MYSQL_PASSWORD")
    mysql_database: str = Field(default="task_manager", alias="MYSQL_DATABASE")
    mysql_pool_size: int = Field(default=5, alias="MYSQL_POOL_SIZE")

    # ---------- Kafka ----------
    kafka_bootstrap_servers: str = Field(default="localhost:9092", alias="KAFKA_BOOTSTRAP_SERVERS")
    kafka_consumer_group: str = Field(default="task-manager", alias="KAFKA_CONSUMER_GROUP")
    kafka_poll_timeout_seconds: float = Field(default=1.0, alias="KAFKA_POLL_TIMEOUT_SECONDS")
    task_status_topic: str = Field(default="task-status", alias="TASK_STATUS_TOPIC")
    web_crawl_request_topic: str = Field(default="requests-web-crawl", alias="WEB_CRAWL_REQUEST_TOPIC")

    # 单分区待处理消息上限（超过则 pause 该分区）
    consumer_max_pending: int = Field(default=100, alias="CONSUMER_MAX_PENDING")

    # ---------- 下游发布 ----------
    publish_timeout_seconds: float = Field(default=10.0, alias="PUBLISH_TIMEOUT_SECONDS")
    publish_source: str = Field(default="task-manager", alias="PUBLISH_SOURCE")
    publish_version: str = Field(default="1.0.0", alias="PUBLISH_VERSION")

    # ---------- 退避（基础设施错误时重新投递同一条消息） ----------
    backoff_base_seconds: int = Field(default=1, alias="BACKOFF_BASE_SECONDS")
    backoff_max_seconds: int = Field(default=60, alias="BACKOFF_MAX_SECONDS")

    # ---------- 日志 ----------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # ---------- Flask Web Server（只读查询 + 健康检查） ----------
    flask_enabled: int = Field(default=1, alias="FLASK_ENABLED")
    flask_host: str = Field(default="0.0.0.0", alias="FLASK_HOST")
    flask_port: int = Field(default=5000, alias="FLASK_PORT")
    flask_debug: int = Field(default=0, alias="FLASK_DEBUG")

    def kafka_common_config(self) -> dict:
        """Consumer / Producer 共用的 librdkafka 配置。"""
        return {"bootstrap.servers": self.kafka_bootstrap_servers}


settings = Settings()
