"""
Flask 应用工厂。

提供健康检查和任务只读查询，运行在后台线程里，不参与消息处理。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from flask import Flask, jsonify

from task_manager.db.task_store import TaskStore
from task_manager.service import TaskLifecycleService
from task_manager.web.routes import create_api_blueprint

logger = logging.getLogger(__name__)


def create_flask_app(
    service: TaskLifecycleService,
    store: TaskStore,
    consumer_status: Optional[Callable[[], dict]] = None,
) -> Flask:
    """
    创建 Flask 应用实例。

    Args:
        service: 任务生命周期服务
        store: 任务存储（健康检查时 ping）
        consumer_status: 返回 consumer 运行状态的回调

    Returns:
        Flask 应用实例
    """
    app = Flask(__name__)
    app.json.ensure_ascii = False  # 支持中文 JSON

    app.register_blueprint(create_api_blueprint(service))

    @app.route("/health")
    def health_check():
        store_ok = store.ping()
        consumer = consumer_status() if consumer_status else None
        consumer_ok = consumer is None or bool(consumer.get("running"))
        healthy = store_ok and consumer_ok
        body = {
            "status": "ok" if healthy else "degraded",
            "service": "task-manager",
            "store": "ok" if store_ok else "unavailable",
            "consumer": consumer,
        }
        return jsonify(body), 200 if healthy else 503

    logger.info("Flask 应用创建成功")
    return app


def run_flask_in_thread(app: Flask, host: str, port: int, debug: bool = False) -> threading.Thread:
    """
    在后台线程中运行 Flask 应用。

    Args:
        app: Flask 应用实例
        host: 监听地址
        port: 监听端口
        debug: 调试模式
    """
    # 禁用 Flask 的重载器（在后台线程中不兼容）
    thread = threading.Thread(
        target=app.run,
        kwargs={"host": host, "port": port, "debug": debug, "use_reloader": False},
        daemon=True,
        name="FlaskServer",
    )
    thread.start()
    logger.info("Flask 已在后台启动：host=%s port=%s", host, port)
    return thread
