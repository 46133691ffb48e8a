"""
Flask 路由定义（只读查询）。

任务的创建与状态迁移只由 Kafka 消息驱动，这里不提供写接口。
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify, request

from task_manager.errors import InfrastructureError
from task_manager.models import TaskStatus
from task_manager.service import TaskLifecycleService

logger = logging.getLogger(__name__)


def create_api_blueprint(service: TaskLifecycleService) -> Blueprint:
    """
    创建 /api 蓝图。

    Args:
        service: 任务生命周期服务

    Returns:
        Flask 蓝图
    """
    api_bp = Blueprint("api", __name__, url_prefix="/api")

    @api_bp.errorhandler(InfrastructureError)
    def handle_infrastructure_error(e: InfrastructureError) -> Any:
        logger.error("查询失败（存储不可用）：%s", e)
        return jsonify({"error": "存储暂不可用"}), 503

    @api_bp.route("/tasks/<task_id>", methods=["GET"])
    def get_task(task_id: str):
        """
        获取任务详情。

        Response:
            {"id": "...", "status": "new", "user_email": "...", ..., "crawl_result": null}
        """
        task = service.get_task(task_id)
        if not task:
            return jsonify({"error": "任务不存在"}), 404
        return jsonify(task.to_dict()), 200

    @api_bp.route("/tasks", methods=["GET"])
    def list_tasks():
        """
        列出任务（按创建时间倒序）。

        Query Params:
            status: new/completed/error（可选）
            user_email: 用户邮箱（可选）
            limit: 返回数量（默认 20，1-100）
            offset: 偏移量（默认 0）
        """
        status = None
        raw_status = request.args.get("status")
        if raw_status:
            try:
                status = TaskStatus.parse(raw_status)
            except ValueError as e:
                return jsonify({"error": str(e)}), 400

        limit = request.args.get("limit", 20, type=int)
        limit = min(max(1, limit), 100)
        offset = max(0, request.args.get("offset", 0, type=int))

        tasks = service.list_tasks(
            status=status,
            user_email=request.args.get("user_email") or None,
            limit=limit,
            offset=offset,
        )
        return jsonify([t.to_dict() for t in tasks]), 200

    @api_bp.route("/metrics", methods=["GET"])
    def metrics():
        """任务统计；hours 为统计窗口（默认 24，1-720）。"""
        hours = request.args.get("hours", 24, type=int)
        hours = min(max(1, hours), 720)
        return jsonify(service.get_metrics(hours)), 200

    return api_bp
