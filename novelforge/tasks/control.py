"""
后台任务控制

Redis 中保存三类运行态：
1. 停止标志：CLI/外部调用方请求停止，任务每轮循环前检查一次
2. 进度快照：最近一次状态，同时推送到频道
3. 活跃任务：项目当前绑定的 Celery 任务 ID

所有函数都接受可选的 redis 客户端，便于测试注入。

开发者: jamesenh
开发时间: 2026-01-24
"""
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
STOP_KEY = "novelforge:stop:{project}"
PROGRESS_KEY = "novelforge:progress:{project}"
ACTIVE_KEY = "novelforge:active_task:{project}"
PROGRESS_CHANNEL = "novelforge:progress_channel:{project}"
STOP_FLAG_TTL_SECONDS = 24 * 3600


def _redis(client: Optional[redis.Redis] = None) -> redis.Redis:
    """获取同步 Redis 客户端"""
    if client is not None:
        return client
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


# ==================== 停止标志 ====================

def request_stop(project_id: str, client: Optional[redis.Redis] = None) -> None:
    _redis(client).set(STOP_KEY.format(project=project_id), _now_iso(), ex=STOP_FLAG_TTL_SECONDS)
    logger.info("🛑 已为项目 %s 设置停止标志", project_id)


def clear_stop(project_id: str, client: Optional[redis.Redis] = None) -> None:
    _redis(client).delete(STOP_KEY.format(project=project_id))


def is_stop_requested(project_id: str, client: Optional[redis.Redis] = None) -> bool:
    return bool(_redis(client).exists(STOP_KEY.format(project=project_id)))


# ==================== 进度快照 ====================

def save_progress(project_id: str, data: Dict[str, Any], client: Optional[redis.Redis] = None) -> Dict[str, Any]:
    """保存进度快照并推送到频道"""
    conn = _redis(client)
    snapshot = {
        "status": data.get("status", "running"),
        "current_chapter": data.get("current_chapter"),
        "generated": data.get("generated", 0),
        "target": data.get("target", 0),
        "failed_chapters": data.get("failed_chapters", []),
        "message": data.get("message"),
        "updated_at": _now_iso(),
    }
    serialized = json.dumps(snapshot, ensure_ascii=False)
    conn.set(PROGRESS_KEY.format(project=project_id), serialized)
    conn.publish(PROGRESS_CHANNEL.format(project=project_id), serialized)
    return snapshot


def read_progress(project_id: str, client: Optional[redis.Redis] = None) -> Dict[str, Any]:
    raw = _redis(client).get(PROGRESS_KEY.format(project=project_id))
    if not raw:
        return {"status": "idle", "message": "未找到任务", "generated": 0, "target": 0, "failed_chapters": []}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"status": "idle", "message": "进度数据损坏", "generated": 0, "target": 0, "failed_chapters": []}


# ==================== 活跃任务 ====================

def set_active_task(project_id: str, task_id: str, client: Optional[redis.Redis] = None) -> None:
    payload = {"task_id": task_id, "started_at": _now_iso()}
    _redis(client).set(ACTIVE_KEY.format(project=project_id), json.dumps(payload))


def get_active_task(project_id: str, client: Optional[redis.Redis] = None) -> Optional[Dict[str, Any]]:
    raw = _redis(client).get(ACTIVE_KEY.format(project=project_id))
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def clear_active_task(project_id: str, client: Optional[redis.Redis] = None) -> None:
    _redis(client).delete(ACTIVE_KEY.format(project=project_id))
