"""
Celery 应用配置

单队列、JSON 序列化、单并发；同一项目的章节必须串行提交。
Worker 关闭时为活跃项目设置停止标志，正在运行的循环会在下一轮停下。

开发者: jamesenh
开发时间: 2026-01-24
"""
import logging
import os

from celery import Celery
from celery.signals import worker_shutting_down

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "novelforge",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["novelforge.tasks.generation_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_default_queue="generation",
    worker_concurrency=1,
    worker_pool="solo",
    broker_connection_retry_on_startup=True,
)


@worker_shutting_down.connect
def handle_worker_shutting_down(sig, how, exitcode, **kwargs):
    """Worker 正在关闭：给所有活跃项目设置停止标志"""
    logger.warning("⚠️ Worker 正在关闭 (signal=%s, how=%s, exitcode=%s)", sig, how, exitcode)

    from novelforge.tasks.control import ACTIVE_KEY, _redis, request_stop

    try:
        client = _redis()
        prefix = ACTIVE_KEY.format(project="")
        for key in client.scan_iter(ACTIVE_KEY.format(project="*")):
            project_id = key.decode("utf-8") if isinstance(key, bytes) else key
            request_stop(project_id[len(prefix):], client)
    except Exception as e:
        logger.error("❌ 处理 worker_shutting_down 信号时出错: %s", e)
