"""
章节生成 Celery 任务

generate_chapters 从持久化的下一章序号开始运行项目 Agent，
每轮循环前检查 Redis 停止标志，每次决策后刷新进度快照。

开发者: jamesenh
开发时间: 2026-01-24
"""
from typing import Any, Dict, Optional

import redis
from celery.exceptions import SoftTimeLimitExceeded
from celery.utils.log import get_task_logger

from novelforge.agent.project_agent import prepare_project_state, run_project_agent
from novelforge.config import load_project_config
from novelforge.errors import CommitConflictError
from novelforge.runtime.services import EngineServices, build_services
from novelforge.tasks import control
from novelforge.tasks.celery_app import celery_app

logger = get_task_logger(__name__)

TASK_GENERATE = "novelforge.tasks.generation_tasks.generate_chapters"


def run_generation(
    project_id: str,
    remaining: int,
    services: EngineServices,
    bible: str = "",
    redis_client: Optional[redis.Redis] = None,
) -> Dict[str, Any]:
    """
    执行一次批量生成（不依赖 Celery，便于直接调用）

    Returns:
        任务结果字典：status / generated / failed_chapters / done_reason，
        提交冲突时附带 conflict 详情
    """
    control.clear_stop(project_id, redis_client)
    state = prepare_project_state(services, project_id, remaining, bible=bible)
    control.save_progress(project_id, {
        "status": "running",
        "current_chapter": state.current_chapter_index,
        "target": state.target_chapters_to_generate,
        "message": f"从第 {state.current_chapter_index} 章开始生成",
    }, redis_client)

    def on_decision(iteration, decision, current):
        control.save_progress(project_id, {
            "status": "running",
            "current_chapter": current.current_chapter_index,
            "generated": len(current.generated),
            "target": current.target_chapters_to_generate,
            "failed_chapters": current.failed_chapters,
            "message": f"[{iteration}] {decision.tool}: {decision.reason}",
        }, redis_client)

    try:
        result = run_project_agent(
            state,
            services,
            should_continue=lambda: not control.is_stop_requested(project_id, redis_client),
            on_decision=on_decision,
        )
    except CommitConflictError as e:
        logger.warning("⚠️ 项目 %s 提交冲突: %s", project_id, e)
        control.save_progress(project_id, {"status": "conflict", "message": str(e)}, redis_client)
        return {"status": "conflict", "conflict": e.to_dict(), "generated": 0, "failed_chapters": []}

    stopped = control.is_stop_requested(project_id, redis_client)
    status = "stopped" if stopped else "completed"
    control.save_progress(project_id, {
        "status": status,
        "generated": len(result.generated),
        "target": remaining,
        "failed_chapters": result.failed_chapters,
        "message": result.done_reason,
    }, redis_client)
    if stopped:
        control.clear_stop(project_id, redis_client)

    return {
        "status": status,
        "generated": [record.model_dump() for record in result.generated],
        "failed_chapters": result.failed_chapters,
        "done_reason": result.done_reason,
        "attempts": result.attempts,
    }


@celery_app.task(name=TASK_GENERATE, bind=True)
def generate_chapters(self, project_id: str, remaining: int) -> Dict[str, Any]:
    """后台生成 remaining 章"""
    project_config = load_project_config(project_id)
    services = build_services(project_config)
    logger.info("📝 项目 %s 开始后台生成 %s 章", project_id, remaining)

    try:
        return run_generation(project_id, remaining, services, bible=project_config.read_bible())
    except SoftTimeLimitExceeded:
        control.save_progress(project_id, {"status": "stopped", "message": "任务执行超时"})
        return {"status": "stopped", "reason": "timeout"}
    except Exception as exc:
        logger.exception("生成任务失败")
        control.save_progress(project_id, {"status": "failed", "message": str(exc)})
        raise
    finally:
        control.clear_active_task(project_id)
        services.store.close()


def start_generation(project_id: str, remaining: int) -> str:
    """
    提交后台生成任务

    Raises:
        ValueError: 项目已有活跃任务
    """
    if control.get_active_task(project_id):
        raise ValueError("当前已有生成任务在运行")

    control.clear_stop(project_id)
    task = celery_app.send_task(TASK_GENERATE, args=[project_id, remaining], queue="generation")
    control.set_active_task(project_id, task.id)
    control.save_progress(project_id, {"status": "queued", "target": remaining, "message": "任务已提交"})
    return task.id


def stop_generation(project_id: str) -> Optional[str]:
    """请求停止：任务会在当前章节的下一轮循环前结束"""
    control.request_stop(project_id)
    active = control.get_active_task(project_id)
    control.save_progress(project_id, {"status": "stopping", "message": "已请求停止"})
    return active.get("task_id") if active else None
