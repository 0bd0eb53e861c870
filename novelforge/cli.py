"""
NovelForge CLI 工具
统一的命令行接口：初始化项目、生成大纲、批量生成章节、查看状态、单章 QC、停止后台任务

开发者: jamesenh
开发时间: 2026-01-25
"""
import logging
import os
from typing import Annotated, Optional

import redis
import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from novelforge.agent.outline_agent import run_outline_agent
from novelforge.agent.project_agent import prepare_project_state, run_project_agent
from novelforge.agent.project_tools import StatusEvent
from novelforge.config import ProjectConfig, load_project_config, projects_root
from novelforge.errors import CommitConflictError, NovelForgeError
from novelforge.fakes import dry_run_client
from novelforge.qc.evaluator import format_verdict, quick_qc
from novelforge.runtime.services import EngineServices, build_services
from novelforge.runtime.store import SQLiteProjectStore
from novelforge.tasks import control

app = typer.Typer(
    name="nf",
    help="NovelForge - 长篇连载小说生成编排引擎",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="输出调试日志")] = False,
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _require_project(project_id: str) -> ProjectConfig:
    project_config = load_project_config(project_id)
    if not os.path.exists(project_config.db_path):
        rprint(f"[red]❌ 项目 '{project_id}' 不存在，请先运行 nf init[/red]")
        raise typer.Exit(1)
    return project_config


def _services(project_config: ProjectConfig, fake: bool) -> EngineServices:
    store = SQLiteProjectStore(project_config.db_path)
    if not fake:
        return build_services(project_config, store=store)
    return EngineServices(
        store=store,
        writer=dry_run_client(),
        config=project_config.engine,
        sleep=lambda _seconds: None,
    )


def _print_status(event: StatusEvent) -> None:
    prefix = f"[cyan]第{event.chapter_index}章[/cyan] " if event.chapter_index else ""
    if event.type == "chapter_error":
        rprint(f"  {prefix}[red]❌ {event.message}[/red]")
    elif event.type == "chapter_complete":
        rprint(f"  {prefix}[green]✅ {event.message}[/green]")
    else:
        rprint(f"  {prefix}[dim]{event.message}[/dim]")


@app.command()
def init(
    project_id: Annotated[str, typer.Argument(help="项目名称")],
    chapters: Annotated[int, typer.Option("--chapters", "-c", help="计划总章数")] = 100,
    bible: Annotated[Optional[str], typer.Option("--bible", "-b", help="核心设定文本或文件路径")] = None,
):
    """创建项目目录、核心设定文件与状态记录"""
    project_config = ProjectConfig(project_dir=os.path.join(projects_root(), project_id))
    os.makedirs(project_config.data_dir, exist_ok=True)

    if bible:
        text = bible
        if os.path.exists(bible):
            with open(bible, "r", encoding="utf-8") as f:
                text = f.read()
        with open(project_config.bible_file, "w", encoding="utf-8") as f:
            f.write(text)

    store = SQLiteProjectStore(project_config.db_path)
    try:
        state = store.ensure_project(project_id, project_id, chapters)
        if state.total_chapters != chapters:
            store.update_total_chapters(project_id, chapters)
    finally:
        store.close()

    rprint(Panel(f"📁 项目 [bold]{project_id}[/bold] 已就绪（计划 {chapters} 章）", expand=False))
    if not os.path.exists(project_config.bible_file):
        rprint(f"[yellow]⚠️ 尚未提供核心设定，请编辑 {project_config.bible_file}[/yellow]")


@app.command()
def outline(
    project_id: Annotated[str, typer.Argument(help="项目名称")],
    retries: Annotated[int, typer.Option("--retries", "-r", help="评估不达标时的重写次数")] = 2,
    target_score: Annotated[float, typer.Option("--target-score", help="通过分数线（0-10）")] = 8.0,
    fake: Annotated[bool, typer.Option("--fake", help="使用内置样例输出演练，不调用模型")] = False,
):
    """运行大纲 Agent 并保存最佳大纲"""
    project_config = _require_project(project_id)
    services = _services(project_config, fake)
    try:
        persisted = services.store.load_state(project_id)
        characters = services.store.load_characters(project_id)

        def on_decision(iteration, decision, state):
            rprint(f"[dim]\\[{iteration}] {decision.tool}: {decision.reason}[/dim]")

        result = run_outline_agent(
            services.outline_client,
            project_config.read_bible(),
            persisted.total_chapters,
            max_retries=retries,
            target_score=target_score,
            planner_client=services.planner,
            characters=characters,
            on_decision=on_decision,
            sleep=services.sleep,
        )
        services.store.save_outline(project_id, result.outline)
    except NovelForgeError as e:
        rprint(f"[red]❌ 大纲生成失败: {e}[/red]")
        raise typer.Exit(1)
    finally:
        services.store.close()

    table = Table(show_header=True, header_style="bold")
    table.add_column("指标", style="cyan")
    table.add_column("分数", justify="right")
    for name, value in result.evaluation.metrics.items():
        table.add_row(name, f"{value}")
    console.print(table)
    rprint(f"评分 [bold]{result.evaluation.score}[/bold] / 10，尝试 {result.attempts} 次：{result.done_reason}")
    for issue in result.evaluation.issues:
        rprint(f"  [yellow]- {issue}[/yellow]")


@app.command()
def run(
    project_id: Annotated[str, typer.Argument(help="项目名称")],
    count: Annotated[int, typer.Option("--count", "-n", help="本次生成的章数")] = 1,
    fake: Annotated[bool, typer.Option("--fake", help="使用内置样例输出演练，不调用模型")] = False,
    background: Annotated[bool, typer.Option("--background", help="提交到 Celery 后台执行")] = False,
):
    """从持久化的下一章开始连续生成若干章"""
    project_config = _require_project(project_id)

    if background:
        from novelforge.tasks.generation_tasks import start_generation

        try:
            task_id = start_generation(project_id, count)
        except ValueError as e:
            rprint(f"[red]❌ {e}[/red]")
            raise typer.Exit(1)
        rprint(f"[green]✅ 已提交后台任务 {task_id}[/green]")
        return

    services = _services(project_config, fake)
    try:
        state = prepare_project_state(services, project_id, count, bible=project_config.read_bible())
        rprint(f"📝 从第 {state.current_chapter_index} 章开始，计划生成 {state.target_chapters_to_generate} 章")
        result = run_project_agent(state, services, on_status=_print_status)
    except CommitConflictError as e:
        rprint(f"[red]❌ {e}[/red]")
        raise typer.Exit(2)
    except NovelForgeError as e:
        rprint(f"[red]❌ 生成失败: {e}[/red]")
        raise typer.Exit(1)
    finally:
        services.store.close()

    table = Table(show_header=True, header_style="bold")
    table.add_column("章节", style="cyan", width=6)
    table.add_column("标题", width=24)
    table.add_column("字数", justify="right")
    table.add_column("QC", justify="right")
    table.add_column("修复", justify="center")
    for record in result.generated:
        table.add_row(
            str(record.chapter_index),
            record.title[:22],
            str(record.word_count),
            str(record.qc_score if record.qc_score is not None else "-"),
            "✅" if record.repaired else "",
        )
    console.print(table)
    if result.failed_chapters:
        rprint(f"[yellow]⚠️ 失败章节: {result.failed_chapters}[/yellow]")
    rprint(f"结束原因: {result.done_reason}")


@app.command()
def status(
    project_id: Annotated[str, typer.Argument(help="项目名称")],
):
    """查看项目进度与后台任务状态"""
    project_config = _require_project(project_id)
    store = SQLiteProjectStore(project_config.db_path)
    try:
        state = store.load_state(project_id)
        has_outline = store.load_outline(project_id) is not None
        has_characters = store.load_characters(project_id) is not None
        indices = store.chapter_indices(project_id)
    finally:
        store.close()

    console.print(Panel(f"📁 项目: [bold]{project_id}[/bold]", expand=False))
    rprint(f"  {'[green]✅[/green]' if has_outline else '[dim]⬜[/dim]'} 大纲")
    rprint(f"  {'[green]✅[/green]' if has_characters else '[dim]⬜[/dim]'} 人物关系图")
    rprint(f"  已生成 [bold]{len(indices)}/{state.total_chapters}[/bold] 章，下一章: 第 {state.next_chapter_index} 章")
    if state.open_loops:
        rprint("  未解伏笔: " + "；".join(state.open_loops[:6]))

    try:
        progress = control.read_progress(project_id)
    except redis.RedisError:
        rprint("[dim]  （Redis 不可用，跳过后台任务状态）[/dim]")
        return
    rprint(f"  后台任务: {progress.get('status')} - {progress.get('message') or ''}")


@app.command()
def qc(
    project_id: Annotated[str, typer.Argument(help="项目名称")],
    chapter: Annotated[int, typer.Argument(help="章节序号")],
):
    """对已保存的章节重新执行规则 QC"""
    project_config = _require_project(project_id)
    store = SQLiteProjectStore(project_config.db_path)
    try:
        state = store.load_state(project_id)
        text = store.load_chapter(project_id, chapter)
    finally:
        store.close()

    if text is None:
        rprint(f"[red]❌ 第 {chapter} 章不存在[/red]")
        raise typer.Exit(1)
    engine = project_config.engine
    verdict = quick_qc(text, chapter, state.total_chapters, engine.min_chapter_chars, engine.qc_pass_score)
    console.print(format_verdict(verdict))


@app.command()
def stop(
    project_id: Annotated[str, typer.Argument(help="项目名称")],
):
    """请求停止后台生成任务（当前章节的下一轮循环前生效）"""
    from novelforge.tasks.generation_tasks import stop_generation

    try:
        task_id = stop_generation(project_id)
    except redis.RedisError as e:
        rprint(f"[red]❌ 无法连接 Redis: {e}[/red]")
        raise typer.Exit(1)
    if task_id:
        rprint(f"[green]✅ 已请求停止任务 {task_id}[/green]")
    else:
        rprint("[yellow]⚠️ 没有活跃任务，已设置停止标志[/yellow]")


def main():
    app()


if __name__ == "__main__":
    main()
