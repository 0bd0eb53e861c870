"""
引擎依赖注入

编排循环、工具与 Celery 任务都通过 EngineServices 拿到存储、各调用点的补全客户端、
语义缓存和引擎参数，不读取任何进程级单例。
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from novelforge.config import EngineConfig, ProjectConfig
from novelforge.context.budget import ContextBudget
from novelforge.context.builder import ContextBuilder
from novelforge.context.cache import SemanticCache
from novelforge.llm import ClientFactory, TextCompletionClient
from novelforge.runtime.store import ProjectStore, SQLiteProjectStore


@dataclass(frozen=True)
class EngineServices:
    store: ProjectStore
    writer: TextCompletionClient
    summarizer: Optional[TextCompletionClient] = None
    planner: Optional[TextCompletionClient] = None
    judge: Optional[TextCompletionClient] = None
    analyst: Optional[TextCompletionClient] = None
    outliner: Optional[TextCompletionClient] = None
    cache: Optional[SemanticCache] = None
    config: EngineConfig = field(default_factory=EngineConfig)
    sleep: Callable[[float], None] = time.sleep

    @property
    def summary_client(self) -> TextCompletionClient:
        return self.summarizer or self.writer

    @property
    def outline_client(self) -> TextCompletionClient:
        return self.outliner or self.writer

    def context_builder(self) -> ContextBuilder:
        return ContextBuilder(ContextBudget(total_tokens=self.config.context_total_tokens), self.cache)


def build_services(
    project_config: ProjectConfig,
    store: Optional[ProjectStore] = None,
    client_factory: Optional[ClientFactory] = None,
) -> EngineServices:
    """按项目配置创建真实环境的依赖"""
    factory = client_factory or ClientFactory(lambda chain_name: project_config.llm_config(chain_name))
    engine = project_config.engine
    return EngineServices(
        store=store or SQLiteProjectStore(project_config.db_path),
        writer=factory.create("chapter_writer"),
        summarizer=factory.create("summary_update"),
        planner=factory.create("planner") if engine.use_model_planner else None,
        judge=factory.create("qc_judge") if engine.enable_deep_qc else None,
        analyst=factory.create("knowledge_analysis"),
        outliner=factory.create("outline_writer"),
        cache=SemanticCache(max_size=engine.cache_max_entries, default_ttl=engine.cache_ttl_seconds),
        config=engine,
    )
