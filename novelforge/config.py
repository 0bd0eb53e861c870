"""
配置管理
管理 LLM 配置、引擎参数与项目路径

环境变量优先级：链特定变量 > 通用 OPENAI_* 变量 > 链默认值

开发者: jamesenh
开发时间: 2026-01-12
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


# 在模块导入阶段自动加载默认的 .env 文件，支持 .env.local 优先级
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
for _env_filename in (".env.local", ".env"):
    _env_path = os.path.join(_PROJECT_ROOT, _env_filename)
    if os.path.exists(_env_path):
        # override=False 保留 shell 中显式设置的环境变量
        load_dotenv(_env_path, override=False)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("true", "1", "yes", "on")


# 各调用点的默认参数（温度、token 上限）
CHAIN_DEFAULTS = {
    "planner": {"model_name": "gpt-4o-mini", "max_tokens": 240, "temperature": 0.2},
    "outline_writer": {"model_name": "gpt-4o-mini", "max_tokens": 8000, "temperature": 0.7},
    "character_writer": {"model_name": "gpt-4o-mini", "max_tokens": 4000, "temperature": 0.7},
    "chapter_writer": {"model_name": "gpt-4o", "max_tokens": 6000, "temperature": 0.85},
    "summary_update": {"model_name": "gpt-4o-mini", "max_tokens": 1200, "temperature": 0.3},
    "qc_judge": {"model_name": "gpt-4o-mini", "max_tokens": 1500, "temperature": 0.2},
    "knowledge_analysis": {"model_name": "gpt-4o-mini", "max_tokens": 2000, "temperature": 0.2},
}


class LLMConfig(BaseModel):
    """LLM配置"""
    chain_name: Optional[str] = Field(default=None, description="调用点名称，用于读取调用点特定的环境变量")
    model_name: Optional[str] = Field(default=None, description="模型名称")
    temperature: Optional[float] = Field(default=None, description="默认温度参数（单次请求可覆盖）")
    max_tokens: Optional[int] = Field(default=None, description="默认最大token数（单次请求可覆盖）")
    api_key: Optional[str] = Field(default=None, description="API密钥")
    base_url: Optional[str] = Field(default=None, description="API基础URL")
    timeout: float = Field(default=300.0, description="单次请求超时（秒）")
    max_retries: int = Field(default=5, description="单次调用的最大尝试次数")

    def __init__(self, **data):
        super().__init__(**data)

        if self.api_key is None:
            self.api_key = os.getenv("OPENAI_API_KEY")
        if self.base_url is None:
            self.base_url = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE")
        if os.getenv("LLM_REQUEST_TIMEOUT"):
            self.timeout = float(os.getenv("LLM_REQUEST_TIMEOUT"))
        if os.getenv("LLM_MAX_RETRIES"):
            self.max_retries = int(os.getenv("LLM_MAX_RETRIES"))

        # 如果提供了调用点名称，读取调用点特定的环境变量
        if self.chain_name:
            prefix = self.chain_name.upper()
            if os.getenv(f"{prefix}_MODEL_NAME"):
                self.model_name = os.getenv(f"{prefix}_MODEL_NAME")
            if os.getenv(f"{prefix}_MAX_TOKENS"):
                self.max_tokens = int(os.getenv(f"{prefix}_MAX_TOKENS"))
            if os.getenv(f"{prefix}_TEMPERATURE"):
                self.temperature = float(os.getenv(f"{prefix}_TEMPERATURE"))
            if os.getenv(f"{prefix}_BASE_URL"):
                self.base_url = os.getenv(f"{prefix}_BASE_URL")
            if os.getenv(f"{prefix}_API_KEY"):
                self.api_key = os.getenv(f"{prefix}_API_KEY")

        # 通用环境变量作为 fallback
        if self.model_name is None:
            self.model_name = os.getenv("OPENAI_MODEL_NAME")

        defaults = CHAIN_DEFAULTS.get(self.chain_name or "", {})
        self.model_name = self.model_name or defaults.get("model_name") or "gpt-4o-mini"
        if self.max_tokens is None:
            self.max_tokens = defaults.get("max_tokens")
        if self.temperature is None:
            self.temperature = defaults.get("temperature", 0.7)


class EngineConfig(BaseModel):
    """生成引擎参数

    所有字段都可通过 NOVELFORGE_ 前缀的环境变量覆盖。
    """
    max_rewrite_attempts: int = Field(default=2, description="非最终章节的提前完结自纠重写次数上限")
    max_repair_attempts: int = Field(default=1, description="每章 QC 修复次数上限")
    qc_pass_score: int = Field(default=70, description="修复循环视为成功的最低分")
    min_chapter_chars: int = Field(default=1500, description="章节最少字数")
    enable_deep_qc: bool = Field(default=False, description="是否启用模型辅助的深度 QC")
    use_model_planner: bool = Field(default=False, description="是否让模型参与下一步决策")
    context_total_tokens: int = Field(default=24000, description="上下文总预算（估算 token）")
    cache_ttl_seconds: float = Field(default=30 * 60, description="语义缓存条目有效期（秒）")
    cache_max_entries: int = Field(default=100, description="语义缓存最大条目数")
    last_chapters_count: int = Field(default=2, description="生成时参考的最近章节数量")

    def __init__(self, **data):
        int_fields = {
            "max_rewrite_attempts": "NOVELFORGE_MAX_REWRITE_ATTEMPTS",
            "max_repair_attempts": "NOVELFORGE_MAX_REPAIR_ATTEMPTS",
            "qc_pass_score": "NOVELFORGE_QC_PASS_SCORE",
            "min_chapter_chars": "NOVELFORGE_MIN_CHAPTER_CHARS",
            "context_total_tokens": "NOVELFORGE_CONTEXT_TOTAL_TOKENS",
            "cache_max_entries": "NOVELFORGE_CACHE_MAX_ENTRIES",
            "last_chapters_count": "NOVELFORGE_LAST_CHAPTERS_COUNT",
        }
        for field_name, env_name in int_fields.items():
            if field_name not in data and os.getenv(env_name):
                try:
                    data[field_name] = int(os.getenv(env_name))
                except ValueError:
                    pass  # 无效值，使用默认值

        if "cache_ttl_seconds" not in data and os.getenv("NOVELFORGE_CACHE_TTL_SECONDS"):
            data["cache_ttl_seconds"] = float(os.getenv("NOVELFORGE_CACHE_TTL_SECONDS"))
        if "enable_deep_qc" not in data:
            data["enable_deep_qc"] = _env_bool("NOVELFORGE_ENABLE_DEEP_QC", False)
        if "use_model_planner" not in data:
            data["use_model_planner"] = _env_bool("NOVELFORGE_USE_MODEL_PLANNER", False)

        super().__init__(**data)


class ProjectConfig(BaseModel):
    """项目配置"""

    project_dir: str = Field(description="项目目录")
    redis_url: str = Field(default="redis://localhost:6379/0", description="后台任务使用的 Redis 地址")
    engine: EngineConfig = Field(default_factory=EngineConfig, description="引擎参数")

    def __init__(self, **data):
        if "redis_url" not in data and os.getenv("REDIS_URL"):
            data["redis_url"] = os.getenv("REDIS_URL")
        super().__init__(**data)

    @property
    def project_id(self) -> str:
        return os.path.basename(os.path.abspath(self.project_dir))

    @property
    def data_dir(self) -> str:
        return os.path.join(self.project_dir, "data")

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, "novelforge.db")

    @property
    def bible_file(self) -> str:
        return os.path.join(self.project_dir, "bible.md")

    def read_bible(self) -> str:
        if not os.path.exists(self.bible_file):
            return ""
        with open(self.bible_file, "r", encoding="utf-8") as f:
            return f.read()

    def llm_config(self, chain_name: str) -> LLMConfig:
        """获取指定调用点的 LLM 配置"""
        return LLMConfig(chain_name=chain_name)


def projects_root() -> str:
    """项目根目录，默认当前目录下的 projects/"""
    return os.getenv("NOVELFORGE_PROJECTS_DIR", "projects")


def load_project_config(project_id: str, root: Optional[str] = None) -> ProjectConfig:
    return ProjectConfig(project_dir=os.path.join(root or projects_root(), project_id))
