"""
编排层：规划器 + 工具注册表 + 大纲/项目两种循环
"""
from novelforge.agent.outline_agent import OutlineAgentRunResult, run_outline_agent
from novelforge.agent.project_agent import ProjectAgentRunResult, prepare_project_state, run_project_agent
from novelforge.agent.state import OutlineAgentState, ProjectAgentState, create_project_state

__all__ = [
    "OutlineAgentRunResult",
    "OutlineAgentState",
    "ProjectAgentRunResult",
    "ProjectAgentState",
    "create_project_state",
    "prepare_project_state",
    "run_outline_agent",
    "run_project_agent",
]
