"""
tether.agent — Conversation orchestration.

    - ChatSession drives send → generate → run tools → resume, with
      all-or-nothing rollback and a hard tool-round limit
    - ToolExecutor resolves tool calls by name, decodes their arguments
      and runs them with an opt-in retry policy
    - UsageTracker keeps per-session token and cost totals

Usage:
    executor = ToolExecutor([echo])
    session = ChatSession(provider, "claude-sonnet-4-5", tool_executor=executor)
    reply = await session.send("What's the weather in Paris?")
"""

__all__ = [
    "ChatSession",
    "FunctionTool",
    "MissingToolPolicy",
    "RetryPolicy",
    "Tool",
    "ToolExecutor",
    "UsageTracker",
    "WarmupConfig",
    "tool",
]

from tether.agent.chat import ChatSession, WarmupConfig
from tether.agent.executor import MissingToolPolicy, RetryPolicy, ToolExecutor
from tether.agent.tools import FunctionTool, Tool, tool
from tether.agent.usage import UsageTracker
