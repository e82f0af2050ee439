"""ChatHub Core 顶层包。

该包实现了面向流式对话服务的客户端核心，
包括会话 bootstrap、全双工连接的握手与保活、流式响应组装、
父指针对话历史还原以及会话持久化等能力。
"""

from chathub_core.agents.turn_orchestrator import TurnOrchestrator
from chathub_core.domain.models import SessionHandle, TurnOptions, TurnResult

__all__ = ["TurnOrchestrator", "SessionHandle", "TurnOptions", "TurnResult"]
