"""领域层模型与协议。

包含：
- models: SessionHandle / AssembledReply / TurnOptions / TurnResult 等模型。
- conversation: 会话记录、消息以及 ConversationStore 抽象。
- history: 父指针消息树的祖先链还原与上下文注入格式化。
- exceptions: 业务异常类型定义。
"""
