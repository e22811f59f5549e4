"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / LlmRequest / LlmResponse / SessionRecord 模型。
- conversation: ConversationStore 抽象。
- exceptions: 业务异常类型定义与错误分类。
"""
