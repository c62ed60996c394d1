"""领域层模型与协议。

包含：
- models: OutboundMessage / StreamRequest 等请求侧模型。
- events: StreamFrame 与 StreamEvent 各变体。
- conversation: 会话与消息的存储模型及 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
