from webpilot.llm.base import BaseChatModel
from webpilot.llm.messages import AssistantMessage, BaseMessage, SystemMessage, ToolMessage, UserMessage
from webpilot.llm.views import (
	ChatInvokeCompletion,
	ChatInvokeUsage,
	TextDelta,
	ToolCallEmitted,
	ToolCallResult,
	ToolCallStarted,
	ToolChoice,
	ToolSpec,
	TurnFinished,
)

__all__ = [
	'BaseChatModel',
	'BaseMessage',
	'SystemMessage',
	'UserMessage',
	'AssistantMessage',
	'ToolMessage',
	'ChatInvokeCompletion',
	'ChatInvokeUsage',
	'TextDelta',
	'ToolCallStarted',
	'ToolCallEmitted',
	'ToolCallResult',
	'TurnFinished',
	'ToolChoice',
	'ToolSpec',
]
