from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, Field

T = TypeVar('T')


class ChatInvokeUsage(BaseModel):
	prompt_tokens: int = 0
	completion_tokens: int = 0
	total_tokens: int = 0


class ChatInvokeCompletion(BaseModel, Generic[T]):
	"""Response from a structured (non-streaming) model call."""

	completion: T
	usage: Optional[ChatInvokeUsage] = None


class ToolSpec(BaseModel):
	"""Tool description handed to the provider on every turn."""

	name: str
	description: str
	parameters: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class ToolChoice:
	"""``mode='auto'`` lets the model choose; ``mode='tool'`` pins one tool by name."""

	mode: Literal['auto', 'tool', 'none'] = 'auto'
	name: Optional[str] = None

	@classmethod
	def auto(cls) -> 'ToolChoice':
		return cls('auto')

	@classmethod
	def pinned(cls, name: str) -> 'ToolChoice':
		return cls('tool', name)


# Streaming events produced by BaseChatModel.astream


@dataclass
class StreamEvent:
	pass


@dataclass
class TextDelta(StreamEvent):
	text: str = ''


@dataclass
class ToolCallStarted(StreamEvent):
	"""The model began emitting a call; arguments are still streaming."""

	call_id: str = ''
	name: str = ''


@dataclass
class ToolCallEmitted(StreamEvent):
	"""Arguments are final. ``args`` may be a dict or raw JSON text."""

	call_id: str = ''
	name: str = ''
	args: Union[dict[str, Any], str, None] = None


@dataclass
class ToolCallResult(StreamEvent):
	"""A provider-executed result for a previously emitted call."""

	call_id: str = ''
	name: str = ''
	output: Any = None
	is_error: bool = False


@dataclass
class TurnFinished(StreamEvent):
	finish_reason: str = 'stop'
	usage: ChatInvokeUsage = field(default_factory=ChatInvokeUsage)
	continues: bool = False
