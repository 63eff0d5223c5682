"""Provider-neutral chat message models.

Transcripts built by the tool loop are lists of these models. Adapters for a
concrete provider translate them into that provider's wire format.
"""
from __future__ import annotations

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class ToolCallRef(BaseModel):
	"""A tool call as recorded on an assistant message."""

	id: str
	name: str
	args: dict[str, Any] = Field(default_factory=dict)


class _MessageBase(BaseModel):
	role: str
	content: str = ''

	@property
	def text(self) -> str:
		return self.content


class SystemMessage(_MessageBase):
	role: Literal['system'] = 'system'
	cache: bool = False


class UserMessage(_MessageBase):
	role: Literal['user'] = 'user'


class AssistantMessage(_MessageBase):
	role: Literal['assistant'] = 'assistant'
	tool_calls: list[ToolCallRef] = Field(default_factory=list)


class ToolMessage(_MessageBase):
	role: Literal['tool'] = 'tool'
	tool_call_id: str
	name: str
	is_error: bool = False

	@classmethod
	def from_result(cls, tool_call_id: str, name: str, payload: Any, is_error: bool = False) -> 'ToolMessage':
		"""Serialize an action output (or error text) as JSON for the next model turn."""
		try:
			content = json.dumps(payload, ensure_ascii=False, default=str)
		except (TypeError, ValueError):
			content = json.dumps(str(payload), ensure_ascii=False)
		return cls(tool_call_id=tool_call_id, name=name, content=content, is_error=is_error)


BaseMessage = Union[SystemMessage, UserMessage, AssistantMessage, ToolMessage]


def coerce_messages(messages: list[Any]) -> list[BaseMessage]:
	"""Normalize plain strings and ``{role, content}`` dicts into message models."""
	normalized: list[BaseMessage] = []
	for m in messages:
		if isinstance(m, str):
			normalized.append(UserMessage(content=m))
			continue
		if isinstance(m, dict):
			role = m.get('role')
			content = m.get('content')
			text = str(content) if content is not None else ''
			if role in ('system', 'developer'):
				normalized.append(SystemMessage(content=text))
			elif role in ('assistant', 'model'):
				normalized.append(AssistantMessage(content=text))
			elif role == 'tool':
				normalized.append(
					ToolMessage(content=text, tool_call_id=str(m.get('tool_call_id', '')), name=str(m.get('name', '')))
				)
			else:
				normalized.append(UserMessage(content=text))
			continue
		normalized.append(m)
	return normalized
