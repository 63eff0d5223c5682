from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import anyio

from webpilot.llm.messages import AssistantMessage, BaseMessage, ToolMessage

logger = logging.getLogger(__name__)


async def save_conversation(
	messages: list[BaseMessage],
	target: str | Path,
	header: dict[str, Any] | None = None,
	encoding: str | None = None,
) -> Path:
	"""Write a run transcript to ``target`` (parent directories are created)."""
	target_path = Path(target)
	await anyio.Path(target_path.parent).mkdir(parents=True, exist_ok=True)
	await anyio.Path(target_path).write_text(
		_format_conversation(messages, header),
		encoding=encoding or 'utf-8',
	)
	return target_path


def _format_conversation(messages: list[BaseMessage], header: dict[str, Any] | None = None) -> str:
	lines: list[str] = []
	if header:
		for key, value in header.items():
			lines.append(f'# {key}: {value}')
		lines.append('')

	for message in messages:
		lines.append(f' {message.role} ')
		if message.content:
			lines.append(message.content)
		if isinstance(message, AssistantMessage) and message.tool_calls:
			for tc in message.tool_calls:
				lines.append(f'-> {tc.name} {json.dumps(tc.args, ensure_ascii=False, default=str)} [{tc.id}]')
		if isinstance(message, ToolMessage):
			lines.append(f'<- {message.name} [{message.tool_call_id}]{" (error)" if message.is_error else ""}')
		lines.append('')

	return '\n'.join(lines)
