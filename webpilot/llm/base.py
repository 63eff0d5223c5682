"""
Model-provider contract used by the planner, the tool loop and the summarizer.

Any object with these attributes and coroutines works; no inheritance needed.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Protocol, TypeVar, overload, runtime_checkable

from pydantic import BaseModel

if TYPE_CHECKING:
	from webpilot.agent.concurrency import AbortSignal

from webpilot.llm.messages import BaseMessage
from webpilot.llm.views import ChatInvokeCompletion, StreamEvent, ToolChoice, ToolSpec

T = TypeVar('T', bound=BaseModel)


@runtime_checkable
class BaseChatModel(Protocol):
	_verified_api_keys: bool = False

	model: str

	@property
	def provider(self) -> str: ...

	@property
	def name(self) -> str: ...

	@property
	def model_name(self) -> str:
		return self.model

	@overload
	async def ainvoke(self, messages: list[BaseMessage], output_format: None = None) -> ChatInvokeCompletion[str]: ...

	@overload
	async def ainvoke(self, messages: list[BaseMessage], output_format: type[T]) -> ChatInvokeCompletion[T]: ...

	async def ainvoke(
		self, messages: list[BaseMessage], output_format: type[T] | None = None
	) -> ChatInvokeCompletion[T] | ChatInvokeCompletion[str]: ...

	def astream(
		self,
		system: str,
		messages: list[BaseMessage],
		tools: list[ToolSpec],
		tool_choice: ToolChoice,
		abort_signal: Optional['AbortSignal'] = None,
	) -> AsyncIterator[StreamEvent]: ...


def has_credentials(llm: Any) -> bool:
	"""True when the model is present and carries a non-empty ``api_key`` (if it declares one)."""
	if llm is None:
		return False
	if not hasattr(llm, 'api_key'):
		return True
	key = getattr(llm, 'api_key', None)
	return bool(key and str(key).strip())
