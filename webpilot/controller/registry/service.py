from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from pydantic import BaseModel

from webpilot.controller.registry.views import NoParamsAction, RegisteredAction
from webpilot.exceptions import AgentConfigurationError, UnknownToolError
from webpilot.llm.views import ToolSpec

logger = logging.getLogger(__name__)


class Registry:
	"""Fixed mapping from action name to description, parameter model and executor.

	Registration happens up front; a run never mutates a caller's registry. Run-scoped
	actions (the task board) go into a copy made with ``extended()``.
	"""

	def __init__(self, exclude_actions: Optional[Iterable[str]] = None):
		self.actions: dict[str, RegisteredAction] = {}
		self.exclude_actions = set(exclude_actions or [])

	def action(self, description: str, param_model: Optional[type[BaseModel]] = None, name: Optional[str] = None):
		"""Decorator registering an async executor ``fn(params)`` as an action."""

		def decorator(func: Callable[..., Awaitable[Any]]):
			action_name = name or func.__name__
			if action_name in self.exclude_actions:
				return func
			if not inspect.iscoroutinefunction(func):
				raise AgentConfigurationError(f'Action {action_name!r} must be an async function')
			self.register(
				RegisteredAction(
					name=action_name,
					description=description,
					function=func,
					param_model=param_model or NoParamsAction,
				)
			)
			return func

		return decorator

	def register(self, registered: RegisteredAction) -> None:
		if registered.name in self.actions:
			raise AgentConfigurationError(f'Action {registered.name!r} is already registered')
		self.actions[registered.name] = registered
		logger.debug(f'Registered action {registered.name}')

	def get(self, name: str) -> RegisteredAction:
		try:
			return self.actions[name]
		except KeyError:
			raise UnknownToolError(name) from None

	def __contains__(self, name: object) -> bool:
		return name in self.actions

	def __len__(self) -> int:
		return len(self.actions)

	@property
	def names(self) -> list[str]:
		return list(self.actions)

	def tool_specs(self) -> list[ToolSpec]:
		return [a.to_tool_spec() for a in self.actions.values()]

	def get_prompt_description(self) -> str:
		return '\n'.join(a.prompt_description() for a in self.actions.values())

	def extended(self) -> 'Registry':
		"""Shallow copy sharing the registered actions; additions do not leak back."""
		clone = Registry(self.exclude_actions)
		clone.actions = dict(self.actions)
		return clone
