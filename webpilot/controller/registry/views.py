from __future__ import annotations

import json
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError

from webpilot.exceptions import ArgumentSchemaError
from webpilot.llm.views import ToolSpec


class RegisteredAction(BaseModel):
	"""Model for a registered action"""

	name: str
	description: str
	function: Callable[..., Awaitable[Any]]
	param_model: type[BaseModel]

	model_config = ConfigDict(arbitrary_types_allowed=True)

	def prompt_description(self) -> str:
		"""One line per action for prompts: name, description and parameter names."""
		props = self.param_model.model_json_schema().get('properties', {})
		params = ', '.join(f'{k}: {v.get("type", "any")}' for k, v in props.items())
		return f'{self.name}({params}): {self.description}'

	def to_tool_spec(self) -> ToolSpec:
		schema = self.param_model.model_json_schema()
		schema.pop('title', None)
		return ToolSpec(name=self.name, description=self.description, parameters=schema)

	def validate_args(self, raw: Any) -> BaseModel:
		"""Parse provider arguments (dict, JSON text or None) into the parameter model."""
		if raw is None or raw == '':
			raw = {}
		if isinstance(raw, str):
			try:
				raw = json.loads(raw)
			except json.JSONDecodeError as e:
				raise ArgumentSchemaError(self.name, f'arguments are not valid JSON ({e.msg})', raw) from e
		if not isinstance(raw, dict):
			raise ArgumentSchemaError(self.name, f'expected an object, got {type(raw).__name__}', raw)
		try:
			return self.param_model.model_validate(raw)
		except ValidationError as e:
			raise ArgumentSchemaError(self.name, _format_validation_error(e), raw) from e


def _format_validation_error(err: ValidationError) -> str:
	parts = []
	for item in err.errors():
		loc = '.'.join(str(p) for p in item.get('loc', ())) or '<root>'
		parts.append(f'{loc}: {item.get("msg")}')
	return '; '.join(parts)


class NoParamsAction(BaseModel):
	"""Accepts and ignores any inputs."""

	model_config = ConfigDict(extra='ignore')
