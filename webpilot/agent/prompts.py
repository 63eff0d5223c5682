import importlib.resources
from typing import TYPE_CHECKING, Any, Optional

from webpilot.llm.messages import BaseMessage, SystemMessage, UserMessage

if TYPE_CHECKING:
	from webpilot.agent.views import ExecutionPlan, ExecutionStep, StateSnapshot


class SystemPrompt:
	"""Execution-loop system prompt, optionally followed by the formatted plan."""

	def __init__(
		self,
		action_description: str,
		state_check_action: str = 'get_page_context',
		override_system_message: Optional[str] = None,
		extend_system_message: Optional[str] = None,
		plan_instructions: Optional[str] = None,
	):
		if override_system_message:
			prompt = override_system_message
		else:
			self._load_prompt_template()
			prompt = self.prompt_template.format(actions=action_description, state_check_action=state_check_action)

		if extend_system_message:
			prompt += f'\n{extend_system_message}'
		if plan_instructions:
			prompt += f'\n\n{plan_instructions}'

		self.system_message = SystemMessage(content=prompt, cache=True)

	def _load_prompt_template(self) -> None:
		"""Load the prompt template from the markdown file."""
		try:
			with importlib.resources.files('webpilot.agent').joinpath('system_prompt.md').open('r', encoding='utf-8') as f:
				self.prompt_template = f.read()
		except Exception as e:
			raise RuntimeError(f'Failed to load system prompt template: {e}')

	@property
	def text(self) -> str:
		return self.system_message.content


class PlannerPrompt:
	"""Messages for the structured planning call."""

	SYSTEM = """You are a planning agent that writes step-by-step browser automation plans. Plans must be granular, robust and cheap to execute.

Available actions:
- navigate(url): open a URL.
- click(selector): click an element.
- type(selector, text): enter text into an element.
- scroll(direction): scroll the page.
- wait(seconds or selector): pause until time passes or an element appears.
- get_page_context(): read the current page's URL, title, text and interactive elements.

For every step give: the action, its target, a one-sentence rationale, the expected outcome, a verifiable validation criterion, and where useful one fallback action. A fallback is a single action; never nest fallbacks.

Put `confidence` (0 to 1) at the root of the response, not inside the plan."""

	REQUIREMENTS = (
		'Requirements:',
		'1. Start with get_page_context() after any navigation and before interacting with the page.',
		'2. Break the objective into small steps that do not overlap.',
		'3. Mark as critical paths the 1-based step numbers that must succeed.',
		'4. List likely problems in potential_issues and speedups in optimizations.',
		'5. Never assume a form element exists before the page context shows it.',
	)

	def __init__(self, objective: str, state: Optional['StateSnapshot'] = None):
		self.objective = objective
		self.state = state

	def _context_block(self) -> str:
		if self.state is None or not self.state.url:
			return 'Starting from a blank page or unknown context.'
		lines = [f'Current URL: {self.state.url}']
		if self.state.title:
			lines.append(f'Page Title: {self.state.title}')
		preview = (getattr(self.state, 'text', None) or '')[:500]
		if preview:
			lines.append(f'Page Text Preview: {preview}')
		return '\n'.join(lines)

	def get_messages(self) -> list[BaseMessage]:
		user = '\n'.join([f'Objective: "{self.objective}"', '', self._context_block(), '', *self.REQUIREMENTS])
		return [SystemMessage(content=self.SYSTEM), UserMessage(content=user)]


def format_plan_as_instructions(plan: 'ExecutionPlan') -> str:
	"""Render a plan as the markdown block appended to the execution system prompt."""
	total = len(plan.steps)
	lines = [
		'# Execution Plan',
		'',
		f'This plan has {total} step(s). Execute them in order; the first step alone rarely completes the objective.',
		'',
		f'**Objective:** {plan.objective}',
		f'**Approach:** {plan.approach}',
		f'**Complexity:** {round(plan.complexity_score * 100)}%',
		f'**Estimated Steps:** {plan.estimated_steps}',
		'',
	]

	if plan.critical_paths:
		lines.append('## Critical Path Steps')
		for idx in plan.critical_paths:
			if 1 <= idx <= total:
				step = plan.steps[idx - 1]
				lines.append(f'- Step {idx}: {step.action} - {step.target}')
		lines.append('')

	if plan.potential_issues:
		lines.append('## Potential Issues')
		lines.extend(f'{i}. {issue}' for i, issue in enumerate(plan.potential_issues, 1))
		lines.append('')

	if plan.optimizations:
		lines.append('## Optimizations')
		lines.extend(f'{i}. {opt}' for i, opt in enumerate(plan.optimizations, 1))
		lines.append('')

	lines.append('## Steps')
	lines.append('')
	for step in plan.steps:
		lines.append(f'### Step {step.step}: {step.action.upper()}')
		lines.append(f'**Target:** {step.target}')
		if step.reasoning:
			lines.append(f'**Reasoning:** {step.reasoning}')
		if step.expected_outcome:
			lines.append(f'**Expected Outcome:** {step.expected_outcome}')
		if step.validation_criteria:
			lines.append(f'**Validation:** {step.validation_criteria}')
		if step.fallback_action:
			fb = step.fallback_action
			lines.append(f'**Fallback:** If this fails, {fb.action} {fb.target} ({fb.reasoning})')
		lines.append('')

	return '\n'.join(lines).rstrip() + '\n'


def format_trajectory(trajectory: list['ExecutionStep'], limit: int = 30) -> str:
	if not trajectory:
		return '(no actions were executed)'
	rows = []
	for entry in trajectory[-limit:]:
		mark = 'ok' if entry.success else 'FAILED'
		target = f' {entry.target}' if entry.target else ''
		rows.append(f'{entry.step}. {entry.action}{target} [{mark}]')
	return '\n'.join(rows)


class RecoveryPrompt:
	"""Asks for a corrected objective after a run that did not complete."""

	SYSTEM = '\n'.join(
		[
			'You propose a single improved objective for a full rerun of a browser automation run that did not complete.',
			'',
			'Constraints:',
			'- Keep the user\'s intent unchanged and be specific about the browsing goal.',
			'- Use what the last run showed: failing steps, errors, the final page.',
			'- Do not repeat failing patterns. Make implicit steps explicit (navigate, read the page context, then interact).',
			'- Stay site-agnostic: no hardcoded selectors.',
			'- This is the only retry; do not ask for further retries.',
			'- Return adjusted_objective and a short rationale.',
		]
	)

	def __init__(
		self,
		objective: str,
		trajectory: list['ExecutionStep'],
		summary: str,
		final_state: Optional[str] = None,
		error: Optional[str] = None,
	):
		self.objective = objective
		self.trajectory = trajectory
		self.summary = summary
		self.final_state = final_state
		self.error = error

	def get_messages(self) -> list[BaseMessage]:
		parts = [
			f'Original objective: {self.objective}',
			'',
			'Recent steps (most recent last):',
			format_trajectory(self.trajectory, limit=10),
			'',
			f'Final page: {self.final_state or "unknown"}',
		]
		if self.error:
			parts.append(f'Last error: {self.error}')
		parts.extend(['', 'Summary of the failed run:', self.summary])
		return [SystemMessage(content=self.SYSTEM), UserMessage(content='\n'.join(parts))]


class NarrativePrompt:
	SYSTEM = (
		'Write two or three plain sentences describing what a browser automation run did and where it ended. '
		'Do not invent steps that are not listed. Do not use markdown.'
	)

	def __init__(self, objective: str, trajectory: list['ExecutionStep'], outcome_text: Any = ''):
		self.objective = objective
		self.trajectory = trajectory
		self.outcome_text = outcome_text

	def get_messages(self) -> list[BaseMessage]:
		body = '\n'.join(
			[
				f'Objective: {self.objective}',
				'',
				'Steps:',
				format_trajectory(self.trajectory),
				'',
				f'Agent final answer: {self.outcome_text or "(none)"}',
			]
		)
		return [SystemMessage(content=self.SYSTEM), UserMessage(content=body)]
