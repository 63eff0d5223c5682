from webpilot.config import CONFIG
from webpilot.logging_config import setup_logging

# Only set up logging if not explicitly disabled by the host application
if CONFIG.WEBPILOT_SETUP_LOGGING:
	logger = setup_logging()
else:
	import logging

	logger = logging.getLogger('webpilot')


# --- Lightweight, lazy re-exports ---
# Importing the package only configures logging; components load on first attribute access.

_LAZY_EXPORTS = {
	# Entry point
	'RetryCoordinator': ('webpilot.agent.service', 'RetryCoordinator'),
	'AgentSettings': ('webpilot.agent.settings', 'AgentSettings'),
	# Components
	'Planner': ('webpilot.agent.planner', 'Planner'),
	'InMemoryPlanCache': ('webpilot.agent.planner', 'InMemoryPlanCache'),
	'ToolLoopEngine': ('webpilot.agent.orchestrator', 'ToolLoopEngine'),
	'ActionActuator': ('webpilot.agent.actuator', 'ActionActuator'),
	'TaskBoard': ('webpilot.agent.tasks.service', 'TaskBoard'),
	'Summarizer': ('webpilot.agent.summarizer', 'Summarizer'),
	'RecoveryAgent': ('webpilot.agent.recovery', 'RecoveryAgent'),
	'AbortSignal': ('webpilot.agent.concurrency', 'AbortSignal'),
	'InMemoryConversationStore': ('webpilot.agent.message_manager.service', 'InMemoryConversationStore'),
	'SystemPrompt': ('webpilot.agent.prompts', 'SystemPrompt'),
	# Views
	'ActionCall': ('webpilot.agent.views', 'ActionCall'),
	'ActionCallState': ('webpilot.agent.views', 'ActionCallState'),
	'ActionResult': ('webpilot.agent.views', 'ActionResult'),
	'ExecutionPlan': ('webpilot.agent.views', 'ExecutionPlan'),
	'ExecutionStep': ('webpilot.agent.views', 'ExecutionStep'),
	'PlanningResult': ('webpilot.agent.views', 'PlanningResult'),
	'RunContext': ('webpilot.agent.views', 'RunContext'),
	'RunOutcome': ('webpilot.agent.views', 'RunOutcome'),
	'StateSnapshot': ('webpilot.agent.views', 'StateSnapshot'),
	'SummaryReport': ('webpilot.agent.views', 'SummaryReport'),
	# Tools
	'Registry': ('webpilot.controller.registry.service', 'Registry'),
	'Controller': ('webpilot.controller.service', 'Controller'),
}


def __getattr__(name: str):
	entry = _LAZY_EXPORTS.get(name)
	if not entry:
		raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
	module_path, attr_name = entry
	try:
		from importlib import import_module

		module = import_module(module_path)
		attr = getattr(module, attr_name)
		# Cache for future lookups
		globals()[name] = attr
		return attr
	except ImportError as e:
		raise ImportError(f'Failed to import {name} from {module_path}: {e}') from e


__all__ = list(_LAZY_EXPORTS.keys())
