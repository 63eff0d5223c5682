from webpilot.controller.registry.service import Registry
from webpilot.controller.registry.views import NoParamsAction, RegisteredAction

__all__ = ['Registry', 'RegisteredAction', 'NoParamsAction']
