"""
Fixtures for end-to-end tests: a RetryCoordinator wired to the default controller
actions over the in-memory browser.
"""

import pytest

from webpilot.agent.service import RetryCoordinator
from webpilot.agent.settings import AgentSettings
from webpilot.agent.views import StateSnapshot
from webpilot.controller.service import Controller


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, name, payload):
        self.events.append((name, payload))

    def named(self, name):
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_coordinator(sink):
    def factory(llm, browser, with_probe: bool = False, **settings):
        async def probe():
            context = await browser.page_context()
            return StateSnapshot(**context) if context else None

        return RetryCoordinator(
            llm,
            Controller(browser).registry,
            AgentSettings(**settings),
            event_sink=sink,
            state_probe=probe if with_probe else None,
        )

    return factory
