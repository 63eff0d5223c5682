"""
Shared fakes for unit and end-to-end tests.

ScriptedLLM replays pre-built streaming turns and structured responses; FakeBrowser
stands in for the page the default controller actions drive.
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Optional

import pytest

from webpilot.llm.views import (
    ChatInvokeCompletion,
    ChatInvokeUsage,
    TextDelta,
    ToolCallEmitted,
    ToolCallStarted,
    TurnFinished,
)

_call_ids = itertools.count(1)

# Placed in a scripted turn to make the stream block until cancelled
HANG = object()


@dataclass
class StreamCall:
    system: str
    messages: list
    tools: list
    tool_choice: Any


class ScriptedLLM:
    model = 'scripted-model'

    def __init__(self, turns=None, responses: Optional[dict] = None, api_key: Optional[str] = 'test-key'):
        self.turns = list(turns or [])
        # output_format class name (or 'text') -> queued replies
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.api_key = api_key
        self.stream_calls: list[StreamCall] = []
        self.invoke_calls: list[tuple[list, Any]] = []

    @property
    def provider(self) -> str:
        return 'scripted'

    @property
    def name(self) -> str:
        return self.model

    async def ainvoke(self, messages, output_format=None):
        self.invoke_calls.append((messages, output_format))
        key = output_format.__name__ if output_format is not None else 'text'
        queue = self.responses.get(key)
        if not queue:
            raise RuntimeError(f'no scripted response for {key}')
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        if item is HANG:
            await asyncio.Event().wait()
        return ChatInvokeCompletion(completion=item)

    def invoked_with(self, key: str) -> int:
        return sum(1 for _, fmt in self.invoke_calls if (fmt.__name__ if fmt is not None else 'text') == key)

    async def astream(self, system, messages, tools, tool_choice, abort_signal=None):
        self.stream_calls.append(StreamCall(system, list(messages), [t.name for t in tools], tool_choice))
        events = self.turns.pop(0) if self.turns else [TextDelta('Done.'), TurnFinished('stop', ChatInvokeUsage())]
        for event in events:
            await asyncio.sleep(0)
            if event is HANG:
                await asyncio.Event().wait()
            if isinstance(event, BaseException):
                raise event
            yield event


def make_turn(*calls, text: str = '', tokens: int = 10, continues: bool = False, finish: Optional[str] = None):
    """Build one streamed turn. Each call is ``(name, args)``."""
    events: list[Any] = []
    if text:
        events.append(TextDelta(text))
    for name, args in calls:
        call_id = f'call_{next(_call_ids)}'
        events.append(ToolCallStarted(call_id=call_id, name=name))
        events.append(ToolCallEmitted(call_id=call_id, name=name, args=args))
    events.append(
        TurnFinished(
            finish_reason=finish or ('tool-calls' if calls else 'stop'),
            usage=ChatInvokeUsage(prompt_tokens=tokens, completion_tokens=0, total_tokens=tokens),
            continues=continues,
        )
    )
    return events


class FakeBrowser:
    """In-memory page. A failed navigation lands on Chrome's error page, like a real browser."""

    ERROR_PAGE = 'chrome-error://chromewebdata/'

    def __init__(self, url: Optional[str] = 'about:blank', navigation_failures: int = 0, titles: Optional[dict] = None):
        self.url = url
        self.navigation_failures = navigation_failures
        self.titles = titles or {}
        self.visited: list[str] = []
        self.clicks: list[str] = []
        self.typed: list[tuple[str, str, bool]] = []

    async def navigate(self, url: str, new_tab: bool = False):
        self.visited.append(url)
        if self.navigation_failures > 0:
            self.navigation_failures -= 1
            self.url = self.ERROR_PAGE
            raise ConnectionError(f'net::ERR_NAME_NOT_RESOLVED at {url}')
        self.url = url

    async def click(self, selector: str):
        self.clicks.append(selector)

    async def type_text(self, selector: str, text: str, submit: bool = False):
        self.typed.append((selector, text, submit))

    async def scroll(self, direction: str, amount=None):
        return None

    async def wait_for(self, selector: str, timeout: float):
        return None

    async def page_context(self) -> dict:
        if not self.url:
            return {}
        return {'url': self.url, 'title': self.titles.get(self.url, ''), 'text': f'Contents of {self.url}'}


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def turn():
    return make_turn


@pytest.fixture
def hang():
    return HANG


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def browser_cls():
    return FakeBrowser
