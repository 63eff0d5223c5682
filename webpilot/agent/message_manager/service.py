from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

MessageTransform = Callable[[Any], Any]


class ConversationStore(Protocol):
    """External conversation persistence used by the tool loop.

    A run pushes one message at start and rewrites it with ``update_last`` once per turn.
    """

    def push(self, message: Any) -> None: ...

    def update_last(self, transform: MessageTransform) -> None: ...


class InMemoryConversationStore:
    """List-backed store. ``update_last`` replaces the last message with ``transform(last)``."""

    def __init__(self, messages: Optional[list[Any]] = None):
        self.messages: list[Any] = list(messages or [])
        self.update_count = 0

    def push(self, message: Any) -> None:
        self.messages.append(message)

    def update_last(self, transform: MessageTransform) -> None:
        if not self.messages:
            logger.debug('update_last called on an empty conversation (ignored)')
            return
        self.messages[-1] = transform(self.messages[-1])
        self.update_count += 1

    @property
    def last(self) -> Optional[Any]:
        return self.messages[-1] if self.messages else None

    def __len__(self) -> int:
        return len(self.messages)


def identity(message: Any) -> Any:
    return message
