import asyncio
import logging
from typing import Any, Optional, Protocol

from webpilot.agent.views import ActionResult
from webpilot.controller.registry.service import Registry
from webpilot.controller.views import (
    ClickElementAction,
    GoToUrlAction,
    InputTextAction,
    PageContextAction,
    ScrollAction,
    WaitAction,
)

logger = logging.getLogger(__name__)


class BrowserPort(Protocol):
    """Browser operations the default actions delegate to. Any object with these coroutines works."""

    async def navigate(self, url: str, new_tab: bool = False) -> Any: ...

    async def click(self, selector: str) -> Any: ...

    async def type_text(self, selector: str, text: str, submit: bool = False) -> Any: ...

    async def scroll(self, direction: str, amount: Optional[int] = None) -> Any: ...

    async def wait_for(self, selector: str, timeout: float) -> Any: ...

    async def page_context(self) -> dict[str, Any]: ...


class Controller:
    """Builds the default action registry on top of a BrowserPort."""

    def __init__(self, browser: BrowserPort, exclude_actions: Optional[list[str]] = None):
        self.browser = browser
        self.registry = Registry(exclude_actions)

        @self.registry.action('Navigate to a URL in the current tab', param_model=GoToUrlAction)
        async def navigate(params: GoToUrlAction) -> ActionResult:
            await self.browser.navigate(params.url, new_tab=params.new_tab)
            logger.info(f'🔗 Navigated to {params.url}')
            return ActionResult(success=True, url=params.url)

        @self.registry.action('Click an element by CSS selector', param_model=ClickElementAction)
        async def click(params: ClickElementAction) -> ActionResult:
            await self.browser.click(params.selector)
            logger.info(f'🖱️ Clicked {params.selector}')
            return ActionResult(success=True, extracted_content=f'Clicked {params.selector}')

        @self.registry.action('Type text into an input element', param_model=InputTextAction, name='type')
        async def type_text(params: InputTextAction) -> ActionResult:
            await self.browser.type_text(params.selector, params.text, submit=params.submit)
            logger.info(f'⌨️ Typed into {params.selector}')
            return ActionResult(success=True, extracted_content=f'Typed into {params.selector}')

        @self.registry.action('Scroll the page up or down', param_model=ScrollAction)
        async def scroll(params: ScrollAction) -> ActionResult:
            await self.browser.scroll(params.direction, params.amount)
            return ActionResult(success=True, extracted_content=f'Scrolled {params.direction}')

        @self.registry.action('Wait for a number of seconds or until an element is visible', param_model=WaitAction)
        async def wait(params: WaitAction) -> ActionResult:
            if params.selector:
                await self.browser.wait_for(params.selector, timeout=params.seconds or 10.0)
                return ActionResult(success=True, extracted_content=f'{params.selector} is visible')
            await asyncio.sleep(params.seconds)
            return ActionResult(success=True, extracted_content=f'Waited {params.seconds}s')

        @self.registry.action(
            'Read the current page: URL, title, visible text and interactive elements',
            param_model=PageContextAction,
        )
        async def get_page_context(params: PageContextAction) -> ActionResult:
            context = await self.browser.page_context() or {}
            url = context.get('url')
            if not url:
                return ActionResult(success=False, error='No page is loaded', page_context=context)
            return ActionResult(success=True, url=url, page_context=context)
