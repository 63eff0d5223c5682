from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# Action Input Models
class GoToUrlAction(BaseModel):
	url: str = Field(..., description='Absolute URL to open.')
	new_tab: bool = False


class ClickElementAction(BaseModel):
	selector: str = Field(..., description='CSS selector of the element to click.')


class InputTextAction(BaseModel):
	selector: str = Field(..., description='CSS selector of the input element.')
	text: str
	submit: bool = Field(False, description='Press Enter after typing.')


class ScrollAction(BaseModel):
	direction: Literal['up', 'down'] = 'down'
	amount: Optional[int] = Field(None, description='Pixels to scroll; one viewport when omitted.')


class WaitAction(BaseModel):
	seconds: float = Field(1.0, ge=0.0, le=60.0)
	selector: Optional[str] = Field(None, description='Wait until this element is visible instead of a fixed delay.')


class PageContextAction(BaseModel):
	model_config = ConfigDict(extra='ignore')

	url: Optional[str] = Field(None, description='Optional URL the caller expects to be on.')
