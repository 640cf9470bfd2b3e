"""
Request bodies accepted by the HTTP API.

Untyped JSON is converted into these models at the boundary; handlers only
ever see validated values.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from bot_credit_guard.core.accounts import MAX_NAME_LENGTH
from bot_credit_guard.core.purchases import MAX_PURCHASE


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: StrictInt = Field(..., gt=0, le=MAX_PURCHASE)


class WebhookRegistrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    url: str = Field(..., min_length=1, max_length=2048)
    event_type: str = Field("all", alias="eventType", min_length=1)
    description: Optional[str] = Field(None, max_length=500)


class CreateBotRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    tier: Literal["free", "premium", "enterprise"] = "free"


class TierChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tier: Literal["free", "premium", "enterprise"]


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: dict = Field(default_factory=dict)
