from typing import Literal

from pydantic import BaseModel, Field


class EntitlementResponse(BaseModel):
    user_id: str
    is_premium: bool


class CheckoutRequest(BaseModel):
    plan_tier: Literal["monthly", "yearly"] = Field("monthly", json_schema_extra={"example": "yearly"})


class RedirectResponse(BaseModel):
    url: str
