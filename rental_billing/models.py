from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from rental_billing.services.provider import Product

class CheckoutReq(BaseModel):
    product: Product

class CheckoutResp(BaseModel):
    success: bool = True
    id: Optional[str] = None
    url: Optional[str] = None

class ConfirmReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: str = Field(min_length=1, validation_alias=AliasChoices("session_id", "sessionId"))

class CancelReq(BaseModel):
    # False cancels at the end of the current billing period.
    immediate: bool = False

class ManualActivateReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: str = Field(min_length=1, validation_alias=AliasChoices("session_id", "sessionId"))
    product: Product = Product.PLUS

class PortalResp(BaseModel):
    success: bool = True
    url: str
