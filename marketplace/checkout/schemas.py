from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

# module marketplace.checkout.schemas
class CheckoutItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    listing_id: str = Field(alias="listingId", min_length=1)
    quantity: int = Field(gt=0, le=999)
    market_id: Optional[str] = Field(default=None, alias="marketId")
    schedule_id: Optional[str] = Field(default=None, alias="scheduleId")
    pickup_date: Optional[str] = Field(default=None, alias="pickupDate")
    cart_item_id: Optional[str] = Field(default=None, alias="cartItemId")


class MarketBoxCartItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    offering_id: str = Field(alias="offeringId", min_length=1)
    term_weeks: int = Field(default=4, alias="termWeeks")
    start_date: Optional[str] = Field(default=None, alias="startDate")

    @field_validator("term_weeks")
    @classmethod
    def term_is_4_or_8(cls, v: int) -> int:
        if v not in (4, 8):
            raise ValueError("termWeeks must be 4 or 8")
        return v


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CheckoutItem] = Field(default_factory=list)
    market_box_items: List[MarketBoxCartItem] = Field(default_factory=list, alias="marketBoxItems")
    vertical: str = "farmers_market"
    tip_amount_cents: Optional[int] = Field(default=None, alias="tipAmountCents", ge=0)
    tip_percentage: Optional[float] = Field(default=None, alias="tipPercentage", ge=0, le=100)


class MarketBoxCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    offering_id: str = Field(alias="offeringId", min_length=1)
    term_weeks: int = Field(default=4, alias="termWeeks")
    start_date: str = Field(alias="startDate")
    vertical: str = "farmers_market"

    @field_validator("term_weeks")
    @classmethod
    def term_is_4_or_8(cls, v: int) -> int:
        if v not in (4, 8):
            raise ValueError("termWeeks must be 4 or 8")
        return v
