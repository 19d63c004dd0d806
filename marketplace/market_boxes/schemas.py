from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

# module marketplace.market_boxes.schemas
class PickupActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    reschedule_to: Optional[str] = Field(default=None, alias="rescheduleTo")
    vendor_notes: Optional[str] = Field(default=None, alias="vendorNotes", max_length=1000)


class SkipWeekRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
