from datetime import date
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict


TimeSlot = Literal["9AM-12PM", "12PM-3PM", "3PM-6PM", "6PM-9PM"]


class ScheduleReturnDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalId: Union[int, str]
    pickupDate: date
    timeSlot: TimeSlot
    additionalNotes: Optional[str] = None


class ReturnStatusUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
