from typing import Optional

from pydantic import BaseModel, ConfigDict


class PaymentVerificationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    orderId: Optional[str] = None
    paymentId: Optional[str] = None
    signature: Optional[str] = None
