from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productId: int
    startDate: date
    endDate: date
    paymentId: str
    paymentOrderId: Optional[str] = None
    paymentSignature: Optional[str] = None
    totalDays: Optional[int] = None
    rentalPrice: Optional[float] = None
    securityDeposit: Optional[float] = None
    totalAmount: Optional[float] = None

    def quoted_charges(self) -> dict:
        return {
            "totalDays": self.totalDays,
            "rentalPrice": self.rentalPrice,
            "securityDeposit": self.securityDeposit,
            "totalAmount": self.totalAmount,
        }
