from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProductCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    dailyRentalPrice: float
    securityDeposit: float = 0
    imagePath: Optional[str] = None
