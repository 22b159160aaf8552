from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class ExtensionQuoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    jobNumber: Optional[str] = None
    referenceReturnTime: Optional[datetime] = None
    proposedReturnTime: datetime
    strategy: Literal["hourly", "day_hour"] = "hourly"


class SubmitExtensionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    proposedReturnTime: datetime
    strategy: Optional[Literal["hourly", "day_hour"]] = None
    customerMobile: Optional[str] = None
    collectedAmount: Optional[float] = None


class ExtensionPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    collectedAmount: float
