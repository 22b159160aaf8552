from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict


class CreateJobDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    jobNumber: Optional[str] = None
    customerName: str
    customerMobile: str
    carName: Optional[str] = None
    startTime: datetime
    endTime: datetime
    depositAmount: float = 0


class ConditionSnapshotDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    captureType: Optional[str] = None
    odometer: Optional[int] = None
    fuelLevel: Optional[Union[float, str]] = None
    agreementImages: List[str] = []
    documentImages: List[str] = []
    panelImages: List[str] = []
    agreementReference: Optional[str] = None


class PickupRequest(ConditionSnapshotDto):
    captureType: Optional[str] = "Pickup"
    extraHourReturnTime: Optional[datetime] = None
    collectedAmount: Optional[float] = None


class ReturnRequest(ConditionSnapshotDto):
    captureType: Optional[str] = "Return"
    unplannedExtraPayment: Optional[float] = None


class CorrectionRequest(ConditionSnapshotDto):
    reason: str


class CustomerVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    jobNumber: str
    mobile: str

