from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base

JOB_PENDING = "Pending"
JOB_PICKED_UP = "PickedUp"
JOB_RETURNED = "Returned"
EXTENSION_PENDING = "Pending"
EXTENSION_APPROVED = "Approved"
EXTENSION_REJECTED = "Rejected"


class RentalJob(Base):
    __tablename__ = "RentalJobs"

    JobID = Column(Integer, primary_key=True)
    JobNumber = Column(String(50), nullable=False, unique=True, index=True)
    CustomerName = Column(String(255), nullable=False)
    CustomerMobile = Column(String(50), nullable=False)
    CarName = Column(String(255))
    StartTime = Column(DateTime, nullable=False)
    EndTime = Column(DateTime, nullable=False)
    ActualPickupTime = Column(DateTime)
    ActualReturnTime = Column(DateTime)
    PickedUpBy = Column(Integer)
    ReturnedBy = Column(Integer)
    Status = Column(String(20), nullable=False, default=JOB_PENDING)
    DepositAmount = Column(Numeric(10, 2), nullable=False, default=0)
    AccessPayload = Column(String(1000))
    UnplannedExtraCharge = Column(Numeric(10, 2))
    UnplannedExtraPayment = Column(Numeric(10, 2))
    LowFuelCharge = Column(Numeric(10, 2))
    DepositRefund = Column(Numeric(10, 2))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Snapshots = relationship(
        "ConditionSnapshot",
        back_populates="Job",
        cascade="all, delete-orphan",
        order_by="ConditionSnapshot.SnapshotID",
    )
    ExtensionRequests = relationship(
        "ExtensionRequest",
        back_populates="Job",
        cascade="all, delete-orphan",
        order_by="ExtensionRequest.ExtensionRequestID",
    )

    __mapper_args__ = {"version_id_col": Version}


class ConditionSnapshot(Base):
    __tablename__ = "ConditionSnapshots"

    SnapshotID = Column(Integer, primary_key=True)
    JobID = Column(Integer, ForeignKey("RentalJobs.JobID"), nullable=False, index=True)
    CaptureType = Column(String(20), nullable=False)
    Odometer = Column(Integer, nullable=False)
    FuelLevel = Column(Float, nullable=False)
    AgreementPhotos = Column(JSON, nullable=False)
    DocumentPhotos = Column(JSON, nullable=False)
    PanelPhotos = Column(JSON, nullable=False)
    AgreementReference = Column(String(100), nullable=False)
    CapturedBy = Column(Integer)
    CapturedAt = Column(DateTime, nullable=False)
    IsCorrection = Column(Boolean, default=False, nullable=False)
    CorrectionReason = Column(String(500))

    Job = relationship("RentalJob", back_populates="Snapshots")


class ExtensionRequest(Base):
    __tablename__ = "ExtensionRequests"

    ExtensionRequestID = Column(Integer, primary_key=True)
    JobID = Column(Integer, ForeignKey("RentalJobs.JobID"), nullable=False, index=True)
    ReferenceReturnTime = Column(DateTime, nullable=False)
    RequestedReturnTime = Column(DateTime, nullable=False)
    Strategy = Column(String(20), nullable=False)
    ExtendedHours = Column(Integer, nullable=False)
    RateClass = Column(String(10), nullable=False)
    HourlyRate = Column(Numeric(10, 2), nullable=False)
    Fee = Column(Numeric(10, 2), nullable=False)
    Origin = Column(String(20), nullable=False)
    Status = Column(String(20), nullable=False, default=EXTENSION_PENDING)
    CollectedAmount = Column(Numeric(10, 2))
    RequestedBy = Column(Integer)
    ResolvedBy = Column(Integer)
    ResolvedAt = Column(DateTime)
    CreatedAt = Column(DateTime, server_default=func.now())

    Job = relationship("RentalJob", back_populates="ExtensionRequests")


class StaffUser(Base):
    __tablename__ = "StaffUsers"

    StaffUserID = Column(Integer, primary_key=True)
    Username = Column(String(100), nullable=False, unique=True)
    DisplayName = Column(String(255))
    Role = Column(String(50), nullable=False, default="Operation")
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    IsActive = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
