from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import (
    EXTENSION_APPROVED,
    EXTENSION_PENDING,
    JOB_PENDING,
    ConditionSnapshot,
    ExtensionRequest,
    RentalJob,
)
from schemas.jobs import CreateJobDto
from services.errors import NotFoundError, RentalValidationError
from services.extension_pricing import RATE_PEAK, normalize_timestamp


JOB_NUMBER_PREFIX = "JOB"
SEARCH_STAGES = {"all", "pickup", "return"}


def normalize_job_number(raw: str | None) -> str:
    return (raw or "").strip().upper()


def generate_job_number(db: Session, year: int | None = None) -> str:
    current_year = year or date.today().year
    token = f"{JOB_NUMBER_PREFIX}-{current_year}-"
    rows = db.execute(select(RentalJob.JobNumber).where(RentalJob.JobNumber.like(f"{token}%"))).all()

    max_suffix = 0
    for row in rows:
        raw = (row[0] or "").replace(token, "")
        try:
            suffix = int(raw)
        except ValueError:
            continue
        if suffix > max_suffix:
            max_suffix = suffix
    return f"{token}{max_suffix + 1:03d}"


def get_job(db: Session, job_number: str) -> RentalJob:
    stmt = (
        select(RentalJob)
        .options(selectinload(RentalJob.Snapshots))
        .options(selectinload(RentalJob.ExtensionRequests))
        .where(RentalJob.JobNumber == normalize_job_number(job_number))
    )
    job = db.execute(stmt).scalars().first()
    if not job:
        raise NotFoundError(f"Job {job_number} not found.")
    return job


def create_job(db: Session, payload: CreateJobDto) -> RentalJob:
    customer_name = (payload.customerName or "").strip()
    customer_mobile = (payload.customerMobile or "").strip()
    if not customer_name:
        raise RentalValidationError("Customer name is required.")
    if not customer_mobile:
        raise RentalValidationError("Customer mobile number is required.")
    start_time = normalize_timestamp(payload.startTime)
    end_time = normalize_timestamp(payload.endTime)
    if end_time <= start_time:
        raise RentalValidationError("endTime must be after startTime.")
    if payload.depositAmount < 0:
        raise RentalValidationError("Deposit amount must not be negative.")

    job_number = normalize_job_number(payload.jobNumber) or generate_job_number(db, start_time.year)
    existing = db.execute(select(RentalJob.JobID).where(RentalJob.JobNumber == job_number)).first()
    if existing:
        raise RentalValidationError(f"Job {job_number} already exists.")

    job = RentalJob(
        JobNumber=job_number,
        CustomerName=customer_name,
        CustomerMobile=customer_mobile,
        CarName=(payload.carName or "").strip() or None,
        StartTime=start_time,
        EndTime=end_time,
        DepositAmount=payload.depositAmount,
        Status=JOB_PENDING,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(job)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return job


def search_jobs(db: Session, query: str = "", stage: str = "all", limit: int = 50) -> list[RentalJob]:
    if stage not in SEARCH_STAGES:
        raise RentalValidationError(f"stage must be one of {sorted(SEARCH_STAGES)}.")
    stmt = select(RentalJob).options(selectinload(RentalJob.ExtensionRequests))
    text = (query or "").strip()
    if text:
        stmt = stmt.where(
            or_(
                RentalJob.CustomerName.ilike(f"%{text}%"),
                RentalJob.CustomerMobile.contains(text),
                RentalJob.JobNumber.ilike(f"%{text}%"),
            )
        )
    if stage == "pickup":
        stmt = stmt.where(RentalJob.ActualPickupTime.is_(None))
    elif stage == "return":
        stmt = stmt.where(RentalJob.ActualPickupTime.is_not(None)).where(RentalJob.ActualReturnTime.is_(None))
    return list(db.execute(stmt.order_by(RentalJob.StartTime.desc()).limit(limit)).scalars().all())


def effective_return_time(job: RentalJob) -> datetime:
    approved = [
        request.RequestedReturnTime
        for request in job.ExtensionRequests
        if request.Status == EXTENSION_APPROVED and request.RequestedReturnTime
    ]
    return max([job.EndTime, *approved])


def latest_snapshot(job: RentalJob, capture_type: str) -> ConditionSnapshot | None:
    matches = [snapshot for snapshot in job.Snapshots if snapshot.CaptureType == capture_type]
    return matches[-1] if matches else None


def _money(value) -> float | None:
    return None if value is None else float(value)


def serialize_snapshot(snapshot: ConditionSnapshot) -> dict:
    return {
        "snapshotID": snapshot.SnapshotID,
        "captureType": snapshot.CaptureType,
        "odometer": snapshot.Odometer,
        "fuelLevel": snapshot.FuelLevel,
        "agreementImages": list(snapshot.AgreementPhotos or []),
        "documentImages": list(snapshot.DocumentPhotos or []),
        "panelImages": list(snapshot.PanelPhotos or []),
        "agreementReference": snapshot.AgreementReference,
        "capturedBy": snapshot.CapturedBy,
        "capturedAt": snapshot.CapturedAt,
        "isCorrection": bool(snapshot.IsCorrection),
        "correctionReason": snapshot.CorrectionReason,
    }


def serialize_extension(request: ExtensionRequest) -> dict:
    return {
        "extensionRequestID": request.ExtensionRequestID,
        "jobID": request.JobID,
        "jobNumber": request.Job.JobNumber if request.Job else None,
        "referenceReturnTime": request.ReferenceReturnTime,
        "requestedReturnTime": request.RequestedReturnTime,
        "strategy": request.Strategy,
        "extendedHours": request.ExtendedHours,
        "rateClass": request.RateClass,
        "isPeak": request.RateClass == RATE_PEAK,
        "hourlyRate": _money(request.HourlyRate),
        "fee": _money(request.Fee),
        "origin": request.Origin,
        "status": request.Status,
        "collectedAmount": _money(request.CollectedAmount),
        "requestedBy": request.RequestedBy,
        "resolvedBy": request.ResolvedBy,
        "resolvedAt": request.ResolvedAt,
        "createdAt": request.CreatedAt,
    }


def serialize_job(job: RentalJob, include_snapshots: bool = False) -> dict:
    payload = {
        "jobID": job.JobID,
        "jobNumber": job.JobNumber,
        "customerName": job.CustomerName,
        "customerMobile": job.CustomerMobile,
        "carName": job.CarName,
        "startTime": job.StartTime,
        "endTime": job.EndTime,
        "effectiveReturnTime": effective_return_time(job),
        "actualPickupTime": job.ActualPickupTime,
        "actualReturnTime": job.ActualReturnTime,
        "pickedUpBy": job.PickedUpBy,
        "returnedBy": job.ReturnedBy,
        "status": job.Status,
        "pickedUp": job.ActualPickupTime is not None,
        "returned": job.ActualReturnTime is not None,
        "depositAmount": _money(job.DepositAmount),
        "unplannedExtraCharge": _money(job.UnplannedExtraCharge),
        "unplannedExtraPayment": _money(job.UnplannedExtraPayment),
        "lowFuelCharge": _money(job.LowFuelCharge),
        "depositRefund": _money(job.DepositRefund),
        "hasPendingExtension": any(request.Status == EXTENSION_PENDING for request in job.ExtensionRequests),
        "extensionRequests": [serialize_extension(request) for request in job.ExtensionRequests],
    }
    if include_snapshots:
        payload["snapshots"] = [serialize_snapshot(snapshot) for snapshot in job.Snapshots]
    return payload
