from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import (
    EXTENSION_APPROVED,
    EXTENSION_PENDING,
    EXTENSION_REJECTED,
    JOB_RETURNED,
    ExtensionRequest,
    RentalJob,
)
from services.errors import InvalidStateError, NotFoundError, RentalValidationError
from services.extension_pricing import compute_extension, get_strategy, normalize_timestamp
from services.job_locks import job_lock
from services.job_store import effective_return_time, get_job, normalize_job_number


EXTENSION_LOGGER = logging.getLogger("fleet_rental.extensions")

ORIGIN_CUSTOMER = "Customer"
ORIGIN_STAFF = "Staff"
ORIGINS = {ORIGIN_CUSTOMER, ORIGIN_STAFF}

STATUS_PENDING = EXTENSION_PENDING
STATUS_APPROVED = EXTENSION_APPROVED
STATUS_REJECTED = EXTENSION_REJECTED
EXTENSION_TRANSITIONS = {
    STATUS_PENDING: {STATUS_APPROVED, STATUS_REJECTED},
    STATUS_APPROVED: set(),
    STATUS_REJECTED: set(),
}


def _normalize_origin(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    for origin in ORIGINS:
        if origin.lower() == value:
            return origin
    raise RentalValidationError(f"Extension origin must be Customer or Staff, got {raw!r}.")


def has_pending_extension(job: RentalJob) -> bool:
    return any(request.Status == STATUS_PENDING for request in job.ExtensionRequests)


def add_extension_request(
    db: Session,
    job: RentalJob,
    proposed_return_time: datetime,
    origin: str,
    requested_by: int | None = None,
    strategy: str | None = None,
) -> ExtensionRequest:
    """Price and attach a request to ``job`` without committing."""
    normalized_origin = _normalize_origin(origin)
    if job.Status == JOB_RETURNED:
        raise InvalidStateError(f"Job {job.JobNumber} is already returned and cannot be extended.")
    if has_pending_extension(job):
        raise RentalValidationError(f"Job {job.JobNumber} already has a pending extension request.")

    pricing = get_strategy(strategy)
    reference = effective_return_time(job)
    proposed = normalize_timestamp(proposed_return_time)
    calculation = compute_extension(reference, proposed, pricing)
    if calculation is None:
        raise RentalValidationError("Requested return time must be after the current return time.")

    request = ExtensionRequest(
        ReferenceReturnTime=reference,
        RequestedReturnTime=proposed,
        Strategy=calculation.strategy,
        ExtendedHours=calculation.hours,
        RateClass=calculation.rate_class,
        HourlyRate=calculation.hourly_rate,
        Fee=calculation.fee,
        Origin=normalized_origin,
        Status=STATUS_PENDING,
        RequestedBy=requested_by,
        CreatedAt=datetime.now(),
    )
    job.ExtensionRequests.append(request)
    # Touch the parent row so concurrent writers collide on RentalJobs.Version.
    job.UpdatedDate = datetime.now()
    db.add(request)
    return request


def _transition_extension(request: ExtensionRequest, target: str, resolved_by: int | None, now: datetime) -> None:
    current = request.Status or STATUS_PENDING
    if target not in EXTENSION_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Extension request {request.ExtensionRequestID} is {current} and cannot become {target}."
        )
    request.Status = target
    request.ResolvedBy = resolved_by
    request.ResolvedAt = now


def _apply_payment(request: ExtensionRequest, collected_amount: float) -> bool:
    amount = round(float(collected_amount), 2)
    if amount < 0:
        raise RentalValidationError("Collected amount must not be negative.")
    if request.Status == STATUS_REJECTED:
        raise InvalidStateError(f"Extension request {request.ExtensionRequestID} was rejected; no payment can be recorded.")
    if request.Status != STATUS_APPROVED and request.Origin != ORIGIN_STAFF:
        raise InvalidStateError(f"Extension request {request.ExtensionRequestID} must be approved before payment.")

    previous = request.CollectedAmount
    if previous is not None and round(float(previous), 2) == amount:
        return False
    if previous is not None:
        EXTENSION_LOGGER.warning(
            "Collected amount overwritten request_id=%s previous=%s new=%s",
            request.ExtensionRequestID,
            previous,
            amount,
        )
    request.CollectedAmount = amount
    return True


def resolve_staff_extension(
    request: ExtensionRequest,
    resolved_by: int | None,
    collected_amount: float | None = None,
    now: datetime | None = None,
) -> ExtensionRequest:
    """Approve a staff-originated request in the caller's unit of work."""
    if request.Origin != ORIGIN_STAFF:
        raise InvalidStateError("Only staff-originated extensions can be resolved directly.")
    _transition_extension(request, STATUS_APPROVED, resolved_by, now or datetime.now())
    if collected_amount is not None:
        _apply_payment(request, collected_amount)
    return request


def _commit_or_rollback(db: Session, job_number: str) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        EXTENSION_LOGGER.warning("Concurrent update lost job=%s", job_number)
        raise InvalidStateError(f"Job {job_number} was modified concurrently; reload and try again.") from exc
    except Exception:
        db.rollback()
        raise


def submit_extension(
    db: Session,
    job_number: str,
    proposed_return_time: datetime,
    origin: str,
    requested_by: int | None = None,
    strategy: str | None = None,
    collected_amount: float | None = None,
) -> ExtensionRequest:
    normalized_origin = _normalize_origin(origin)
    if collected_amount is not None and normalized_origin != ORIGIN_STAFF:
        raise RentalValidationError("Only staff can record a collected amount when submitting an extension.")

    with job_lock(job_number):
        try:
            job = get_job(db, job_number)
            request = add_extension_request(db, job, proposed_return_time, normalized_origin, requested_by, strategy)
            if normalized_origin == ORIGIN_STAFF and collected_amount is not None:
                resolve_staff_extension(request, requested_by, collected_amount)
        except Exception:
            db.rollback()
            raise
        _commit_or_rollback(db, job.JobNumber)

    EXTENSION_LOGGER.info(
        "Extension submitted job=%s request_id=%s origin=%s hours=%s fee=%s status=%s",
        job.JobNumber,
        request.ExtensionRequestID,
        request.Origin,
        request.ExtendedHours,
        request.Fee,
        request.Status,
    )
    return request


def get_extension(db: Session, request_id: int) -> ExtensionRequest:
    stmt = (
        select(ExtensionRequest)
        .options(selectinload(ExtensionRequest.Job))
        .where(ExtensionRequest.ExtensionRequestID == request_id)
    )
    request = db.execute(stmt).scalars().first()
    if not request:
        raise NotFoundError(f"Extension request {request_id} not found.")
    return request


def _resolve(db: Session, request_id: int, target: str, resolved_by: int | None) -> ExtensionRequest:
    request = get_extension(db, request_id)
    job_number = request.Job.JobNumber
    with job_lock(job_number):
        try:
            db.refresh(request)
            _transition_extension(request, target, resolved_by, datetime.now())
            request.Job.UpdatedDate = datetime.now()
        except Exception:
            db.rollback()
            raise
        _commit_or_rollback(db, job_number)
    EXTENSION_LOGGER.info("Extension %s request_id=%s job=%s by=%s", target.lower(), request_id, job_number, resolved_by)
    return request


def approve_extension(db: Session, request_id: int, resolved_by: int | None) -> ExtensionRequest:
    return _resolve(db, request_id, STATUS_APPROVED, resolved_by)


def reject_extension(db: Session, request_id: int, resolved_by: int | None) -> ExtensionRequest:
    return _resolve(db, request_id, STATUS_REJECTED, resolved_by)


def record_payment(
    db: Session,
    request_id: int,
    collected_amount: float,
    resolved_by: int | None = None,
) -> ExtensionRequest:
    """Record the collected amount. A pending staff request is approved in the same commit."""
    request = get_extension(db, request_id)
    job_number = request.Job.JobNumber
    with job_lock(job_number):
        try:
            db.refresh(request)
            if request.Status == STATUS_PENDING and request.Origin == ORIGIN_STAFF:
                resolve_staff_extension(request, resolved_by, collected_amount)
                request.Job.UpdatedDate = datetime.now()
                changed = True
            else:
                changed = _apply_payment(request, collected_amount)
        except Exception:
            db.rollback()
            raise
        if changed:
            _commit_or_rollback(db, job_number)
    return request


def list_extensions(db: Session, status: str | None = None, job_number: str | None = None) -> list[ExtensionRequest]:
    stmt = select(ExtensionRequest).options(selectinload(ExtensionRequest.Job))
    if status:
        stmt = stmt.where(ExtensionRequest.Status == status)
    if job_number:
        stmt = stmt.join(RentalJob, RentalJob.JobID == ExtensionRequest.JobID).where(
            RentalJob.JobNumber == normalize_job_number(job_number)
        )
    return list(db.execute(stmt.order_by(ExtensionRequest.ExtensionRequestID)).scalars().all())
