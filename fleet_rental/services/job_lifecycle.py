"""Pickup & return state machine for a single rental job.

Pending -> PickedUp -> Returned. Each transition stores a validated condition
snapshot, stamps the set-once actual time and commits as one unit of work under
the job's lock; a concurrent loser fails with InvalidStateError.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import JOB_PENDING, JOB_PICKED_UP, JOB_RETURNED, ConditionSnapshot, RentalJob
from services.access_payload_service import issue_access_payload
from services.errors import InvalidStateError, NotAvailableError, RentalValidationError
from services.extension_pricing import (
    STRATEGY_DAY_HOUR,
    compute_low_fuel_charge,
    compute_unplanned_extra_charge,
)
from services.extension_service import ORIGIN_STAFF, add_extension_request, resolve_staff_extension
from services.job_locks import job_lock
from services.job_store import effective_return_time, get_job, latest_snapshot
from services.snapshot_validator import (
    CAPTURE_PICKUP,
    CAPTURE_RETURN,
    normalize_capture_type,
    parse_fuel_level,
    validate_snapshot,
)


LIFECYCLE_LOGGER = logging.getLogger("fleet_rental.lifecycle")

STATUS_PENDING = JOB_PENDING
STATUS_PICKED_UP = JOB_PICKED_UP
STATUS_RETURNED = JOB_RETURNED
JOB_TRANSITIONS = {
    STATUS_PENDING: {STATUS_PICKED_UP},
    STATUS_PICKED_UP: {STATUS_RETURNED},
    STATUS_RETURNED: set(),
}


def _transition_state(job: RentalJob, target_state: str, now: datetime) -> None:
    current = job.Status or STATUS_PENDING
    if target_state not in JOB_TRANSITIONS.get(current, set()):
        raise InvalidStateError(f"Invalid state transition for job {job.JobNumber}: {current} -> {target_state}")
    job.Status = target_state
    job.UpdatedDate = now


def _transition_occurred(job: RentalJob, capture_type: str) -> bool:
    if capture_type == CAPTURE_PICKUP:
        return job.ActualPickupTime is not None
    return job.ActualReturnTime is not None


def _build_snapshot(
    snapshot,
    capture_type: str,
    actor_id: int | None,
    captured_at: datetime,
    correction_reason: str | None = None,
) -> ConditionSnapshot:
    declared = getattr(snapshot, "captureType", None)
    if declared and normalize_capture_type(declared) != capture_type:
        raise RentalValidationError(f"Snapshot was captured for {declared}, expected {capture_type}.")
    validate_snapshot(snapshot)
    return ConditionSnapshot(
        CaptureType=capture_type,
        Odometer=int(snapshot.odometer),
        FuelLevel=parse_fuel_level(snapshot.fuelLevel),
        AgreementPhotos=[str(item) for item in snapshot.agreementImages if str(item or "").strip()],
        DocumentPhotos=[str(item) for item in snapshot.documentImages if str(item or "").strip()],
        PanelPhotos=[str(item) for item in snapshot.panelImages if str(item or "").strip()],
        AgreementReference=str(snapshot.agreementReference).strip(),
        CapturedBy=actor_id,
        CapturedAt=captured_at,
        IsCorrection=correction_reason is not None,
        CorrectionReason=correction_reason,
    )


def _settle_extra_payment(extra_charge: float, payment: float | None) -> float | None:
    if extra_charge <= 0:
        return None if payment is None else round(float(payment), 2)
    if payment is None:
        raise RentalValidationError(f"Unplanned extra hour payment of {extra_charge:.2f} is required.")
    collected = round(float(payment), 2)
    if collected != round(extra_charge, 2):
        raise RentalValidationError(
            f"Unplanned extra hour payment must equal the charge of {extra_charge:.2f}, got {collected:.2f}."
        )
    return collected


def _commit_transition(db: Session, job_number: str) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        LIFECYCLE_LOGGER.warning("Concurrent transition lost job=%s", job_number)
        raise InvalidStateError(f"Job {job_number} was modified concurrently; reload and try again.") from exc
    except Exception:
        db.rollback()
        raise


def process_pickup(
    db: Session,
    job_number: str,
    snapshot,
    actor_id: int | None,
    extra_hour_return_time: datetime | None = None,
    collected_amount: float | None = None,
    now: datetime | None = None,
) -> RentalJob:
    moment = now or datetime.now()
    with job_lock(job_number):
        try:
            job = get_job(db, job_number)
            if job.Status != STATUS_PENDING:
                LIFECYCLE_LOGGER.warning("Pickup rejected job=%s status=%s actor=%s", job.JobNumber, job.Status, actor_id)
                raise InvalidStateError(f"Job {job.JobNumber} cannot be picked up from state {job.Status}.")

            job.Snapshots.append(_build_snapshot(snapshot, CAPTURE_PICKUP, actor_id, moment))
            if job.ActualPickupTime is None:
                job.ActualPickupTime = moment
                job.PickedUpBy = actor_id
            _transition_state(job, STATUS_PICKED_UP, moment)
            if not job.AccessPayload:
                job.AccessPayload = issue_access_payload(job)

            if extra_hour_return_time is not None:
                request = add_extension_request(
                    db,
                    job,
                    extra_hour_return_time,
                    ORIGIN_STAFF,
                    requested_by=actor_id,
                    strategy=STRATEGY_DAY_HOUR,
                )
                resolve_staff_extension(request, actor_id, collected_amount, moment)
            elif collected_amount is not None:
                raise RentalValidationError("A collected amount needs an extra-hour return time.")
        except Exception:
            db.rollback()
            raise
        _commit_transition(db, job.JobNumber)

    LIFECYCLE_LOGGER.info("Pickup committed job=%s actor=%s", job.JobNumber, actor_id)
    return job


def process_return(
    db: Session,
    job_number: str,
    snapshot,
    actor_id: int | None,
    unplanned_extra_payment: float | None = None,
    now: datetime | None = None,
) -> RentalJob:
    moment = now or datetime.now()
    with job_lock(job_number):
        try:
            job = get_job(db, job_number)
            if job.Status != STATUS_PICKED_UP:
                LIFECYCLE_LOGGER.warning("Return rejected job=%s status=%s actor=%s", job.JobNumber, job.Status, actor_id)
                raise InvalidStateError(f"Job {job.JobNumber} cannot be returned from state {job.Status}.")

            pickup_snapshot = latest_snapshot(job, CAPTURE_PICKUP)
            if pickup_snapshot is None:
                raise InvalidStateError(f"Job {job.JobNumber} has no pickup snapshot on record.")

            record = _build_snapshot(snapshot, CAPTURE_RETURN, actor_id, moment)
            job.Snapshots.append(record)
            if job.ActualReturnTime is None:
                job.ActualReturnTime = moment
                job.ReturnedBy = actor_id
            _transition_state(job, STATUS_RETURNED, moment)

            extra_charge = compute_unplanned_extra_charge(effective_return_time(job), moment)
            low_fuel_charge = compute_low_fuel_charge(pickup_snapshot.FuelLevel, record.FuelLevel)
            job.UnplannedExtraCharge = extra_charge
            job.UnplannedExtraPayment = _settle_extra_payment(extra_charge, unplanned_extra_payment)
            job.LowFuelCharge = low_fuel_charge
            job.DepositRefund = round(float(job.DepositAmount or 0) - extra_charge - low_fuel_charge, 2)
        except Exception:
            db.rollback()
            raise
        _commit_transition(db, job.JobNumber)

    LIFECYCLE_LOGGER.info(
        "Return committed job=%s actor=%s extra=%s low_fuel=%s",
        job.JobNumber,
        actor_id,
        job.UnplannedExtraCharge,
        job.LowFuelCharge,
    )
    return job


def view_confirmation(db: Session, job_number: str, transition: str) -> ConditionSnapshot:
    capture_type = normalize_capture_type(transition)
    job = get_job(db, job_number)
    if not _transition_occurred(job, capture_type):
        raise NotAvailableError(f"{capture_type} confirmation is not available for job {job.JobNumber} yet.")
    snapshot = latest_snapshot(job, capture_type)
    if snapshot is None:
        raise NotAvailableError(f"No {capture_type.lower()} snapshot recorded for job {job.JobNumber}.")
    return snapshot


def record_correction(
    db: Session,
    job_number: str,
    transition: str,
    snapshot,
    actor_id: int | None,
    reason: str | None,
    now: datetime | None = None,
) -> ConditionSnapshot:
    capture_type = normalize_capture_type(transition)
    correction_reason = (reason or "").strip()
    if not correction_reason:
        raise RentalValidationError("A correction reason is required.")
    moment = now or datetime.now()
    with job_lock(job_number):
        try:
            job = get_job(db, job_number)
            if not _transition_occurred(job, capture_type):
                raise NotAvailableError(
                    f"Cannot correct the {capture_type.lower()} snapshot of job {job.JobNumber} before it happened."
                )
            record = _build_snapshot(snapshot, capture_type, actor_id, moment, correction_reason)
            job.Snapshots.append(record)
            job.UpdatedDate = moment
        except Exception:
            db.rollback()
            raise
        _commit_transition(db, job.JobNumber)

    LIFECYCLE_LOGGER.info("Snapshot correction recorded job=%s type=%s actor=%s", job.JobNumber, capture_type, actor_id)
    return record
