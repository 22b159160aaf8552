import logging
import os
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.deps import get_rental_db
from models.rental_models import AuditLog
from schemas.extensions import ExtensionPaymentRequest, ExtensionQuoteRequest, SubmitExtensionRequest
from schemas.jobs import (
    ConditionSnapshotDto,
    CorrectionRequest,
    CreateJobDto,
    CustomerVerifyRequest,
    PickupRequest,
    ReturnRequest,
)
from services.access_payload_service import read_access_payload
from services.errors import (
    AuthenticationError,
    InvalidStateError,
    NotAvailableError,
    NotFoundError,
    RentalOpsError,
    RentalValidationError,
)
from services.extension_pricing import compute_extension, normalize_timestamp
from services.extension_service import (
    ORIGIN_CUSTOMER,
    ORIGIN_STAFF,
    approve_extension,
    list_extensions,
    record_payment,
    reject_extension,
    submit_extension,
)
from services.identity_gate import verify_job_holder
from services.job_lifecycle import process_pickup, process_return, record_correction, view_confirmation
from services.job_store import (
    create_job,
    effective_return_time,
    get_job,
    search_jobs,
    serialize_extension,
    serialize_job,
    serialize_snapshot,
)
from services.snapshot_validator import build_photo_reference, collect_snapshot_errors
from services.staff_access_service import (
    build_session_payload,
    create_session,
    get_session,
    is_staff_role,
    remove_session,
    rights_for_role,
    verify_staff_password,
)

app = FastAPI(title="Fleet Rental Ops")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
_APP_SESSION_SECRET = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
if len(_APP_SESSION_SECRET) >= 32:
    app.add_middleware(
        SessionMiddleware,
        secret_key=_APP_SESSION_SECRET,
        session_cookie="fleet_rental_session",
        same_site="lax",
        https_only=False,
    )

LOCAL_ADMIN_USERNAME = "admin"
LOCAL_ADMIN_PASSWORD = (os.environ.get("LOCAL_ADMIN_PASSWORD") or "").strip()
LOCAL_ADMIN_STAFF_ID = 999999
AUTH_LOGGER = logging.getLogger("fleet_rental.auth")

ERROR_STATUS_CODES = (
    (RentalValidationError, 400),
    (AuthenticationError, 401),
    (NotFoundError, 404),
    (NotAvailableError, 404),
    (InvalidStateError, 409),
)


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str | None = None
    password: str | None = None


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _http_error(exc: RentalOpsError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _invalid_login_error() -> HTTPException:
    return HTTPException(status_code=401, detail="Invalid credentials.")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_rental_db)):
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid login request.")

    username = str(parsed.username or "").strip().lower()
    password = str(parsed.password or "")
    if not username:
        raise HTTPException(status_code=400, detail="Invalid login request.")

    if username == LOCAL_ADMIN_USERNAME:
        if not LOCAL_ADMIN_PASSWORD or password != LOCAL_ADMIN_PASSWORD:
            AUTH_LOGGER.warning("Login failed user=%s reason=invalid_admin_password", username)
            raise _invalid_login_error()
        session_payload = {
            "staffUserID": LOCAL_ADMIN_STAFF_ID,
            "username": LOCAL_ADMIN_USERNAME,
            "displayName": "Administrator",
            "role": "Super Admin",
            "rights": rights_for_role("Super Admin"),
            "isLocalAdmin": True,
        }
    else:
        user = verify_staff_password(db, username, password)
        if user is None:
            AUTH_LOGGER.warning("Login failed user=%s reason=invalid_staff_credentials", username)
            raise _invalid_login_error()
        session_payload = build_session_payload(user)

    token = create_session(session_payload)
    request.session["user"] = dict(session_payload)
    log_audit(db, "Auth", int(session_payload["staffUserID"]), "LoginSuccess", f"user={username}", user_id=session_payload["staffUserID"])
    db.commit()
    AUTH_LOGGER.info("Login success user=%s role=%s", username, session_payload["role"])
    return {"sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    session = _require_session_or_401(request, x_session_token)
    return {"user": session}


@app.get("/api/jobs")
def get_jobs(
    request: Request,
    q: str = Query("", alias="q"),
    stage: str = Query("all", alias="stage"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_staff_or_403(request, x_session_token)
    try:
        jobs = search_jobs(db, q, stage, limit)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    return [serialize_job(job) for job in jobs]


@app.get("/api/jobs/{job_number}")
def get_job_detail(
    request: Request,
    job_number: str,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_staff_or_403(request, x_session_token)
    try:
        job = get_job(db, job_number)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    return serialize_job(job, include_snapshots=True)


@app.post("/api/jobs")
def create_job_endpoint(
    request: Request,
    payload: CreateJobDto,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_staff_or_403(request, x_session_token, "manageJobs")
    actor_id = _session_actor_id(session)
    try:
        job = create_job(db, payload)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(db, "RentalJob", job.JobID, "CreateJob", f"Created {job.JobNumber}", user_id=actor_id)
    db.commit()
    return serialize_job(job)


@app.post("/api/jobs/{job_number}/pickup")
def pickup_job(
    request: Request,
    job_number: str,
    payload: PickupRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_staff_or_403(request, x_session_token, "processPickupReturn")
    actor_id = _session_actor_id(session)
    try:
        job = process_pickup(
            db,
            job_number,
            payload,
            actor_id,
            extra_hour_return_time=payload.extraHourReturnTime,
            collected_amount=payload.collectedAmount,
        )
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(db, "RentalJob", job.JobID, "Pickup", f"Picked up {job.JobNumber}", user_id=actor_id)
    db.commit()
    body = serialize_job(job, include_snapshots=True)
    body["accessPayload"] = job.AccessPayload
    return body


@app.post("/api/jobs/{job_number}/return")
def return_job(
    request: Request,
    job_number: str,
    payload: ReturnRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_staff_or_403(request, x_session_token, "processPickupReturn")
    actor_id = _session_actor_id(session)
    try:
        job = process_return(db, job_number, payload, actor_id, unplanned_extra_payment=payload.unplannedExtraPayment)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(
        db,
        "RentalJob",
        job.JobID,
        "Return",
        f"Returned {job.JobNumber} refund={job.DepositRefund}",
        user_id=actor_id,
    )
    db.commit()
    return serialize_job(job, include_snapshots=True)


@app.post("/api/jobs/{job_number}/corrections/{transition}")
def correct_job_snapshot(
    request: Request,
    job_number: str,
    transition: str,
    payload: CorrectionRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_staff_or_403(request, x_session_token, "processPickupReturn")
    actor_id = _session_actor_id(session)
    try:
        snapshot = record_correction(db, job_number, transition, payload, actor_id, payload.reason)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(db, "RentalJob", snapshot.JobID, "SnapshotCorrection", payload.reason, user_id=actor_id)
    db.commit()
    return serialize_snapshot(snapshot)


@app.get("/api/jobs/{job_number}/confirmation/{transition}")
def get_confirmation(
    request: Request,
    job_number: str,
    transition: str,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_staff_or_403(request, x_session_token)
    try:
        snapshot = view_confirmation(db, job_number, transition)
        job = get_job(db, job_number)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    return {
        "job": serialize_job(job),
        "snapshot": serialize_snapshot(snapshot),
        "accessPayload": job.AccessPayload,
    }


@app.post("/api/snapshots/validate")
def validate_snapshot_endpoint(
    request: Request,
    payload: ConditionSnapshotDto,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_staff_or_403(request, x_session_token, "processPickupReturn")
    errors = collect_snapshot_errors(payload)
    return {"valid": not errors, "errors": errors}


@app.get("/api/jobs/{job_number}/photo-names")
def get_photo_names(
    request: Request,
    job_number: str,
    category: str = Query(...),
    count: int = Query(1, ge=1, le=20),
    extension: str = Query("jpg"),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_staff_or_403(request, x_session_token, "processPickupReturn")
    try:
        job = get_job(db, job_number)
        names = [build_photo_reference(job.JobNumber, category, index, extension) for index in range(1, count + 1)]
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    return {"jobNumber": job.JobNumber, "category": category, "names": names}


@app.get("/api/jobs/{job_number}/access-payload")
def get_access_payload(
    request: Request,
    job_number: str,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_staff_or_403(request, x_session_token)
    try:
        job = get_job(db, job_number)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    if not job.AccessPayload:
        raise HTTPException(status_code=404, detail=f"Job {job.JobNumber} has not been picked up yet.")
    return {"jobNumber": job.JobNumber, "accessPayload": job.AccessPayload}


@app.post("/api/extensions/quote")
def quote_extension(payload: ExtensionQuoteRequest, db: Session = Depends(get_rental_db)):
    try:
        if payload.jobNumber:
            reference = effective_return_time(get_job(db, payload.jobNumber))
        elif payload.referenceReturnTime:
            reference = normalize_timestamp(payload.referenceReturnTime)
        else:
            raise HTTPException(status_code=400, detail="jobNumber or referenceReturnTime is required.")
        proposed = normalize_timestamp(payload.proposedReturnTime)
        calculation = compute_extension(reference, proposed, payload.strategy)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    if calculation is None:
        return {"valid": False, "referenceReturnTime": reference, "proposedReturnTime": proposed}
    return {
        "valid": True,
        "referenceReturnTime": reference,
        "proposedReturnTime": proposed,
        "strategy": calculation.strategy,
        "hours": calculation.hours,
        "days": calculation.days,
        "remainderHours": calculation.remainder_hours,
        "rateClass": calculation.rate_class,
        "isPeak": calculation.is_peak,
        "hourlyRate": calculation.hourly_rate,
        "fee": calculation.fee,
    }


@app.post("/api/jobs/{job_number}/extensions")
def create_extension(
    request: Request,
    job_number: str,
    payload: SubmitExtensionRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _get_active_session(request, x_session_token)
    try:
        if is_staff_role(session):
            origin = ORIGIN_STAFF
            actor_id = _session_actor_id(session)
        else:
            if payload.collectedAmount is not None:
                raise HTTPException(status_code=403, detail="Only staff can record a collected amount.")
            verify_job_holder(db, job_number, payload.customerMobile)
            origin = ORIGIN_CUSTOMER
            actor_id = None
        extension = submit_extension(
            db,
            job_number,
            payload.proposedReturnTime,
            origin,
            requested_by=actor_id,
            strategy=payload.strategy,
            collected_amount=payload.collectedAmount,
        )
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(
        db,
        "ExtensionRequest",
        extension.ExtensionRequestID,
        "SubmitExtension",
        f"{origin} request for {extension.Job.JobNumber} until {payload.proposedReturnTime}",
        user_id=actor_id,
    )
    db.commit()
    return serialize_extension(extension)


@app.get("/api/extensions")
def get_extensions(
    request: Request,
    status: str | None = Query(None, alias="status"),
    job_number: str | None = Query(None, alias="jobNumber"),
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_staff_or_403(request, x_session_token)
    return [serialize_extension(item) for item in list_extensions(db, status=status, job_number=job_number)]


@app.post("/api/extensions/{request_id}/approve")
def approve_extension_endpoint(
    request: Request,
    request_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_staff_or_403(request, x_session_token, "approveExtensions")
    actor_id = _session_actor_id(session)
    try:
        extension = approve_extension(db, request_id, actor_id)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(db, "ExtensionRequest", request_id, "ApproveExtension", None, user_id=actor_id)
    db.commit()
    return serialize_extension(extension)


@app.post("/api/extensions/{request_id}/reject")
def reject_extension_endpoint(
    request: Request,
    request_id: int,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_staff_or_403(request, x_session_token, "approveExtensions")
    actor_id = _session_actor_id(session)
    try:
        extension = reject_extension(db, request_id, actor_id)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(db, "ExtensionRequest", request_id, "RejectExtension", None, user_id=actor_id)
    db.commit()
    return serialize_extension(extension)


@app.post("/api/extensions/{request_id}/payment")
def record_extension_payment(
    request: Request,
    request_id: int,
    payload: ExtensionPaymentRequest,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_staff_or_403(request, x_session_token, "approveExtensions")
    actor_id = _session_actor_id(session)
    try:
        extension = record_payment(db, request_id, payload.collectedAmount, resolved_by=actor_id)
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    log_audit(db, "ExtensionRequest", request_id, "RecordPayment", f"amount={payload.collectedAmount}", user_id=actor_id)
    db.commit()
    return serialize_extension(extension)


@app.post("/api/customer/verify")
def customer_verify(payload: CustomerVerifyRequest, db: Session = Depends(get_rental_db)):
    try:
        job = verify_job_holder(db, payload.jobNumber, payload.mobile)
    except NotFoundError as exc:
        # Unknown job and wrong mobile look the same to the caller.
        raise HTTPException(status_code=401, detail="Job ID and mobile number do not match.") from exc
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    return serialize_job(job)


@app.get("/api/customer/access")
def customer_access(payload: str = Query(..., alias="payload"), db: Session = Depends(get_rental_db)):
    try:
        job_number, mobile = read_access_payload(payload)
        job = verify_job_holder(db, job_number, mobile)
    except NotFoundError as exc:
        raise HTTPException(status_code=401, detail="Access payload is not valid.") from exc
    except RentalOpsError as exc:
        raise _http_error(exc) from exc
    return serialize_job(job)


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_cookie = request.session.get("user") if "session" in request.scope else None
    if isinstance(session_from_cookie, dict):
        return dict(session_from_cookie)
    session_from_token = get_session(session_token)
    if session_from_token:
        if "session" in request.scope:
            request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    return None


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_staff_or_403(request: Request, session_token: str | None, right: str | None = None) -> dict:
    session = _require_session_or_401(request, session_token)
    if not is_staff_role(session, right):
        raise HTTPException(status_code=403, detail="This action is only available to authorised staff.")
    return session


def _session_actor_id(session: dict | None) -> int | None:
    if not session:
        return None
    try:
        value = int(session.get("staffUserID") or 0)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None
