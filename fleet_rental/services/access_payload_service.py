"""Customer portal access payloads.

The payload is the URL encoded into the QR code shown after pickup. It carries
the job number and the holder's mobile number plus an HMAC over both, and has
no timestamp or nonce: the same job always yields the same bytes, so a printed
code stays valid for the life of the job.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
from urllib.parse import parse_qs, quote, urlencode, urlsplit

from models.rental_models import RentalJob
from services.errors import AuthenticationError
from services.identity_gate import normalize_contact


CUSTOMER_PORTAL_BASE_URL = (os.environ.get("CUSTOMER_PORTAL_BASE_URL") or "http://localhost:3000").strip().rstrip("/")
CUSTOMER_ACCESS_PATH = "/pr/customer"


def _require_payload_secret() -> bytes:
    raw = (os.environ.get("ACCESS_PAYLOAD_SECRET") or os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("ACCESS_PAYLOAD_SECRET (or SESSION_SIGNING_SECRET) must be set and at least 32 characters long.")
    return raw.encode("utf-8")


def _sign(job_number: str, mobile: str) -> str:
    message = f"{job_number.strip().upper()}\n{normalize_contact(mobile)}".encode("utf-8")
    signature = hmac.new(_require_payload_secret(), message, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(signature).decode("ascii").rstrip("=")


def build_access_payload(job_number: str, mobile: str) -> str:
    query = urlencode(
        {"jobId": job_number, "mobile": mobile, "sig": _sign(job_number, mobile)},
        quote_via=quote,
    )
    return f"{CUSTOMER_PORTAL_BASE_URL}{CUSTOMER_ACCESS_PATH}?{query}"


def issue_access_payload(job: RentalJob) -> str:
    return build_access_payload(job.JobNumber, job.CustomerMobile)


def read_access_payload(payload: str) -> tuple[str, str]:
    try:
        params = parse_qs(urlsplit((payload or "").strip()).query, strict_parsing=True)
    except ValueError as exc:
        raise AuthenticationError("Access payload is malformed.") from exc

    job_number = (params.get("jobId") or [""])[0]
    mobile = (params.get("mobile") or [""])[0]
    supplied_sig = (params.get("sig") or [""])[0]
    if not job_number or not mobile or not supplied_sig:
        raise AuthenticationError("Access payload is incomplete.")
    if not hmac.compare_digest(_sign(job_number, mobile).encode("ascii"), supplied_sig.encode("ascii", "replace")):
        raise AuthenticationError("Access payload signature is invalid.")
    return job_number, mobile
