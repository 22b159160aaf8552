from __future__ import annotations

import hmac
import logging

from sqlalchemy.orm import Session

from models.rental_models import RentalJob
from services.errors import AuthenticationError
from services.job_store import get_job


IDENTITY_LOGGER = logging.getLogger("fleet_rental.identity")
_CONTACT_SEPARATORS = {" ", "-", "(", ")", "\t"}


def normalize_contact(raw: str | None) -> str:
    value = str(raw or "").strip().lower()
    return "".join(ch for ch in value if ch not in _CONTACT_SEPARATORS)


def contacts_match(recorded: str | None, presented: str | None) -> bool:
    left = normalize_contact(recorded)
    right = normalize_contact(presented)
    if not left or not right:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def verify_job_holder(db: Session, job_number: str, presented_contact: str | None) -> RentalJob:
    job = get_job(db, job_number)
    if not contacts_match(job.CustomerMobile, presented_contact):
        IDENTITY_LOGGER.warning("Identity check failed job=%s", job.JobNumber)
        raise AuthenticationError("Job ID and mobile number do not match.")
    return job
