"""Completeness rules for pickup/return condition snapshots.

Rules run in a fixed order. ``validate_snapshot`` stops at the first failure,
``collect_snapshot_errors`` reports all of them so a form can highlight every
missing field at once.
"""

from __future__ import annotations

from fractions import Fraction
from typing import Any, Callable

from services.errors import RentalValidationError


CAPTURE_PICKUP = "Pickup"
CAPTURE_RETURN = "Return"
CAPTURE_TYPES = {CAPTURE_PICKUP, CAPTURE_RETURN}

PHOTO_CATEGORIES = (
    ("agreementImages", "agr", "Car agreement photos are required."),
    ("documentImages", "doc", "Customer document photos are required."),
    ("panelImages", "ins", "Instrument panel photos are required."),
)
PHOTO_PREFIXES = {field: prefix for field, prefix, _ in PHOTO_CATEGORIES}

FUEL_LABELS = {
    "empty": 0.0,
    "e": 0.0,
    "full": 1.0,
    "f": 1.0,
}


def normalize_capture_type(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    for capture_type in CAPTURE_TYPES:
        if capture_type.lower() == value:
            return capture_type
    raise RentalValidationError(f"Capture type must be one of {sorted(CAPTURE_TYPES)}, got {raw!r}.")


def parse_fuel_level(raw: Any) -> float:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise RentalValidationError("Fuel level is required.")
    if isinstance(raw, bool):
        raise RentalValidationError("Fuel level must be a fraction between 0 and 1.")
    if isinstance(raw, (int, float)):
        level = float(raw)
    else:
        text = raw.strip().lower()
        if text in FUEL_LABELS:
            return FUEL_LABELS[text]
        try:
            level = float(Fraction(text))
        except (ValueError, ZeroDivisionError) as exc:
            raise RentalValidationError(f"Fuel level {raw!r} is not a recognised level.") from exc
    if not 0.0 <= level <= 1.0:
        raise RentalValidationError("Fuel level must be a fraction between 0 and 1.")
    return level


def _check_odometer(snapshot) -> str | None:
    odometer = getattr(snapshot, "odometer", None)
    if odometer is None:
        return "Mileage (odometer reading) is required."
    if int(odometer) < 0:
        return "Mileage (odometer reading) must not be negative."
    return None


def _check_fuel_level(snapshot) -> str | None:
    try:
        parse_fuel_level(getattr(snapshot, "fuelLevel", None))
    except RentalValidationError as exc:
        return str(exc)
    return None


def _photo_rule(field: str, message: str) -> Callable[[Any], str | None]:
    def _check(snapshot) -> str | None:
        photos = [item for item in (getattr(snapshot, field, None) or []) if str(item or "").strip()]
        return None if photos else message

    return _check


def _check_agreement_reference(snapshot) -> str | None:
    if not str(getattr(snapshot, "agreementReference", None) or "").strip():
        return "Car agreement ID is required."
    return None


SNAPSHOT_RULES: list[Callable[[Any], str | None]] = [
    _check_odometer,
    _check_fuel_level,
    *[_photo_rule(field, message) for field, _, message in PHOTO_CATEGORIES],
    _check_agreement_reference,
]


def collect_snapshot_errors(snapshot) -> list[str]:
    errors = []
    for rule in SNAPSHOT_RULES:
        reason = rule(snapshot)
        if reason:
            errors.append(reason)
    return errors


def validate_snapshot(snapshot) -> None:
    for rule in SNAPSHOT_RULES:
        reason = rule(snapshot)
        if reason:
            raise RentalValidationError(reason)


def build_photo_reference(job_number: str, category: str, index: int, extension: str = "jpg") -> str:
    prefix = PHOTO_PREFIXES.get(category)
    if not prefix:
        raise RentalValidationError(f"Unknown photo category: {category}")
    if index < 1:
        raise RentalValidationError("Photo index starts at 1.")
    ext = (extension or "jpg").lstrip(".").lower()
    return f"xq-{job_number}-{prefix}-{index}.{ext}"
