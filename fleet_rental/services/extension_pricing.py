from __future__ import annotations

import math
import os
from dataclasses import dataclass
from datetime import datetime, timedelta

from services.errors import RentalValidationError


RATE_PEAK = "Peak"
RATE_LOW = "Low"
STRATEGY_HOURLY = "hourly"
STRATEGY_DAY_HOUR = "day_hour"

ONE_HOUR = timedelta(hours=1)
ONE_DAY = timedelta(days=1)

PEAK_HOURLY_RATE = float(os.environ.get("EXTENSION_PEAK_HOURLY_RATE") or "15")
LOW_HOURLY_RATE = float(os.environ.get("EXTENSION_LOW_HOURLY_RATE") or "10")
PEAK_SESSION_START_HOUR = int(os.environ.get("PEAK_SESSION_START_HOUR") or "8")
PEAK_SESSION_END_HOUR = int(os.environ.get("PEAK_SESSION_END_HOUR") or "20")
PR_EXTRA_DAY_RATE = float(os.environ.get("PR_EXTRA_DAY_RATE") or "50")
PR_EXTRA_HOUR_RATE = float(os.environ.get("PR_EXTRA_HOUR_RATE") or "5")
LOW_FUEL_BASE_CHARGE = float(os.environ.get("LOW_FUEL_BASE_CHARGE") or "15")
LOW_FUEL_CHARGE_PER_TANK = float(os.environ.get("LOW_FUEL_CHARGE_PER_TANK") or "20")


@dataclass(frozen=True)
class ExtensionCalculation:
    strategy: str
    hours: int
    days: int
    remainder_hours: int
    rate_class: str
    hourly_rate: float
    fee: float

    @property
    def is_peak(self) -> bool:
        return self.rate_class == RATE_PEAK


def classify_rate(proposed_return_time: datetime, peak_start_hour: int, peak_end_hour: int) -> str:
    hour = proposed_return_time.hour
    return RATE_PEAK if peak_start_hour <= hour < peak_end_hour else RATE_LOW


def _check_session_hours(start: int, end: int) -> None:
    if not (0 <= start < end <= 24):
        raise ValueError(f"Peak session hours must satisfy 0 <= start < end <= 24, got {start}-{end}.")


@dataclass(frozen=True)
class HourlySessionRates:
    """Every started hour is billed at the Peak or Low rate of the proposed return hour."""

    peak_rate: float
    low_rate: float
    peak_start_hour: int = 8
    peak_end_hour: int = 20

    name = STRATEGY_HOURLY

    def __post_init__(self):
        if self.low_rate < 0:
            raise ValueError("Low hourly rate must not be negative.")
        if self.peak_rate <= self.low_rate:
            raise ValueError("Peak hourly rate must be greater than the low hourly rate.")
        _check_session_hours(self.peak_start_hour, self.peak_end_hour)

    def price(self, elapsed: timedelta, proposed_return_time: datetime) -> ExtensionCalculation | None:
        hours = math.ceil(elapsed / ONE_HOUR)
        if hours <= 0:
            return None
        rate_class = classify_rate(proposed_return_time, self.peak_start_hour, self.peak_end_hour)
        rate = self.peak_rate if rate_class == RATE_PEAK else self.low_rate
        return ExtensionCalculation(
            strategy=self.name,
            hours=hours,
            days=hours // 24,
            remainder_hours=hours % 24,
            rate_class=rate_class,
            hourly_rate=rate,
            fee=round(hours * rate, 2),
        )


@dataclass(frozen=True)
class DayHourRates:
    """Whole days at the day rate plus leftover whole hours at the hour rate (P&R extra charge)."""

    day_rate: float
    hour_rate: float
    peak_start_hour: int = 8
    peak_end_hour: int = 20

    name = STRATEGY_DAY_HOUR

    def __post_init__(self):
        if self.day_rate < 0 or self.hour_rate < 0:
            raise ValueError("Day and hour rates must not be negative.")
        _check_session_hours(self.peak_start_hour, self.peak_end_hour)

    def price(self, elapsed: timedelta, proposed_return_time: datetime) -> ExtensionCalculation | None:
        if elapsed <= timedelta(0):
            return None
        days = elapsed // ONE_DAY
        remainder_hours = (elapsed % ONE_DAY) // ONE_HOUR
        if days == 0 and remainder_hours == 0:
            return None
        return ExtensionCalculation(
            strategy=self.name,
            hours=days * 24 + remainder_hours,
            days=days,
            remainder_hours=remainder_hours,
            rate_class=classify_rate(proposed_return_time, self.peak_start_hour, self.peak_end_hour),
            hourly_rate=self.hour_rate,
            fee=round(days * self.day_rate + remainder_hours * self.hour_rate, 2),
        )


HOURLY_SESSION_RATES = HourlySessionRates(
    peak_rate=PEAK_HOURLY_RATE,
    low_rate=LOW_HOURLY_RATE,
    peak_start_hour=PEAK_SESSION_START_HOUR,
    peak_end_hour=PEAK_SESSION_END_HOUR,
)
DAY_HOUR_RATES = DayHourRates(
    day_rate=PR_EXTRA_DAY_RATE,
    hour_rate=PR_EXTRA_HOUR_RATE,
    peak_start_hour=PEAK_SESSION_START_HOUR,
    peak_end_hour=PEAK_SESSION_END_HOUR,
)
STRATEGIES = {
    STRATEGY_HOURLY: HOURLY_SESSION_RATES,
    STRATEGY_DAY_HOUR: DAY_HOUR_RATES,
}


def normalize_timestamp(value: datetime | None) -> datetime | None:
    """Aware values become naive server-local time, matching what the store holds."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def get_strategy(strategy: str | HourlySessionRates | DayHourRates | None = None) -> HourlySessionRates | DayHourRates:
    if strategy is None:
        return HOURLY_SESSION_RATES
    if isinstance(strategy, (HourlySessionRates, DayHourRates)):
        return strategy
    key = str(strategy).strip().lower()
    if key not in STRATEGIES:
        raise RentalValidationError(f"Unknown extension pricing strategy: {strategy}")
    return STRATEGIES[key]


def compute_extension(
    reference_return_time: datetime,
    proposed_return_time: datetime,
    strategy: str | HourlySessionRates | DayHourRates | None = None,
) -> ExtensionCalculation | None:
    reference = normalize_timestamp(reference_return_time)
    proposed = normalize_timestamp(proposed_return_time)
    return get_strategy(strategy).price(proposed - reference, proposed)


def compute_unplanned_extra_charge(effective_return_time: datetime, actual_return_time: datetime) -> float:
    calculation = compute_extension(effective_return_time, actual_return_time, DAY_HOUR_RATES)
    return calculation.fee if calculation else 0.0


def compute_low_fuel_charge(
    pickup_fuel_level: float | None,
    return_fuel_level: float,
    base_charge: float = LOW_FUEL_BASE_CHARGE,
    charge_per_tank: float = LOW_FUEL_CHARGE_PER_TANK,
) -> float:
    pickup_level = 1.0 if pickup_fuel_level is None else float(pickup_fuel_level)
    return_level = float(return_fuel_level)
    if return_level >= pickup_level:
        return 0.0
    return round(max(base_charge, (pickup_level - return_level) * charge_per_tank), 2)
