import os
import sys
from datetime import datetime
from pathlib import Path


os.environ.setdefault("FLEET_RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("LOCAL_ADMIN_PASSWORD", "admin-test-pin")
os.environ.setdefault("CUSTOMER_PORTAL_BASE_URL", "https://portal.example.test")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import SessionLocalRental, engine_rental
from models import rental_models  # noqa: F401
from schemas.jobs import ConditionSnapshotDto, CreateJobDto
from services.job_store import create_job


JOB_NUMBER = "JOB-2025-001"
HOLDER_MOBILE = "+60123456789"
AGREED_START = datetime(2025, 1, 10, 9, 0)
AGREED_END = datetime(2025, 1, 15, 18, 0)


def reset_database() -> None:
    Base.metadata.drop_all(engine_rental)
    Base.metadata.create_all(engine_rental)


def make_session():
    return SessionLocalRental()


def make_job(db, job_number: str = JOB_NUMBER, mobile: str = HOLDER_MOBILE, deposit: float = 150.0, **overrides):
    payload = {
        "jobNumber": job_number,
        "customerName": "John Smith",
        "customerMobile": mobile,
        "carName": "Toyota Camry",
        "startTime": AGREED_START,
        "endTime": AGREED_END,
        "depositAmount": deposit,
    }
    payload.update(overrides)
    return create_job(db, CreateJobDto(**payload))


def make_snapshot(capture_type: str = "Pickup", **overrides) -> ConditionSnapshotDto:
    payload = {
        "captureType": capture_type,
        "odometer": 50000,
        "fuelLevel": "1",
        "agreementImages": ["xq-JOB-2025-001-agr-1.jpg"],
        "documentImages": ["xq-JOB-2025-001-doc-1.jpg"],
        "panelImages": ["xq-JOB-2025-001-ins-1.jpg"],
        "agreementReference": "AGR-2025-001",
    }
    payload.update(overrides)
    return ConditionSnapshotDto(**payload)
