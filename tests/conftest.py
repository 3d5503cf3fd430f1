"""
Pytest configuration for the reminder backend test suite.

Shared fixtures:
- An isolated in-memory SQLite database per test (StaticPool, so every session
  in the test sees the same data).
- A factory for patients with prescriptions, schedules and inventory rows.
- A recording sender standing in for the LINE push call.
- Helpers for pinning instants in a prescription's local timezone.
"""
import os
from datetime import datetime

# Point the app at a throwaway database before any backend module is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("CRON_SECRET", "test-secret")

import pytest  # noqa: E402
import pytz  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import line_bot  # noqa: E402
from database import Base  # noqa: E402
from models import DoseSchedule, MealRelation, MedicationInventory, Patient, Prescription  # noqa: E402

BANGKOK = pytz.timezone("Asia/Bangkok")


def bkk(hour, minute, day=2, month=3, year=2026):
    """An aware instant at the given Bangkok wall-clock time."""
    return BANGKOK.localize(datetime(year, month, day, hour, minute))


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class RecordingSender:
    """Collects pushed messages; set ``fail`` to simulate a LINE error."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def __call__(self, to, text):
        if self.fail:
            raise line_bot.LineDeliveryError("LINE 500: boom")
        self.sent.append((to, text))


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def make_prescription(db):
    """Create a prescription (and its patient unless given) with an active inventory row.

    ``schedules`` is a list of (period, "HH:MM", pills) tuples.
    """
    counter = {"n": 0}

    def _make(
        patient=None,
        drug_name="Paracetamol",
        schedules=(("BEFORE_BREAKFAST", "07:00", 1),),
        quantity_total=None,
        timezone="Asia/Bangkok",
        line_user_id="U-patient-1",
        full_name="Somchai Jaidee",
        start_date=datetime(2026, 1, 1),
        end_date=None,
        inventory_active=True,
    ):
        counter["n"] += 1
        if patient is None:
            patient = Patient(full_name=full_name, hn=f"HN{counter['n']:04d}", line_user_id=line_user_id)
            db.add(patient)
            db.flush()
        rx = Prescription(
            patient_id=patient.id,
            opaque_id=f"op{counter['n']:06d}",
            drug_name=drug_name,
            timezone=timezone,
            quantity_total=quantity_total,
            start_date=start_date,
            end_date=end_date,
            schedules=[
                DoseSchedule(period=MealRelation(period), hhmm=hhmm, pills=pills)
                for period, hhmm, pills in schedules
            ],
        )
        db.add(rx)
        db.flush()
        db.add(MedicationInventory(patient_id=patient.id, prescription_id=rx.id, is_active=inventory_active))
        db.commit()
        return rx

    return _make
