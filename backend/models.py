# backend/models.py
import datetime
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class MealRelation(str, enum.Enum):
    BEFORE_BREAKFAST = "BEFORE_BREAKFAST"
    AFTER_BREAKFAST = "AFTER_BREAKFAST"
    BEFORE_LUNCH = "BEFORE_LUNCH"
    AFTER_LUNCH = "AFTER_LUNCH"
    BEFORE_DINNER = "BEFORE_DINNER"
    AFTER_DINNER = "AFTER_DINNER"
    BEFORE_BED = "BEFORE_BED"
    CUSTOM = "CUSTOM"


# 1. Patient Table
class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    age = Column(Integer, nullable=True)

    # Hospital number, locks a patient identity to one full name
    hn = Column(String, unique=True, index=True, nullable=True)

    # LINE user id, set once the patient links their chat account
    line_user_id = Column(String, unique=True, index=True, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    prescriptions = relationship("Prescription", back_populates="patient")
    inventories = relationship("MedicationInventory", back_populates="patient")


# 2. Prescription Table (one course of one drug)
class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)

    # Short random token printed on the paper prescription
    opaque_id = Column(String, unique=True, index=True, nullable=False)
    drug_name = Column(String, nullable=False)
    issue_date = Column(DateTime, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    timezone = Column(String, nullable=True)

    # Total pills in the course; NULL means the course never completes
    quantity_total = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    patient = relationship("Patient", back_populates="prescriptions")
    schedules = relationship(
        "DoseSchedule",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="DoseSchedule.hhmm",
    )
    inventories = relationship("MedicationInventory", back_populates="prescription")


# 3. Dose slots of a prescription
class DoseSchedule(Base):
    __tablename__ = "dose_schedules"

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), index=True, nullable=False)
    period = Column(Enum(MealRelation), nullable=False)

    # Always zero-padded 24h "HH:MM" in the prescription's timezone
    hhmm = Column(String(5), nullable=False)
    pills = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    prescription = relationship("Prescription", back_populates="schedules")


# 4. Doses actually taken
class DoseIntake(Base):
    __tablename__ = "dose_intakes"
    __table_args__ = (
        UniqueConstraint("patient_id", "prescription_id", "slot_date", "hhmm", name="uq_dose_intake_slot"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False)
    slot_date = Column(Date, nullable=False)
    hhmm = Column(String(5), nullable=False)
    taken_at = Column(DateTime, default=utcnow, nullable=False)
    pills = Column(Integer, nullable=False)


# 5. Reminders sent (append-only, most recent wins)
class NotificationLog(Base):
    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("ix_notification_log_slot", "patient_id", "prescription_id", "hhmm", "slot_date", "sent_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=False)
    hhmm = Column(String(5), nullable=False)
    slot_date = Column(Date, nullable=True)
    sent_at = Column(DateTime, default=utcnow, nullable=False)


# 6. Per-patient reminder switch for a prescription
class MedicationInventory(Base):
    __tablename__ = "medication_inventories"
    __table_args__ = (
        UniqueConstraint("patient_id", "prescription_id", name="uq_inventory_patient_prescription"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), index=True, nullable=False)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), index=True, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    patient = relationship("Patient", back_populates="inventories")
    prescription = relationship("Prescription", back_populates="inventories")
