"""
Reminder engine: decides which dose slots are due for each linked patient,
sends one combined LINE message per patient and records what was sent.

One tick walks patients sequentially. For each inventory-active prescription it
closes finished courses, finds the current slot, and drops slots that were
already taken today or were reminded less than one cadence ago.
"""
# reminders.py

import datetime
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

import config
import line_bot
from clock import InvalidTimezone, as_utc, local_date, local_date_and_minute, utc_now
from models import DoseIntake, MedicationInventory, NotificationLog, Patient
from schedule import InvalidSchedule, WindowPolicy, current_slot, get_policy, period_label

logger = logging.getLogger(__name__)


# ==========================================
# Date-range eligibility
# ==========================================
def effective_start(rx, fallback=None):
    """First non-empty date along the configured start-date chain."""
    for field_name in fallback or config.START_DATE_FALLBACK:
        value = getattr(rx, field_name, None)
        if value is not None:
            return value
    return None


def is_date_eligible(rx, today, fallback=None):
    start = effective_start(rx, fallback)
    if start is not None and local_date(start, rx.timezone) > today:
        return False
    if rx.end_date is not None and today > local_date(rx.end_date, rx.timezone):
        return False
    return True


# ==========================================
# Course progress
# ==========================================
def pills_taken(db, prescription_id):
    total = (
        db.query(func.coalesce(func.sum(DoseIntake.pills), 0))
        .filter(DoseIntake.prescription_id == prescription_id)
        .scalar()
    )
    return int(total or 0)


def is_course_complete(quantity_total, taken):
    if quantity_total is None:
        return False
    return taken >= quantity_total


def close_course_if_complete(db, inventory):
    """Deactivate the inventory row of a finished course.

    Returns True only on the call that performed the deactivation; an already
    inactive row is the marker that completion was handled.
    """
    rx = inventory.prescription
    if not inventory.is_active or rx.quantity_total is None:
        return False
    if not is_course_complete(rx.quantity_total, pills_taken(db, rx.id)):
        return False
    inventory.is_active = False
    db.commit()
    logger.info("🏁 Course complete: prescription %s for patient %s", rx.id, inventory.patient_id)
    return True


def course_complete_notice(rx):
    return f"✅ ครบคอร์สยาแล้ว: {rx.drug_name} (รวม {rx.quantity_total} เม็ด) ระบบหยุดแจ้งเตือนยานี้แล้ว"


# ==========================================
# Dedup & cadence gate
# ==========================================
def already_taken(db, patient_id, prescription_id, slot_date, hhmm):
    return (
        db.query(DoseIntake.id)
        .filter_by(patient_id=patient_id, prescription_id=prescription_id, slot_date=slot_date, hhmm=hhmm)
        .first()
        is not None
    )


def last_sent_at(db, patient_id, prescription_id, slot_date, hhmm):
    return (
        db.query(func.max(NotificationLog.sent_at))
        .filter_by(patient_id=patient_id, prescription_id=prescription_id, slot_date=slot_date, hhmm=hhmm)
        .scalar()
    )


def cadence_allows(last_sent, now, cadence_minutes):
    if last_sent is None:
        return True
    return as_utc(now) - as_utc(last_sent) >= datetime.timedelta(minutes=cadence_minutes)


def should_remind(db, patient_id, prescription_id, slot_date, hhmm, now, cadence_minutes):
    # Taken wins over cadence for the rest of the day
    if already_taken(db, patient_id, prescription_id, slot_date, hhmm):
        return False
    return cadence_allows(last_sent_at(db, patient_id, prescription_id, slot_date, hhmm), now, cadence_minutes)


# ==========================================
# Run lease
# ==========================================
class RunLease:
    """Exclusivity marker for ticks. Subclass for a shared (multi-process) lock."""

    def acquire(self) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError


class InProcessLease(RunLease):
    def __init__(self, max_run_seconds=None, clock: Callable[[], float] = time.monotonic):
        self.max_run_seconds = config.MAX_RUN_SECONDS if max_run_seconds is None else max_run_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.running = False
        self.started_at = None

    def acquire(self):
        with self._lock:
            now = self._clock()
            if self.running:
                if now - self.started_at < self.max_run_seconds:
                    return False
                logger.warning("⚠️ Reset stale cron flag (started %.0fs ago)", now - self.started_at)
            self.running = True
            self.started_at = now
            return True

    def release(self):
        with self._lock:
            self.running = False
            self.started_at = None


# ==========================================
# Tick orchestrator
# ==========================================
@dataclass
class DueItem:
    prescription_id: int
    drug_name: str
    period: object
    hhmm: str
    pills: int
    slot_date: datetime.date

    @property
    def label(self):
        return f"{self.drug_name} — {period_label(self.period)} {self.hhmm} ({self.pills} เม็ด)"


@dataclass
class PatientBatch:
    due: List[DueItem] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)

    def is_empty(self):
        return not self.due and not self.notices


def build_reminder_message(full_name, batch):
    lines = []
    if batch.due:
        lines.append("ถึงเวลาใช้ยาแล้ว")
        if full_name:
            lines.append(f"ผู้ป่วย: {full_name}")
        lines.extend(f"{i}. {item.label}" for i, item in enumerate(batch.due, start=1))
    lines.extend(batch.notices)
    return "\n".join(lines)


class ReminderEngine:
    def __init__(self, session_factory, sender=None, policy: Optional[WindowPolicy] = None, lease: Optional[RunLease] = None):
        self.session_factory = session_factory
        self.sender = sender
        self.policy = policy or get_policy()
        self.lease = lease or InProcessLease()

    def _send(self, to, text):
        (self.sender or line_bot.push_text)(to, text)

    def tick(self, now=None):
        """Run one guarded scan. Never raises; failures come back as ``ok: False``."""
        if not self.lease.acquire():
            logger.warning("⏭️ Skip: cron is already running")
            return {"ok": False, "reason": "cron-is-running"}
        try:
            result = self.run(now or utc_now())
            return {"ok": True, **result, "at": utc_now().isoformat()}
        except Exception as e:
            logger.exception("❌ Cron tick failed")
            return {"ok": False, "error": str(e)}
        finally:
            self.lease.release()

    def run(self, now):
        totals = {"users": 0, "items": 0, "completed": 0}
        db = self.session_factory()
        try:
            patients = (
                db.query(Patient)
                .filter(Patient.line_user_id.isnot(None))
                .filter(Patient.inventories.any(MedicationInventory.is_active.is_(True)))
                .order_by(Patient.id)
                .all()
            )
            for patient in patients:
                batch = self.collect(db, patient, now)
                totals["completed"] += len(batch.notices)
                if batch.is_empty():
                    continue
                if self.deliver(db, patient, batch, now):
                    totals["users"] += 1
                    totals["items"] += len(batch.due)
        finally:
            db.close()
        logger.info("⏰ Tick done: %(users)d users, %(items)d items, %(completed)d completed", totals)
        return totals

    def collect(self, db, patient, now):
        batch = PatientBatch()
        inventories = (
            db.query(MedicationInventory)
            .filter_by(patient_id=patient.id, is_active=True)
            .order_by(MedicationInventory.id)
            .all()
        )
        for inventory in inventories:
            rx = inventory.prescription
            if rx is None:
                continue
            try:
                item = self.evaluate(db, patient, inventory, now, batch)
            except (InvalidTimezone, InvalidSchedule) as e:
                logger.warning("⚠️ Skipping prescription %s: %s", rx.id, e)
                continue
            if item is not None:
                batch.due.append(item)
        return batch

    def evaluate(self, db, patient, inventory, now, batch):
        rx = inventory.prescription
        today, minute = local_date_and_minute(now, rx.timezone)
        if not is_date_eligible(rx, today):
            return None

        if close_course_if_complete(db, inventory):
            batch.notices.append(course_complete_notice(rx))
            return None

        slot = current_slot(rx.schedules, minute, self.policy)
        if slot is None:
            return None

        if not should_remind(db, patient.id, rx.id, today, slot.hhmm, now, self.policy.cadence_minutes):
            logger.debug("🔕 Suppressed %s %s for patient %s", rx.drug_name, slot.hhmm, patient.id)
            return None

        return DueItem(
            prescription_id=rx.id,
            drug_name=rx.drug_name,
            period=slot.period,
            hhmm=slot.hhmm,
            pills=slot.pills,
            slot_date=today,
        )

    def deliver(self, db, patient, batch, now):
        """Push the batch, then log every due slot in one transaction."""
        try:
            self._send(patient.line_user_id, build_reminder_message(patient.full_name, batch))
        except line_bot.LineDeliveryError as e:
            # Nothing is logged, so the same slots are retried next tick
            logger.error("❌ LINE push error to %s: %s", patient.line_user_id, e)
            return False

        if batch.due:
            sent_at = as_utc(now).replace(tzinfo=None)
            try:
                db.add_all(
                    [
                        NotificationLog(
                            patient_id=patient.id,
                            prescription_id=item.prescription_id,
                            hhmm=item.hhmm,
                            slot_date=item.slot_date,
                            sent_at=sent_at,
                        )
                        for item in batch.due
                    ]
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("❌ Create NotificationLog failed for %s", patient.line_user_id)
        return True
