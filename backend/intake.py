# intake.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from thefuzz import fuzz

import config
from clock import InvalidTimezone, local_date_and_minute, utc_now
from models import DoseIntake, MedicationInventory, Patient
from reminders import already_taken, close_course_if_complete, course_complete_notice, is_date_eligible
from schedule import InvalidSchedule, current_slot, get_policy, period_label

logger = logging.getLogger(__name__)

MSG_NO_ACCOUNT = "ยังไม่พบบัญชีผู้ใช้ โปรดสแกน QR ใบยาก่อน"
MSG_NOTHING_TO_RECORD = "ยังไม่พบมื้อที่ถึงเวลาในวันนี้ หรือบันทึกไปแล้ว"
MSG_TRY_AGAIN = "ขออภัย ระบบไม่สามารถดำเนินการได้ในขณะนี้ กรุณาลองใหม่อีกครั้ง"
MSG_ACK_HINT = 'หากรับประทานยาแล้ว กรุณาพิมพ์ "{phrase}"'


@dataclass
class IntakeResult:
    recorded: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)

    @property
    def nothing_recorded(self):
        return not self.recorded


def _clean(text):
    return " ".join((text or "").split())


def is_acknowledgment(text):
    """True only when the chat text is exactly the acknowledgment phrase, ignoring spacing."""
    return _clean(text) == config.ACK_PHRASE


def is_near_acknowledgment(text):
    """A likely typo of the phrase. Anything that contains the whole phrase
    with extra words (a negation, a question) is not a near miss."""
    cleaned = _clean(text)
    if not cleaned or config.ACK_PHRASE in cleaned:
        return False
    return fuzz.ratio(cleaned, config.ACK_PHRASE) >= config.ACK_MATCH_THRESHOLD


def _insert_intake(db, patient_id, rx_id, slot_date, hhmm, pills):
    # The unique (patient, prescription, slot_date, hhmm) key decides races
    db.add(DoseIntake(patient_id=patient_id, prescription_id=rx_id, slot_date=slot_date, hhmm=hhmm, pills=pills))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def record_intake(db, patient, now=None, policy=None):
    """Record the current slot of every inventory-active prescription as taken."""
    now = now or utc_now()
    policy = policy or get_policy()
    result = IntakeResult()

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
            today, minute = local_date_and_minute(now, rx.timezone)
            if not is_date_eligible(rx, today):
                continue
            slot = current_slot(rx.schedules, minute, policy)
        except (InvalidTimezone, InvalidSchedule) as e:
            logger.warning("⚠️ Skipping prescription %s: %s", rx.id, e)
            continue
        if slot is None:
            continue
        if already_taken(db, patient.id, rx.id, today, slot.hhmm):
            continue
        if not _insert_intake(db, patient.id, rx.id, today, slot.hhmm, slot.pills):
            continue

        result.recorded.append(f"{rx.drug_name} — {period_label(slot.period)} {slot.hhmm} ({slot.pills} เม็ด)")
        if close_course_if_complete(db, inventory):
            result.notices.append(course_complete_notice(rx))

    logger.info("💊 Intake for patient %s: %d recorded", patient.id, len(result.recorded))
    return result


def format_reply(result):
    if result.nothing_recorded:
        return MSG_NOTHING_TO_RECORD
    lines = ["บันทึกการรับประทานแล้ว:"]
    lines.extend(f"{i}. {item}" for i, item in enumerate(result.recorded, start=1))
    lines.extend(result.notices)
    return "\n".join(lines)


def handle_acknowledgment(db, line_user_id, text, now=None, policy=None) -> Optional[str]:
    """Reply text for an inbound chat message, or None when it is not an acknowledgment.

    A near miss of the phrase gets a hint reply and records nothing.
    """
    if not is_acknowledgment(text):
        if is_near_acknowledgment(text):
            return MSG_ACK_HINT.format(phrase=config.ACK_PHRASE)
        return None
    patient = db.query(Patient).filter(Patient.line_user_id == line_user_id).first()
    if not patient:
        return MSG_NO_ACCOUNT
    return format_reply(record_intake(db, patient, now=now, policy=policy))
