# main.py
import json
import logging
import secrets
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

# Load environment before the modules that read it
import config
import intake
import line_bot
from clock import InvalidTimezone, as_utc, resolve_zone
from database import Base, SessionLocal, engine, get_db
from models import DoseSchedule, MedicationInventory, Patient, Prescription
from reminders import ReminderEngine
from schedule import InvalidSchedule, check_unique_times, parse_period, slot_time_for

logger = logging.getLogger(__name__)

# Create Tables (Safely)
Base.metadata.create_all(bind=engine)

# ==========================================
# 🚀 FASTAPI APP SETUP
# ==========================================
app = FastAPI(title="MedMind Reminder API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One engine per process; its lease only guards this process
reminder_engine = ReminderEngine(SessionLocal)


# --- Input Models ---
class ScheduleIn(BaseModel):
    period: str
    hhmm: Optional[str] = None
    pills: int = 1
    isActive: bool = True


class PrescriptionCreate(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    fullName: str
    age: Optional[int] = None
    hn: Optional[str] = None

    drugName: str
    issueDate: Optional[str] = None
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    timezone: Optional[str] = None
    quantityTotal: Optional[int] = None
    notes: Optional[str] = None

    schedules: List[ScheduleIn] = []


class InventoryToggle(BaseModel):
    isActive: bool


# --- Helpers ---
def gen_opaque_id():
    return secrets.token_hex(4)


def parse_when(value, field):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(400, f"{field} must be an ISO date")
    # Stored as naive UTC
    return as_utc(parsed).replace(tzinfo=None)


def build_schedules(entries: List[ScheduleIn]):
    rows = []
    for s in entries:
        period = parse_period(s.period)
        rows.append({
            "period": period,
            "hhmm": slot_time_for(period, s.hhmm),
            "pills": int(s.pills or 1),
            "is_active": s.isActive,
        })
    check_unique_times(rows)
    return rows


# ==========================================
# 📡 API ENDPOINTS
# ==========================================

@app.get("/")
def home():
    return {"message": "MedMind Reminder Backend Running"}


# 1. PATIENT SUGGEST BY HN
@app.get("/api/patient/suggest")
def suggest_patient(hn: Optional[str] = None, db: Session = Depends(get_db)):
    if not hn or not hn.strip():
        return {"patient": None}
    patient = db.query(Patient).filter(Patient.hn == hn.strip()).first()
    if not patient:
        return {"patient": None}
    return {"patient": {
        "id": patient.id, "firstName": patient.first_name, "lastName": patient.last_name,
        "fullName": patient.full_name, "hn": patient.hn, "age": patient.age,
    }}


# 2. CREATE PRESCRIPTION (with HN lock)
@app.post("/api/prescriptions")
def create_prescription(dto: PrescriptionCreate, db: Session = Depends(get_db)):
    if not dto.fullName.strip():
        raise HTTPException(400, "fullName is required")
    if not dto.drugName.strip():
        raise HTTPException(400, "drugName is required")
    if not dto.schedules:
        raise HTTPException(400, "schedules is required (non-empty)")
    if not dto.hn or not dto.hn.strip():
        raise HTTPException(400, "HN is required")

    try:
        schedule_rows = build_schedules(dto.schedules)
        resolve_zone(dto.timezone)
    except (InvalidSchedule, InvalidTimezone) as e:
        raise HTTPException(400, str(e))

    hn = dto.hn.strip()
    patient = db.query(Patient).filter(Patient.hn == hn).first()
    if patient:
        if patient.full_name.strip().lower() != dto.fullName.strip().lower():
            raise HTTPException(
                400,
                f'❌ ชื่อไม่ตรงกับ HN นี้! HN "{hn}" เป็นของผู้ป่วยชื่อ: "{patient.full_name}"',
            )
    else:
        patient = Patient(
            first_name=dto.firstName, last_name=dto.lastName,
            full_name=dto.fullName, age=dto.age, hn=hn,
        )
        db.add(patient)
        db.flush()

    rx = Prescription(
        patient_id=patient.id,
        opaque_id=gen_opaque_id(),
        drug_name=dto.drugName,
        issue_date=parse_when(dto.issueDate, "issueDate"),
        start_date=parse_when(dto.startDate, "startDate"),
        end_date=parse_when(dto.endDate, "endDate"),
        timezone=dto.timezone or config.DEFAULT_TIMEZONE,
        quantity_total=dto.quantityTotal,
        notes=dto.notes,
        schedules=[DoseSchedule(**row) for row in schedule_rows],
    )
    db.add(rx)
    db.flush()
    db.add(MedicationInventory(patient_id=patient.id, prescription_id=rx.id, is_active=True))
    db.commit()
    db.refresh(rx)

    return {"ok": True, "prescriptionId": rx.id, "opaqueId": rx.opaque_id, "patientId": rx.patient_id}


# 3. LIST PRESCRIPTIONS
@app.get("/api/prescriptions")
def list_prescriptions(patientId: Optional[int] = None, db: Session = Depends(get_db)):
    q = db.query(Prescription)
    if patientId is not None:
        q = q.filter(Prescription.patient_id == patientId)
    items = []
    for rx in q.order_by(Prescription.created_at.desc(), Prescription.id.desc()).all():
        items.append({
            "id": rx.id,
            "opaqueId": rx.opaque_id,
            "drugName": rx.drug_name,
            "issueDate": rx.issue_date,
            "startDate": rx.start_date,
            "endDate": rx.end_date,
            "timezone": rx.timezone,
            "quantityTotal": rx.quantity_total,
            "notes": rx.notes,
            "patient": {
                "id": rx.patient.id, "fullName": rx.patient.full_name,
                "hn": rx.patient.hn, "lineUserId": rx.patient.line_user_id,
            },
            "schedules": [
                {"period": s.period.value, "hhmm": s.hhmm, "pills": s.pills}
                for s in sorted(rx.schedules, key=lambda s: s.hhmm) if s.is_active
            ],
            "inventory": [{"isActive": inv.is_active} for inv in rx.inventories],
        })
    return {"count": len(items), "items": items}


# 4. ADMIN: TOGGLE REMINDERS
@app.patch("/api/admin/inventory/{prescription_id}")
def toggle_inventory(prescription_id: int, body: InventoryToggle, db: Session = Depends(get_db)):
    rx = db.query(Prescription).filter(Prescription.id == prescription_id).first()
    if not rx:
        raise HTTPException(404, "Prescription not found")

    inv = (
        db.query(MedicationInventory)
        .filter_by(patient_id=rx.patient_id, prescription_id=rx.id)
        .first()
    )
    if inv:
        inv.is_active = body.isActive
    else:
        inv = MedicationInventory(patient_id=rx.patient_id, prescription_id=rx.id, is_active=body.isActive)
        db.add(inv)
    db.commit()
    db.refresh(inv)

    return {
        "ok": True, "prescriptionId": rx.id, "drugName": rx.drug_name,
        "isActive": inv.is_active, "updatedAt": inv.updated_at,
    }


# 5. CRON TICK
@app.api_route("/api/cron/tick", methods=["GET", "POST"])
def cron_tick(
    secret: Optional[str] = Query(None),
    x_cron_secret: Optional[str] = Header(None),
):
    expected = config.CRON_SECRET
    supplied = secret or x_cron_secret
    if not expected or not supplied or not secrets.compare_digest(supplied, expected):
        return JSONResponse({"ok": False, "reason": "forbidden"}, status_code=403)

    result = reminder_engine.tick()
    if result.get("reason") == "cron-is-running":
        return JSONResponse(result, status_code=409)
    return result


# 6. LINE WEBHOOK
@app.post("/webhook/line")
async def line_webhook(request: Request, x_line_signature: Optional[str] = Header(None)):
    raw = await request.body()
    if not x_line_signature:
        return PlainTextResponse("Missing x-line-signature", status_code=400)
    if not line_bot.verify_signature(raw, x_line_signature):
        return PlainTextResponse("Invalid signature", status_code=403)

    try:
        events = json.loads(raw.decode("utf-8")).get("events", [])
    except ValueError:
        return PlainTextResponse("Invalid body", status_code=400)

    for ev in events:
        try:
            handle_event(ev)
        except Exception:
            logger.exception("❌ Webhook event error")
    return PlainTextResponse("OK")


def handle_event(ev):
    reply_token = ev.get("replyToken")
    if ev.get("type") == "message" and (ev.get("message") or {}).get("type") == "text":
        line_user_id = (ev.get("source") or {}).get("userId")
        if not line_user_id:
            return
        text = str(ev["message"].get("text") or "").strip()
        db = SessionLocal()
        try:
            reply = intake.handle_acknowledgment(db, line_user_id, text)
        except Exception:
            logger.exception("❌ Acknowledgment failed for %s", line_user_id)
            db.rollback()
            reply = intake.MSG_TRY_AGAIN
        finally:
            db.close()
        if reply:
            line_bot.reply_text(reply_token, reply)
        return

    if ev.get("type") == "postback" and (ev.get("postback") or {}).get("data") == "inventory_open":
        line_bot.reply_text(reply_token, "กำลังพัฒนาเมนูเลือกหลายใบยา 😉")


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
