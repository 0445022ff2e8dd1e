import json
import os
import re
import logging
from datetime import date, datetime
from typing import List

from redis import RedisError
from sqlalchemy.orm import Session

from .errors import InvalidDate
from .models import Appointment, Doctor, EmergencyAppointment, Patient, Prescription, Token


ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)


def parse_date(value) -> date:
    """Parse a wire ``YYYY-MM-DD`` string into a calendar date, raising InvalidDate."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not ISO_DATE.fullmatch(value):
        raise InvalidDate(f"Expected a YYYY-MM-DD date, got {value!r}")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise InvalidDate(f"Could not parse date {value!r}, expected YYYY-MM-DD")


def serialize_slot(slot, available: bool):
    return {
        "slot_id": slot.id,
        "time_start": slot.time_start.strftime("%H:%M:%S"),
        "available": available,
    }


def serialize_appointment(appointment: Appointment):
    return {
        "id": appointment.id,
        "doctor_id": appointment.doctor_id,
        "patient_id": appointment.patient_id,
        "appointment_type": appointment.appointment_type,
        "date": appointment.appointment_date.isoformat(),
        "slot_id": appointment.slot_id,
        "visit_mode": appointment.visit_mode,
        "status": appointment.status,
        "symptom": appointment.symptom,
        "prescription_id": appointment.prescription_id,
    }


def serialize_queued(booking):
    """Serialize a Token or EmergencyAppointment."""
    serialized = {
        "id": booking.id,
        "doctor_id": booking.doctor_id,
        "patient_id": booking.patient_id,
        "appointment_type": booking.appointment_type,
        "date": booking.appointment_date.isoformat(),
        "status": booking.status,
        "symptom": booking.symptom,
    }
    if isinstance(booking, Token):
        serialized["token_number"] = booking.token_number
    elif isinstance(booking, EmergencyAppointment):
        serialized["emergency_no"] = booking.emergency_no
    return serialized


def serialize_doctor(doctor: Doctor):
    return {
        "id": doctor.id,
        "name": doctor.name,
        "speciality": doctor.speciality.name if doctor.speciality else None,
        "city": doctor.city,
        "address": doctor.address,
    }


def serialize_patient(patient: Patient):
    return {
        "id": patient.id,
        "name": patient.name,
        "email": patient.email,
        "phone": patient.phone,
        "gender": patient.gender,
        "weight": patient.weight,
        "age": patient.age,
        "blood_group": patient.blood_group,
    }


def serialize_history_entry(appointment: Appointment, doctor_name: str, appointment_type_name: str):
    serialized = serialize_appointment(appointment)
    serialized["doctor_name"] = doctor_name
    serialized["appointment_type_name"] = appointment_type_name
    return serialized


def serialize_prescription(prescription: Prescription, doctor_name: str):
    return {
        "id": prescription.id,
        "doctor_id": prescription.doctor_id,
        "doctor_name": doctor_name,
        "date": prescription.appointment_date.isoformat(),
        "prescription": prescription.prescription,
    }


class AvailabilityCache:
    """Per-doctor, per-day slot availability cached in Redis.

    Entries are rebuilt from the store on a miss and dropped whenever a booking
    or cancellation for that doctor and day commits. Each entry carries the
    generation counter read before its store query; invalidation bumps the
    counter, so an entry built from a snapshot older than the latest booking
    no longer matches and is treated as a miss.
    """

    def __init__(self, redis_client, expiry_seconds: int = None):
        self.redis_client = redis_client
        self.expiry_seconds = expiry_seconds or int(os.getenv('CACHE_EXPIRY_SECONDS', 3600))

    @staticmethod
    def key(doctor_id: int, day: date) -> str:
        return f"doctor:{doctor_id}:timeslots:{day.isoformat()}"

    @classmethod
    def generation_key(cls, doctor_id: int, day: date) -> str:
        return f"{cls.key(doctor_id, day)}:generation"

    def generation(self, doctor_id: int, day: date) -> int:
        return int(self.redis_client.get(self.generation_key(doctor_id, day)) or 0)

    def get(self, doctor_id: int, day: date):
        cached = self.redis_client.get(self.key(doctor_id, day))
        if not cached:
            return None
        entry = json.loads(cached)
        if not isinstance(entry, dict) or entry.get("generation") != self.generation(doctor_id, day):
            logging.info(f"Ignoring stale entry: {self.key(doctor_id, day)}")
            return None
        logging.info(f"Retrieved from Redis: {self.key(doctor_id, day)}")
        return entry["slots"]

    def put(self, doctor_id: int, day: date, slots: List[dict], generation: int = None):
        if generation is None:
            generation = self.generation(doctor_id, day)
        entry = {"generation": generation, "slots": slots}
        self.redis_client.setex(self.key(doctor_id, day), self.expiry_seconds, json.dumps(entry))

    def invalidate(self, doctor_id: int, day: date):
        generation_key = self.generation_key(doctor_id, day)
        try:
            self.redis_client.incr(generation_key)
            # Outlive any entry tagged with the previous generation.
            self.redis_client.expire(generation_key, 2 * self.expiry_seconds)
            self.redis_client.delete(self.key(doctor_id, day))
        except RedisError as e:
            # The entry expires on its own; the committed booking stands.
            logging.error(f"Could not invalidate {self.key(doctor_id, day)}: {e}")

    def timeslots(self, store, session: Session, doctor_id: int, day: date) -> List[dict]:
        generation = None
        try:
            slots = self.get(doctor_id, day)
            if slots is None:
                generation = self.generation(doctor_id, day)
        except RedisError as e:
            logging.error(f"Redis read failed for {self.key(doctor_id, day)}: {e}")
            slots = None
        if slots is None:
            logging.info(f"Retrieved from database: {self.key(doctor_id, day)}")
            slots = [serialize_slot(slot, available) for slot, available in store.doctor_timeslots(session, doctor_id, day)]
            if generation is not None:
                try:
                    self.put(doctor_id, day, slots, generation)
                except RedisError as e:
                    logging.error(f"Redis write failed for {self.key(doctor_id, day)}: {e}")
        return slots
