import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["JWT_SECRET_KEY"] = "test-secret"

import fnmatch
from datetime import time, timedelta
from types import SimpleNamespace

import pytest

from clinic_booking.app.auth import AuthGate, issue_token
from clinic_booking.app.dependencies import UserRole, create_store_engine
from clinic_booking.app.lifecycle import BookingService
from clinic_booking.app.models import AppointmentType, Base, Doctor, DoctorSlot, Patient, Speciality
from clinic_booking.app.store import Store
from clinic_booking.app.utils import AvailabilityCache

SECRET = "test-secret"
DAY = "2026-11-02"


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the cache uses."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        return True

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key) or 0) + 1)
        return int(self.data[key])

    def expire(self, key, ttl):
        return key in self.data

    def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    def scan_iter(self, match="*"):
        return [key for key in list(self.data) if fnmatch.fnmatch(key, match)]


def bearer(identity, role=UserRole.PATIENT, expires_delta=None):
    return f"Bearer {issue_token(identity, role, expires_delta=expires_delta, secret_key=SECRET)}"


@pytest.fixture
def engine(tmp_path):
    engine = create_store_engine(f"sqlite:///{tmp_path / 'clinic.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return Store(engine)


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def cache(redis_client):
    return AvailabilityCache(redis_client, expiry_seconds=60)


@pytest.fixture
def service(store, cache):
    return BookingService(store, AuthGate(SECRET), cache=cache, max_retries=5)


@pytest.fixture
def clinic(store):
    """Two doctors with slots, two appointment types and eight patients."""
    with store.transaction() as session:
        speciality = Speciality(name="General Medicine", description="Primary care")
        session.add(speciality)
        session.flush()

        consultation = AppointmentType(name="Consultation", speciality_id=speciality.id)
        follow_up = AppointmentType(name="Follow-up", speciality_id=speciality.id)
        doctor = Doctor(name="Dr. Asha Rao", speciality_id=speciality.id, city="Pune",
                        address="12 MG Road", email="asha@clinic.test", phone="555-0100")
        other_doctor = Doctor(name="Dr. Vikram Shah", speciality_id=speciality.id, city="Mumbai",
                              address="4 Marine Drive", email="vikram@clinic.test", phone="555-0101")
        session.add_all([consultation, follow_up, doctor, other_doctor])
        session.flush()

        slots = [DoctorSlot(doctor_id=doctor.id, time_start=time(9, 0)),
                 DoctorSlot(doctor_id=doctor.id, time_start=time(9, 30)),
                 DoctorSlot(doctor_id=doctor.id, time_start=time(10, 0))]
        other_slot = DoctorSlot(doctor_id=other_doctor.id, time_start=time(9, 0))
        patients = [Patient(name=f"Patient {i}", email=f"patient{i}@clinic.test", phone=f"555-02{i:02d}")
                    for i in range(8)]
        session.add_all(slots + [other_slot] + patients)
        session.flush()

        return SimpleNamespace(
            doctor=doctor.id,
            other_doctor=other_doctor.id,
            slots=[slot.id for slot in slots],
            other_slot=other_slot.id,
            consultation=consultation.id,
            follow_up=follow_up.id,
            patients=[patient.id for patient in patients],
        )


def appointment_request(clinic, patient_index=0, slot_index=0, date=DAY, **overrides):
    request = {
        "doctor_id": clinic.doctor,
        "patient_id": clinic.patients[patient_index],
        "appointment_type": clinic.consultation,
        "date": date,
        "slot_id": clinic.slots[slot_index],
        "visit_mode": "physical",
        "symptom": "fever",
    }
    request.update(overrides)
    return request


def token_request(clinic, patient_index=0, date=DAY, **overrides):
    request = {
        "doctor_id": clinic.doctor,
        "patient_id": clinic.patients[patient_index],
        "appointment_type": clinic.consultation,
        "date": date,
        "symptom": "cough",
    }
    request.update(overrides)
    return request


@pytest.fixture
def expired():
    return timedelta(seconds=-5)
