# schemas.py
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import ErrorKind
from .models import BookingStatus, VisitMode


class AppointmentRequest(BaseModel):
    doctor_id: int
    patient_id: int
    appointment_type: int
    date: str
    slot_id: int
    visit_mode: VisitMode = VisitMode.PHYSICAL
    symptom: str = ""


class TokenRequest(BaseModel):
    doctor_id: int
    patient_id: int
    appointment_type: int
    date: str
    symptom: str = ""


class CancelAppointmentRequest(BaseModel):
    doctor_id: int
    patient_id: int
    date: str


class StatusTransitionRequest(BaseModel):
    status: BookingStatus


class PatientUpdateRequest(BaseModel):
    """Demographic fields a patient may change; omitted fields are left as they are."""
    gender: Optional[str] = None
    weight: Optional[int] = Field(None, ge=0)
    age: Optional[int] = Field(None, ge=0)
    blood_group: Optional[str] = None


class PrescriptionRequest(BaseModel):
    doctor_id: int
    patient_id: int
    date: str
    prescription: str = Field(..., min_length=1)


class PatientRegistration(BaseModel):
    name: str
    email: str
    phone: str
    password: str
    gender: Optional[str] = None
    weight: Optional[int] = None
    age: Optional[int] = None
    blood_group: Optional[str] = None


class DoctorRegistration(BaseModel):
    name: str
    speciality_id: int
    city: str
    address: str
    email: str
    phone: str
    password: str


class BookingResult(BaseModel):
    accepted: bool
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None
    value: Any = None

    @classmethod
    def ok(cls, value=None, detail: str = None):
        return cls(accepted=True, value=value, detail=detail)

    @classmethod
    def rejected(cls, error: ErrorKind, detail: str = None, value=None):
        return cls(accepted=False, error=error, detail=detail, value=value)
