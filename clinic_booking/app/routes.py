from fastapi import APIRouter, HTTPException, Depends, Query, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from typing import Optional
from .auth import AuthGate, authenticate_user, get_password_hash, issue_token, policy_from_env
from .dependencies import engine, get_redis_client
from .errors import ErrorKind
from .lifecycle import BookingService
from .schemas import (AppointmentRequest, BookingResult, CancelAppointmentRequest, DoctorRegistration,
                      PatientRegistration, PatientUpdateRequest, PrescriptionRequest, StatusTransitionRequest,
                      TokenRequest)
from .store import Store
from .utils import AvailabilityCache, serialize_doctor
import logging

router = APIRouter()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

ERROR_STATUS = {
    ErrorKind.INVALID_DATE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_REQUEST: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.SLOT_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.DUPLICATE: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT_RETRYABLE: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_booking_service = None


def get_booking_service() -> BookingService:
    global _booking_service
    if _booking_service is None:
        _booking_service = BookingService(
            Store(engine),
            AuthGate(),
            cache=AvailabilityCache(get_redis_client()),
            policy=policy_from_env(),
        )
    return _booking_service


def error_response(kind: ErrorKind, detail: str):
    result = BookingResult.rejected(kind, detail)
    headers = {"WWW-Authenticate": "Bearer"} if kind == ErrorKind.UNAUTHORIZED else None
    return JSONResponse(status_code=ERROR_STATUS[kind], content=result.model_dump(mode="json"), headers=headers)


def respond(result: BookingResult):
    if result.accepted:
        return result
    return error_response(result.error, result.detail)


@router.get("/health")
def health(service: BookingService = Depends(get_booking_service)):
    if not service.store.ping():
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {"status": "ok"}


# Registration and login

@router.post("/patients")
def register_patient(patient: PatientRegistration, service: BookingService = Depends(get_booking_service)):
    store = service.store
    with store.transaction() as session:
        if store.get_login(session, patient.email):
            raise HTTPException(status_code=400, detail="Email already registered")
        store.add_login(session, patient.email, get_password_hash(patient.password), is_doctor=False)
        patient_id = store.add_patient(session, **patient.model_dump(exclude={"password"}))
    logging.info(f"Registered patient {patient_id}")
    return {"message": "Patient registered successfully", "id": patient_id}


@router.post("/doctors")
def register_doctor(doctor: DoctorRegistration, service: BookingService = Depends(get_booking_service)):
    store = service.store
    with store.transaction() as session:
        if store.get_login(session, doctor.email):
            raise HTTPException(status_code=400, detail="Email already registered")
        store.add_login(session, doctor.email, get_password_hash(doctor.password), is_doctor=True)
        doctor_id = store.add_doctor(session, **doctor.model_dump(exclude={"password"}))
    logging.info(f"Registered doctor {doctor_id}")
    return {"message": "Doctor registered successfully", "id": doctor_id}


@router.post("/token")
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(),
                           service: BookingService = Depends(get_booking_service)):
    with service.store.transaction() as session:
        identity = authenticate_user(service.store, session, form_data.username, form_data.password)
    if not identity:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    identity_id, role = identity
    access_token = issue_token(identity_id, role)
    return {"access_token": access_token, "token_type": "bearer", "id": identity_id, "role": role.value}


# Public listings

@router.get("/doctors")
def list_doctors(city: Optional[str] = Query(None), service: BookingService = Depends(get_booking_service)):
    with service.store.transaction() as session:
        return [serialize_doctor(doctor) for doctor in service.store.list_doctors(session, city)]


@router.get("/cities")
def list_cities(service: BookingService = Depends(get_booking_service)):
    with service.store.transaction() as session:
        return [{"city": city} for city in service.store.list_cities(session)]


@router.get("/specialities")
def list_specialities(service: BookingService = Depends(get_booking_service)):
    with service.store.transaction() as session:
        return [{"id": s.id, "name": s.name, "description": s.description}
                for s in service.store.list_specialities(session)]


@router.get("/appointment-types")
def list_appointment_types(service: BookingService = Depends(get_booking_service)):
    with service.store.transaction() as session:
        return [{"id": t.id, "name": t.name, "speciality_id": t.speciality_id}
                for t in service.store.list_appointment_types(session)]


@router.get("/doctors/{doctor_id}/timeslots")
def doctor_timeslots(doctor_id: int, date: str = Query(...), token: Optional[str] = Depends(oauth2_scheme),
                     service: BookingService = Depends(get_booking_service)):
    return respond(service.doctor_timeslots(doctor_id, date, credential=token))


@router.get("/doctors/{doctor_id}/slots/{slot_id}/available")
def slot_available(doctor_id: int, slot_id: int, date: str = Query(...), token: Optional[str] = Depends(oauth2_scheme),
                   service: BookingService = Depends(get_booking_service)):
    return respond(service.slot_available(doctor_id, date, slot_id, credential=token))


@router.get("/doctors/{doctor_id}/tokens/next")
def next_token(doctor_id: int, date: str = Query(...), token: Optional[str] = Depends(oauth2_scheme),
               service: BookingService = Depends(get_booking_service)):
    return respond(service.next_token(doctor_id, date, credential=token))


@router.get("/doctors/{doctor_id}/tokens/current")
def current_token(doctor_id: int, date: str = Query(...), token: Optional[str] = Depends(oauth2_scheme),
                  service: BookingService = Depends(get_booking_service)):
    return respond(service.current_serving(doctor_id, date, credential=token))


@router.get("/doctors/{doctor_id}/emergencies/next")
def next_emergency_number(doctor_id: int, date: str = Query(...), token: Optional[str] = Depends(oauth2_scheme),
                          service: BookingService = Depends(get_booking_service)):
    return respond(service.next_emergency_number(doctor_id, date, credential=token))


# Bookings

@router.post("/appointments")
def create_appointment(request: AppointmentRequest, token: Optional[str] = Depends(oauth2_scheme),
                       service: BookingService = Depends(get_booking_service)):
    return respond(service.create_appointment(token, request))


@router.post("/appointments/cancel")
def cancel_appointment(request: CancelAppointmentRequest, token: Optional[str] = Depends(oauth2_scheme),
                       service: BookingService = Depends(get_booking_service)):
    return respond(service.cancel_appointment(token, request))


@router.post("/tokens")
def create_token(request: TokenRequest, token: Optional[str] = Depends(oauth2_scheme),
                 service: BookingService = Depends(get_booking_service)):
    return respond(service.create_token(token, request))


@router.post("/emergencies")
def create_emergency(request: TokenRequest, token: Optional[str] = Depends(oauth2_scheme),
                     service: BookingService = Depends(get_booking_service)):
    return respond(service.create_emergency(token, request))


@router.patch("/{kind}/{booking_id}/status")
def transition_status(kind: str, booking_id: int, request: StatusTransitionRequest,
                      token: Optional[str] = Depends(oauth2_scheme),
                      service: BookingService = Depends(get_booking_service)):
    kinds = {"appointments": "appointment", "tokens": "token", "emergencies": "emergency"}
    if kind not in kinds:
        raise HTTPException(status_code=404, detail="Not Found")
    return respond(service.transition_status(token, kinds[kind], booking_id, request.status))


# Owner views

@router.get("/patients/{patient_id}/token")
def patient_token(patient_id: int, doctor_id: int = Query(...), date: str = Query(...),
                  token: Optional[str] = Depends(oauth2_scheme),
                  service: BookingService = Depends(get_booking_service)):
    return respond(service.patient_token(token, doctor_id, patient_id, date))


@router.get("/doctors/{doctor_id}/appointments")
def doctor_appointments(doctor_id: int, token: Optional[str] = Depends(oauth2_scheme),
                        service: BookingService = Depends(get_booking_service)):
    return respond(service.doctor_appointments(token, doctor_id))


@router.get("/doctors/{doctor_id}/emergencies")
def doctor_emergencies(doctor_id: int, date: str = Query(...), token: Optional[str] = Depends(oauth2_scheme),
                       service: BookingService = Depends(get_booking_service)):
    return respond(service.doctor_emergencies(token, doctor_id, date))


# Patient records and prescriptions

@router.get("/patients/{patient_id}")
def patient_profile(patient_id: int, token: Optional[str] = Depends(oauth2_scheme),
                    service: BookingService = Depends(get_booking_service)):
    return respond(service.patient_profile(token, patient_id))


@router.patch("/patients/{patient_id}")
def update_patient(patient_id: int, request: PatientUpdateRequest, token: Optional[str] = Depends(oauth2_scheme),
                   service: BookingService = Depends(get_booking_service)):
    return respond(service.update_patient(token, patient_id, request))


@router.get("/patients/{patient_id}/appointments")
def patient_appointments(patient_id: int, token: Optional[str] = Depends(oauth2_scheme),
                         service: BookingService = Depends(get_booking_service)):
    return respond(service.patient_appointments(token, patient_id))


@router.get("/patients/{patient_id}/prescriptions")
def patient_prescriptions(patient_id: int, token: Optional[str] = Depends(oauth2_scheme),
                          service: BookingService = Depends(get_booking_service)):
    return respond(service.patient_prescriptions(token, patient_id))


@router.post("/prescriptions")
def new_prescription(request: PrescriptionRequest, token: Optional[str] = Depends(oauth2_scheme),
                     service: BookingService = Depends(get_booking_service)):
    return respond(service.new_prescription(token, request))
