# lifecycle.py
from functools import wraps
from typing import Dict, Optional
import logging
import time

from pydantic import BaseModel, ValidationError

from .auth import AccessRule, AuthGate, SessionClaim, check_access, load_policy
from .dependencies import BOOKING_MAX_RETRIES
from .errors import (BookingError, ConflictRetryable, Duplicate, InvalidRequest, InvalidTransition, NotFound,
                     SlotConflict, Unauthorized)
from .exclusivity import is_slot_free
from .metrics import BOOKING_CONFLICT_RETRIES, BOOKING_LATENCY, BOOKING_OUTCOMES
from .models import Appointment, BookingStatus, EmergencyAppointment, Token
from .schemas import (AppointmentRequest, BookingResult, CancelAppointmentRequest, PatientUpdateRequest,
                      PrescriptionRequest, TokenRequest)
from .sequence import SequenceAllocator
from .utils import (parse_date, serialize_appointment, serialize_history_entry, serialize_patient,
                    serialize_prescription, serialize_queued, serialize_slot)

# scheduled -> ongoing -> completed; scheduled/ongoing -> cancelled.
VALID_TRANSITIONS = {
    BookingStatus.SCHEDULED: {BookingStatus.ONGOING, BookingStatus.CANCELLED},
    BookingStatus.ONGOING: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

BOOKING_MODELS = {
    "appointment": Appointment,
    "token": Token,
    "emergency": EmergencyAppointment,
}


def can_transition(current, new) -> bool:
    return BookingStatus(new) in VALID_TRANSITIONS[BookingStatus(current)]


def booking_operation(name, failed_value=None):
    """Turn BookingErrors raised by a service method into rejected BookingResults."""
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            start_time = time.time()
            try:
                result = func(self, *args, **kwargs)
                BOOKING_OUTCOMES.labels(operation=name, outcome="accepted").inc()
                return result
            except BookingError as e:
                logging.info(f"{name} rejected ({e.kind.value}): {e.detail}")
                BOOKING_OUTCOMES.labels(operation=name, outcome=e.kind.value).inc()
                return BookingResult.rejected(e.kind, e.detail, value=failed_value)
            finally:
                BOOKING_LATENCY.labels(operation=name).observe(time.time() - start_time)
        return wrapper
    return decorator


class BookingService:
    """Authorizes, checks and persists bookings.

    Every mutating operation follows the same path: verify the credential
    against the operation's access rule, parse the date, then run the
    check-and-insert as one transaction. A uniqueness conflict raised by the
    insert means a concurrent request won the race; the whole unit is retried
    up to ``max_retries`` times before the conflict is reported.
    """

    def __init__(self, store, auth_gate: AuthGate, cache=None, policy: Dict[str, AccessRule] = None,
                 max_retries: int = BOOKING_MAX_RETRIES):
        self.store = store
        self.auth_gate = auth_gate
        self.cache = cache
        self.policy = load_policy(policy)
        self.max_retries = max_retries
        self.allocator = SequenceAllocator(store)

    # Plumbing

    def _authorize(self, operation: str, credential: Optional[str], fields: dict) -> Optional[SessionClaim]:
        rule = self.policy[operation]
        claim = None if rule.public else self.auth_gate.verify(credential)
        check_access(rule, claim, fields)
        return claim

    @staticmethod
    def _coerce(schema, request):
        if isinstance(request, BaseModel):
            return request
        if not isinstance(request, dict):
            raise InvalidRequest(f"Expected a {schema.__name__} payload")
        try:
            return schema(**request)
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                                 for error in e.errors())
            raise InvalidRequest(problems)

    def _run(self, operation: str, unit, exhausted):
        """Run ``unit(session)`` in a transaction, retrying on ConflictRetryable."""
        last_conflict = None
        for attempt in range(self.max_retries + 1):
            try:
                with self.store.transaction() as session:
                    return unit(session)
            except ConflictRetryable as e:
                last_conflict = e
                BOOKING_CONFLICT_RETRIES.labels(operation=operation).inc()
                logging.info(f"{operation}: conflict on attempt {attempt + 1}, retrying: {e.detail}")
        raise exhausted(f"Gave up after {self.max_retries + 1} attempts: {last_conflict.detail}")

    def _require_doctor(self, session, doctor_id: int):
        if self.store.get_doctor(session, doctor_id) is None:
            raise NotFound(f"Doctor {doctor_id} not found")

    def _require_patient(self, session, patient_id: int):
        patient = self.store.get_patient(session, patient_id)
        if patient is None:
            raise NotFound(f"Patient {patient_id} not found")
        return patient

    def _require_slot(self, session, doctor_id: int, slot_id: int):
        slot = self.store.get_slot(session, slot_id)
        if slot is None or slot.doctor_id != doctor_id:
            raise NotFound(f"Slot {slot_id} does not belong to doctor {doctor_id}")

    def _invalidate(self, doctor_id: int, day):
        if self.cache is not None:
            self.cache.invalidate(doctor_id, day)

    # Timed appointments

    @booking_operation("create_appointment")
    def create_appointment(self, credential: Optional[str], request) -> BookingResult:
        request = self._coerce(AppointmentRequest, request)
        self._authorize("create_appointment", credential, request.model_dump())
        day = parse_date(request.date)

        def unit(session):
            self._require_slot(session, request.doctor_id, request.slot_id)
            if not is_slot_free(self.store, session, request.doctor_id, day, request.slot_id):
                raise SlotConflict(f"Slot {request.slot_id} of doctor {request.doctor_id} is already booked on {day}")
            return self.store.insert_appointment(
                session,
                doctor_id=request.doctor_id,
                patient_id=request.patient_id,
                appointment_type=request.appointment_type,
                appointment_date=day,
                slot_id=request.slot_id,
                visit_mode=request.visit_mode.value,
                symptom=request.symptom,
            )

        appointment_id = self._run("create_appointment", unit, SlotConflict)
        self._invalidate(request.doctor_id, day)
        logging.info(f"Appointment {appointment_id} booked for patient {request.patient_id} "
                     f"with doctor {request.doctor_id} on {day}")
        return BookingResult.ok({"appointment_id": appointment_id}, "Inserted")

    @booking_operation("cancel_appointment")
    def cancel_appointment(self, credential: Optional[str], request) -> BookingResult:
        request = self._coerce(CancelAppointmentRequest, request)
        self._authorize("cancel_appointment", credential, request.model_dump())
        day = parse_date(request.date)

        with self.store.transaction() as session:
            affected = self.store.update_appointment_status(
                session, request.doctor_id, request.patient_id, day, BookingStatus.CANCELLED.value)

        if affected:
            self._invalidate(request.doctor_id, day)
            logging.info(f"Cancelled {affected} appointment(s) of patient {request.patient_id} "
                         f"with doctor {request.doctor_id} on {day}")
            return BookingResult.ok(affected, "Cancelled")
        return BookingResult.ok(0, "No active appointment matched")

    @booking_operation("slot_available", failed_value=False)
    def slot_available(self, doctor_id: int, date: str, slot_id: int, credential: Optional[str] = None):
        self._authorize("slot_available", credential, {"doctor_id": doctor_id})
        day = parse_date(date)
        with self.store.transaction() as session:
            self._require_slot(session, doctor_id, slot_id)
            free = is_slot_free(self.store, session, doctor_id, day, slot_id)
        return BookingResult.ok(free)

    # Tokens and emergency visits

    def _create_queued(self, operation: str, model, credential: Optional[str], request) -> BookingResult:
        request = self._coerce(TokenRequest, request)
        self._authorize(operation, credential, request.model_dump())
        day = parse_date(request.date)
        label = "emergency" if model is EmergencyAppointment else "token"

        def unit(session):
            self._require_doctor(session, request.doctor_id)
            existing = self.store.find_queued(session, model, request.doctor_id, request.patient_id, day,
                                              request.appointment_type)
            if existing is not None:
                raise Duplicate(f"Patient {request.patient_id} already holds {label} {existing.number} "
                                f"with doctor {request.doctor_id} on {day}")
            number = self.allocator.next_number(session, model, request.doctor_id, day)
            insert = self.store.insert_emergency if model is EmergencyAppointment else self.store.insert_token
            booking_id = insert(
                session,
                request.doctor_id,
                request.patient_id,
                request.appointment_type,
                day,
                number,
                request.symptom,
            )
            return booking_id, number

        booking_id, number = self._run(operation, unit, Duplicate)
        logging.info(f"Issued {label} {number} (id {booking_id}) for doctor {request.doctor_id} on {day}")
        if model is EmergencyAppointment:
            return BookingResult.ok({"emergency_id": booking_id, "emergency_no": number}, "Inserted")
        return BookingResult.ok({"token_id": booking_id, "token_number": number}, "Inserted")

    @booking_operation("create_token")
    def create_token(self, credential: Optional[str], request) -> BookingResult:
        return self._create_queued("create_token", Token, credential, request)

    @booking_operation("create_emergency")
    def create_emergency(self, credential: Optional[str], request) -> BookingResult:
        return self._create_queued("create_emergency", EmergencyAppointment, credential, request)

    @booking_operation("next_token")
    def next_token(self, doctor_id: int, date: str, credential: Optional[str] = None) -> BookingResult:
        self._authorize("next_token", credential, {"doctor_id": doctor_id})
        day = parse_date(date)
        with self.store.transaction() as session:
            return BookingResult.ok(self.allocator.next_token(session, doctor_id, day))

    @booking_operation("next_emergency_number")
    def next_emergency_number(self, doctor_id: int, date: str, credential: Optional[str] = None) -> BookingResult:
        self._authorize("next_emergency_number", credential, {"doctor_id": doctor_id})
        day = parse_date(date)
        with self.store.transaction() as session:
            return BookingResult.ok(self.allocator.next_emergency_number(session, doctor_id, day))

    @booking_operation("current_serving")
    def current_serving(self, doctor_id: int, date: str, credential: Optional[str] = None) -> BookingResult:
        self._authorize("current_serving", credential, {"doctor_id": doctor_id})
        day = parse_date(date)
        with self.store.transaction() as session:
            return BookingResult.ok(self.allocator.current_serving(session, doctor_id, day))

    @booking_operation("patient_token")
    def patient_token(self, credential: Optional[str], doctor_id: int, patient_id: int, date: str) -> BookingResult:
        self._authorize("patient_token", credential, {"doctor_id": doctor_id, "patient_id": patient_id})
        day = parse_date(date)
        with self.store.transaction() as session:
            return BookingResult.ok(self.allocator.patient_token(session, doctor_id, patient_id, day))

    # Status transitions

    @booking_operation("transition_status")
    def transition_status(self, credential: Optional[str], kind: str, booking_id: int, status) -> BookingResult:
        """Advance a booking through the state machine on behalf of its doctor.

        Only one token (or emergency visit) per doctor and day may be ongoing;
        the check below is backed by a partial unique index, so a concurrent
        transition loses with a conflict and is re-evaluated.
        """
        model = BOOKING_MODELS.get(kind)
        if model is None:
            raise NotFound(f"Unknown booking kind {kind!r}")
        try:
            new_status = BookingStatus(status)
        except ValueError:
            raise InvalidTransition(f"Unknown status {status!r}")

        rule = self.policy["transition_status"]
        claim = None if rule.public else self.auth_gate.verify(credential)
        if not rule.public and claim is None:
            raise Unauthorized("Could not validate credentials")

        def unit(session):
            booking = self.store.get_booking(session, model, booking_id)
            if booking is None:
                raise NotFound(f"{kind.capitalize()} {booking_id} not found")
            check_access(rule, claim, {"doctor_id": booking.doctor_id, "patient_id": booking.patient_id})
            if not can_transition(booking.status, new_status):
                raise InvalidTransition(f"Cannot move {kind} {booking_id} from {booking.status} to {new_status.value}")
            if new_status == BookingStatus.ONGOING and model is not Appointment:
                serving = self.store.find_ongoing(session, model, booking.doctor_id, booking.appointment_date)
                if serving is not None and serving.id != booking.id:
                    raise Duplicate(f"{kind.capitalize()} {serving.number} is already being served")
            self.store.update_status(session, booking, new_status.value)
            return booking

        booking = self._run("transition_status", unit, Duplicate)
        if model is Appointment:
            self._invalidate(booking.doctor_id, booking.appointment_date)
            return BookingResult.ok(serialize_appointment(booking), f"Moved to {new_status.value}")
        return BookingResult.ok(serialize_queued(booking), f"Moved to {new_status.value}")

    # Doctor views

    @booking_operation("doctor_appointments")
    def doctor_appointments(self, credential: Optional[str], doctor_id: int) -> BookingResult:
        self._authorize("doctor_appointments", credential, {"doctor_id": doctor_id})
        with self.store.transaction() as session:
            appointments = self.store.read_appointments(session, doctor_id)
            return BookingResult.ok([serialize_appointment(a) for a in appointments])

    @booking_operation("doctor_emergencies")
    def doctor_emergencies(self, credential: Optional[str], doctor_id: int, date: str) -> BookingResult:
        self._authorize("doctor_emergencies", credential, {"doctor_id": doctor_id})
        day = parse_date(date)
        with self.store.transaction() as session:
            emergencies = self.store.doctor_emergencies(session, doctor_id, day)
            return BookingResult.ok([serialize_queued(e) for e in emergencies])

    @booking_operation("doctor_timeslots")
    def doctor_timeslots(self, doctor_id: int, date: str, credential: Optional[str] = None) -> BookingResult:
        self._authorize("doctor_timeslots", credential, {"doctor_id": doctor_id})
        day = parse_date(date)
        with self.store.transaction() as session:
            self._require_doctor(session, doctor_id)
            if self.cache is not None:
                return BookingResult.ok(self.cache.timeslots(self.store, session, doctor_id, day))
            slots = self.store.doctor_timeslots(session, doctor_id, day)
        return BookingResult.ok([serialize_slot(slot, available) for slot, available in slots])

    # Patient records

    @booking_operation("patient_profile")
    def patient_profile(self, credential: Optional[str], patient_id: int) -> BookingResult:
        self._authorize("patient_profile", credential, {"patient_id": patient_id})
        with self.store.transaction() as session:
            patient = self._require_patient(session, patient_id)
            return BookingResult.ok(serialize_patient(patient))

    @booking_operation("update_patient")
    def update_patient(self, credential: Optional[str], patient_id: int, request) -> BookingResult:
        """Change the patient's own demographic fields; name and contact details stay as registered."""
        self._authorize("update_patient", credential, {"patient_id": patient_id})
        request = self._coerce(PatientUpdateRequest, request)
        fields = request.model_dump(exclude_unset=True)
        with self.store.transaction() as session:
            patient = self._require_patient(session, patient_id)
            self.store.update_patient(session, patient, **fields)
            logging.info(f"Updated {sorted(fields)} for patient {patient_id}")
            return BookingResult.ok(serialize_patient(patient), "Updated")

    @booking_operation("patient_appointments")
    def patient_appointments(self, credential: Optional[str], patient_id: int) -> BookingResult:
        self._authorize("patient_appointments", credential, {"patient_id": patient_id})
        with self.store.transaction() as session:
            rows = self.store.patient_appointments(session, patient_id)
            return BookingResult.ok([serialize_history_entry(*row) for row in rows])

    @booking_operation("new_prescription")
    def new_prescription(self, credential: Optional[str], request) -> BookingResult:
        """Record a prescription and link it to the patient's visit with this doctor on that day, if any."""
        request = self._coerce(PrescriptionRequest, request)
        self._authorize("new_prescription", credential, request.model_dump())
        day = parse_date(request.date)
        with self.store.transaction() as session:
            self._require_doctor(session, request.doctor_id)
            self._require_patient(session, request.patient_id)
            prescription_id = self.store.insert_prescription(
                session, request.doctor_id, request.patient_id, day, request.prescription)
            linked = self.store.attach_prescription(
                session, request.doctor_id, request.patient_id, day, prescription_id)
        logging.info(f"Prescription {prescription_id} written by doctor {request.doctor_id} "
                     f"for patient {request.patient_id}, linked to {linked} appointment(s)")
        return BookingResult.ok({"prescription_id": prescription_id, "appointments_linked": linked}, "Inserted")

    @booking_operation("patient_prescriptions")
    def patient_prescriptions(self, credential: Optional[str], patient_id: int) -> BookingResult:
        self._authorize("patient_prescriptions", credential, {"patient_id": patient_id})
        with self.store.transaction() as session:
            rows = self.store.patient_prescriptions(session, patient_id)
            return BookingResult.ok([serialize_prescription(*row) for row in rows])
