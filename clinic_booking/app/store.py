# store.py
from contextlib import contextmanager
from datetime import date
from typing import List, Optional
import logging

from sqlalchemy import func, exists, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import ConflictRetryable, StoreUnavailable
from .models import (ACTIVE_STATUSES, Appointment, AppointmentType, BookingStatus, Doctor, DoctorSlot,
                     EmergencyAppointment, Login, Patient, Prescription, Speciality, Token)


class Store:
    """Transactional access to the clinic tables.

    The store owns one session factory bound to a pooled engine. Every unit of
    work runs inside ``transaction()``, which commits on success and rolls back
    on every other exit path. SQLAlchemy errors are translated into
    ``ConflictRetryable`` (unique constraint violations) or ``StoreUnavailable``.
    """

    def __init__(self, engine):
        self.engine = engine
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine,
                                            expire_on_commit=False)

    @contextmanager
    def transaction(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logging.info(f"Constraint violation, rolled back: {e.orig}")
            raise ConflictRetryable(str(e.orig)) from e
        except SQLAlchemyError as e:
            # Driver errors, pool exhaustion and lost connections alike.
            session.rollback()
            logging.error(f"Store failure, rolled back: {e}")
            raise StoreUnavailable("The data store is unavailable") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _flush(session: Session):
        try:
            session.flush()
        except IntegrityError as e:
            raise ConflictRetryable(str(e.orig)) from e

    # Doctors and slots

    def get_doctor(self, session: Session, doctor_id: int) -> Optional[Doctor]:
        return session.query(Doctor).filter_by(id=doctor_id).first()

    def get_slot(self, session: Session, slot_id: int) -> Optional[DoctorSlot]:
        return session.query(DoctorSlot).filter_by(id=slot_id).first()

    # Appointments

    def read_appointments(self, session: Session, doctor_id: int, appointment_date: date = None) -> List[Appointment]:
        query = session.query(Appointment).filter(Appointment.doctor_id == doctor_id)
        if appointment_date is not None:
            query = query.filter(Appointment.appointment_date == appointment_date)
        return query.order_by(Appointment.appointment_date, Appointment.id).all()

    def insert_appointment(self, session: Session, doctor_id: int, patient_id: int, appointment_type: int,
                           appointment_date: date, slot_id: int, visit_mode: str, symptom: str) -> int:
        appointment = Appointment(
            doctor_id=doctor_id,
            patient_id=patient_id,
            appointment_type=appointment_type,
            appointment_date=appointment_date,
            slot_id=slot_id,
            visit_mode=visit_mode,
            symptom=symptom,
            status=BookingStatus.SCHEDULED.value,
        )
        session.add(appointment)
        self._flush(session)
        return appointment.id

    def update_appointment_status(self, session: Session, doctor_id: int, patient_id: int,
                                  appointment_date: date, status: str, from_statuses=ACTIVE_STATUSES) -> int:
        """Set ``status`` on the matching appointments still in ``from_statuses``; returns the row count."""
        affected = session.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.patient_id == patient_id,
            Appointment.appointment_date == appointment_date,
            Appointment.status.in_(from_statuses),
        ).update({Appointment.status: status}, synchronize_session=False)
        return affected

    # Tokens and emergencies share one shape; ``model`` picks the numbering scope.

    def count_issued(self, session: Session, model, doctor_id: int, appointment_date: date) -> int:
        return session.query(func.count(model.id)).filter(
            model.doctor_id == doctor_id,
            model.appointment_date == appointment_date,
        ).scalar() or 0

    def count_tokens(self, session: Session, doctor_id: int, appointment_date: date) -> int:
        return self.count_issued(session, Token, doctor_id, appointment_date)

    def count_emergencies(self, session: Session, doctor_id: int, appointment_date: date) -> int:
        return self.count_issued(session, EmergencyAppointment, doctor_id, appointment_date)

    def find_queued(self, session: Session, model, doctor_id: int, patient_id: int, appointment_date: date,
                    appointment_type: int = None):
        query = session.query(model).filter(
            model.doctor_id == doctor_id,
            model.patient_id == patient_id,
            model.appointment_date == appointment_date,
        )
        if appointment_type is not None:
            query = query.filter(model.appointment_type == appointment_type)
        return query.order_by(model.id).first()

    def find_token(self, session: Session, doctor_id: int, patient_id: int, appointment_date: date,
                   appointment_type: int = None) -> Optional[Token]:
        return self.find_queued(session, Token, doctor_id, patient_id, appointment_date, appointment_type)

    def find_emergency(self, session: Session, doctor_id: int, patient_id: int, appointment_date: date,
                       appointment_type: int = None) -> Optional[EmergencyAppointment]:
        return self.find_queued(session, EmergencyAppointment, doctor_id, patient_id, appointment_date,
                                appointment_type)

    def find_ongoing(self, session: Session, model, doctor_id: int, appointment_date: date):
        return session.query(model).filter(
            model.doctor_id == doctor_id,
            model.appointment_date == appointment_date,
            model.status == BookingStatus.ONGOING.value,
        ).first()

    def insert_token(self, session: Session, doctor_id: int, patient_id: int, appointment_type: int,
                     appointment_date: date, token_number: int, symptom: str) -> int:
        token = Token(
            doctor_id=doctor_id,
            patient_id=patient_id,
            appointment_type=appointment_type,
            appointment_date=appointment_date,
            token_number=token_number,
            status=BookingStatus.SCHEDULED.value,
            symptom=symptom,
        )
        session.add(token)
        self._flush(session)
        return token.id

    def insert_emergency(self, session: Session, doctor_id: int, patient_id: int, appointment_type: int,
                         appointment_date: date, emergency_no: int, symptom: str) -> int:
        emergency = EmergencyAppointment(
            doctor_id=doctor_id,
            patient_id=patient_id,
            appointment_type=appointment_type,
            appointment_date=appointment_date,
            emergency_no=emergency_no,
            status=BookingStatus.SCHEDULED.value,
            symptom=symptom,
        )
        session.add(emergency)
        self._flush(session)
        return emergency.id

    def get_booking(self, session: Session, model, booking_id: int):
        return session.query(model).filter_by(id=booking_id).first()

    def update_status(self, session: Session, booking, status: str):
        booking.status = status
        self._flush(session)
        return booking

    # Read-only listings

    def list_doctors(self, session: Session, city: str = None) -> List[Doctor]:
        query = session.query(Doctor)
        if city:
            query = query.filter(Doctor.city == city)
        return query.order_by(Doctor.id).all()

    def list_cities(self, session: Session) -> List[str]:
        return [row[0] for row in session.query(Doctor.city).distinct().order_by(Doctor.city).all()]

    def list_specialities(self, session: Session) -> List[Speciality]:
        return session.query(Speciality).order_by(Speciality.id).all()

    def list_appointment_types(self, session: Session) -> List[AppointmentType]:
        return session.query(AppointmentType).order_by(AppointmentType.id).all()

    def doctor_timeslots(self, session: Session, doctor_id: int, appointment_date: date):
        """Return ``(slot, available)`` pairs for one doctor and day."""
        taken = exists().where(and_(
            Appointment.doctor_id == doctor_id,
            Appointment.slot_id == DoctorSlot.id,
            Appointment.appointment_date == appointment_date,
            Appointment.status.in_(ACTIVE_STATUSES),
        )).correlate(DoctorSlot)
        rows = session.query(DoctorSlot, (~taken).label("available")).filter(
            DoctorSlot.doctor_id == doctor_id
        ).order_by(DoctorSlot.time_start).all()
        return [(slot, bool(available)) for slot, available in rows]

    def doctor_emergencies(self, session: Session, doctor_id: int, appointment_date: date):
        return session.query(EmergencyAppointment).filter(
            EmergencyAppointment.doctor_id == doctor_id,
            EmergencyAppointment.appointment_date == appointment_date,
        ).order_by(EmergencyAppointment.emergency_no).all()

    # Patient records

    def get_patient(self, session: Session, patient_id: int) -> Optional[Patient]:
        return session.query(Patient).filter_by(id=patient_id).first()

    def update_patient(self, session: Session, patient: Patient, **fields) -> Patient:
        for name, value in fields.items():
            setattr(patient, name, value)
        self._flush(session)
        return patient

    def patient_appointments(self, session: Session, patient_id: int):
        """Return ``(appointment, doctor_name, appointment_type_name)`` rows, newest first."""
        return session.query(Appointment, Doctor.name, AppointmentType.name).join(
            Doctor, Doctor.id == Appointment.doctor_id
        ).join(
            AppointmentType, AppointmentType.id == Appointment.appointment_type
        ).filter(
            Appointment.patient_id == patient_id
        ).order_by(Appointment.appointment_date.desc(), Appointment.id.desc()).all()

    def insert_prescription(self, session: Session, doctor_id: int, patient_id: int, appointment_date: date,
                            prescription: str) -> int:
        record = Prescription(doctor_id=doctor_id, patient_id=patient_id, appointment_date=appointment_date,
                              prescription=prescription)
        session.add(record)
        self._flush(session)
        return record.id

    def attach_prescription(self, session: Session, doctor_id: int, patient_id: int, appointment_date: date,
                            prescription_id: int) -> int:
        """Point the day's non-cancelled appointments with this doctor at the prescription."""
        return session.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.patient_id == patient_id,
            Appointment.appointment_date == appointment_date,
            Appointment.status != BookingStatus.CANCELLED.value,
        ).update({Appointment.prescription_id: prescription_id}, synchronize_session=False)

    def patient_prescriptions(self, session: Session, patient_id: int):
        """Return ``(prescription, doctor_name)`` rows, newest first."""
        return session.query(Prescription, Doctor.name).join(
            Doctor, Doctor.id == Prescription.doctor_id
        ).filter(
            Prescription.patient_id == patient_id
        ).order_by(Prescription.appointment_date.desc(), Prescription.id.desc()).all()

    # Credentials

    def get_login(self, session: Session, email: str) -> Optional[Login]:
        return session.query(Login).filter(Login.email == email).first()

    def identity_for_email(self, session: Session, email: str, is_doctor: bool) -> Optional[int]:
        model = Doctor if is_doctor else Patient
        row = session.query(model.id).filter(model.email == email).first()
        return row[0] if row else None

    def add_login(self, session: Session, email: str, hashed_password: str, is_doctor: bool):
        session.add(Login(email=email, hashed_password=hashed_password, is_doctor=is_doctor))
        self._flush(session)

    def add_patient(self, session: Session, **fields) -> int:
        patient = Patient(**fields)
        session.add(patient)
        self._flush(session)
        return patient.id

    def add_doctor(self, session: Session, **fields) -> int:
        doctor = Doctor(**fields)
        session.add(doctor)
        self._flush(session)
        return doctor.id

    def ping(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.exec_driver_sql("SELECT 1")
            return True
        except SQLAlchemyError as e:
            logging.error(f"Store ping failed: {e}")
            return False
