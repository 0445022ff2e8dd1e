# models.py
from sqlalchemy import Column, Integer, String, Date, Time, Text, Boolean, ForeignKey, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base, relationship
from enum import Enum

Base = declarative_base()


class BookingStatus(str, Enum):
    SCHEDULED = "scheduled"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VisitMode(str, Enum):
    PHYSICAL = "physical"
    VIRTUAL = "virtual"


ACTIVE_STATUSES = (BookingStatus.SCHEDULED.value, BookingStatus.ONGOING.value)

# Partial index predicates, shared by PostgreSQL and SQLite.
ACTIVE_PREDICATE = text("status IN ('scheduled', 'ongoing')")
ONGOING_PREDICATE = text("status = 'ongoing'")


class Speciality(Base):
    __tablename__ = 'specialities'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=False, default='')


class AppointmentType(Base):
    __tablename__ = 'appointment_types'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    speciality_id = Column(Integer, ForeignKey('specialities.id'), nullable=False)


class Login(Base):
    __tablename__ = 'login'
    email = Column(String, primary_key=True)
    hashed_password = Column(String, nullable=False)
    is_doctor = Column(Boolean, nullable=False, default=False)


class Doctor(Base):
    __tablename__ = 'doctors'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    speciality_id = Column(Integer, ForeignKey('specialities.id'), nullable=False)
    city = Column(String, nullable=False, index=True)
    address = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=False)

    speciality = relationship("Speciality")
    slots = relationship("DoctorSlot", back_populates="doctor", order_by="DoctorSlot.time_start")


class Patient(Base):
    __tablename__ = 'patients'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=False)
    gender = Column(String, nullable=True)
    weight = Column(Integer, nullable=True)
    age = Column(Integer, nullable=True)
    blood_group = Column(String, nullable=True)


class Prescription(Base):
    __tablename__ = 'prescriptions'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.id'), nullable=False)
    patient_id = Column(Integer, ForeignKey('patients.id'), nullable=False, index=True)
    appointment_date = Column(Date, nullable=False)
    prescription = Column(Text, nullable=False)

    doctor = relationship("Doctor")


class DoctorSlot(Base):
    __tablename__ = 'doctor_slots'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.id'), nullable=False)
    time_start = Column(Time, nullable=False)

    doctor = relationship("Doctor", back_populates="slots")

    __table_args__ = (
        UniqueConstraint('doctor_id', 'time_start', name='_doctor_time_start_uc'),
    )


class Appointment(Base):
    __tablename__ = 'appointments'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.id'), nullable=False)
    patient_id = Column(Integer, ForeignKey('patients.id'), nullable=False)
    slot_id = Column(Integer, ForeignKey('doctor_slots.id'), nullable=False)
    appointment_date = Column(Date, nullable=False)
    appointment_type = Column(Integer, ForeignKey('appointment_types.id'), nullable=False)
    visit_mode = Column(String, nullable=False, default=VisitMode.PHYSICAL.value)
    symptom = Column(Text, nullable=False, default='')
    status = Column(String, nullable=False, default=BookingStatus.SCHEDULED.value)
    prescription_id = Column(Integer, ForeignKey('prescriptions.id'), nullable=True)

    __table_args__ = (
        # At most one scheduled/ongoing appointment per doctor, slot and day.
        Index('uq_appointment_active_slot', 'doctor_id', 'slot_id', 'appointment_date', unique=True,
              postgresql_where=ACTIVE_PREDICATE, sqlite_where=ACTIVE_PREDICATE),
        Index('idx_appointment_doctor_date', 'doctor_id', 'appointment_date'),
    )


class Token(Base):
    __tablename__ = 'tokens'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.id'), nullable=False)
    patient_id = Column(Integer, ForeignKey('patients.id'), nullable=False)
    appointment_date = Column(Date, nullable=False)
    appointment_type = Column(Integer, ForeignKey('appointment_types.id'), nullable=False)
    token_number = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=BookingStatus.SCHEDULED.value)
    symptom = Column(Text, nullable=False, default='')

    __table_args__ = (
        UniqueConstraint('doctor_id', 'appointment_date', 'token_number', name='_token_number_uc'),
        UniqueConstraint('doctor_id', 'patient_id', 'appointment_date', 'appointment_type', name='_token_patient_uc'),
        Index('uq_token_ongoing', 'doctor_id', 'appointment_date', unique=True,
              postgresql_where=ONGOING_PREDICATE, sqlite_where=ONGOING_PREDICATE),
    )

    @property
    def number(self):
        return self.token_number


class EmergencyAppointment(Base):
    __tablename__ = 'emergency_appointments'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.id'), nullable=False)
    patient_id = Column(Integer, ForeignKey('patients.id'), nullable=False)
    appointment_date = Column(Date, nullable=False)
    appointment_type = Column(Integer, ForeignKey('appointment_types.id'), nullable=False)
    emergency_no = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=BookingStatus.SCHEDULED.value)
    symptom = Column(Text, nullable=False, default='')

    __table_args__ = (
        UniqueConstraint('doctor_id', 'appointment_date', 'emergency_no', name='_emergency_no_uc'),
        UniqueConstraint('doctor_id', 'patient_id', 'appointment_date', 'appointment_type',
                         name='_emergency_patient_uc'),
        Index('uq_emergency_ongoing', 'doctor_id', 'appointment_date', unique=True,
              postgresql_where=ONGOING_PREDICATE, sqlite_where=ONGOING_PREDICATE),
    )

    @property
    def number(self):
        return self.emergency_no
