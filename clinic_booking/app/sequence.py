# sequence.py
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from .models import EmergencyAppointment, Token


class SequenceAllocator:
    """Issues per-doctor, per-day queue numbers.

    Numbers are ``count + 1`` over the rows already issued in the scope, so they
    stay dense (1..N) as long as rows are never deleted. The count is only safe
    when it shares a transaction with the insert that uses it; a concurrent
    insert of the same number is caught by the ``(doctor_id, appointment_date,
    number)`` unique constraint and the caller retries.
    """

    def __init__(self, store):
        self.store = store

    def next_token(self, session: Session, doctor_id: int, appointment_date: date) -> int:
        return self.store.count_tokens(session, doctor_id, appointment_date) + 1

    def next_emergency_number(self, session: Session, doctor_id: int, appointment_date: date) -> int:
        return self.store.count_emergencies(session, doctor_id, appointment_date) + 1

    def next_number(self, session: Session, model, doctor_id: int, appointment_date: date) -> int:
        if model is EmergencyAppointment:
            return self.next_emergency_number(session, doctor_id, appointment_date)
        return self.next_token(session, doctor_id, appointment_date)

    def current_serving(self, session: Session, doctor_id: int, appointment_date: date,
                        model=Token) -> Optional[int]:
        ongoing = self.store.find_ongoing(session, model, doctor_id, appointment_date)
        return ongoing.number if ongoing else None

    def patient_token(self, session: Session, doctor_id: int, patient_id: int,
                      appointment_date: date) -> Optional[int]:
        token = self.store.find_token(session, doctor_id, patient_id, appointment_date)
        return token.token_number if token else None
