# exclusivity.py
from datetime import date
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StoreUnavailable
from .models import ACTIVE_STATUSES


def is_slot_free(store, session: Session, doctor_id: int, appointment_date: date, slot_id: int) -> bool:
    """Return True when no scheduled or ongoing appointment holds the doctor's slot on that day.

    Must run in the same transaction as the insert it guards. A failed read
    never reports the slot as free: it raises ``StoreUnavailable`` so the
    booking is refused and the caller can tell the outage from a conflict.
    """
    try:
        appointments = store.read_appointments(session, doctor_id, appointment_date)
    except SQLAlchemyError as e:
        logging.error(f"Could not read appointments for doctor {doctor_id} on {appointment_date}: {e}")
        raise StoreUnavailable("Could not verify slot availability") from e

    for appointment in appointments:
        if (appointment.slot_id == slot_id
                and appointment.appointment_date == appointment_date
                and appointment.status in ACTIVE_STATUSES):
            logging.info(f"Slot {slot_id} of doctor {doctor_id} on {appointment_date} "
                         f"is held by appointment {appointment.id}")
            return False
    return True
