from clinic_booking.app.dependencies import UserRole
from clinic_booking.app.errors import ErrorKind
from clinic_booking.app.models import Appointment, Patient, Prescription

from conftest import DAY, appointment_request, bearer


def doctor(identity):
    return bearer(identity, role=UserRole.DOCTOR)


def prescription_request(clinic, patient_index=0, date=DAY, text="Paracetamol 500mg twice daily", **overrides):
    request = {
        "doctor_id": clinic.doctor,
        "patient_id": clinic.patients[patient_index],
        "date": date,
        "prescription": text,
    }
    request.update(overrides)
    return request


# Profile

def test_patient_sees_own_profile(service, clinic):
    result = service.patient_profile(bearer(clinic.patients[2]), clinic.patients[2])

    assert result.accepted
    assert result.value["name"] == "Patient 2"
    assert result.value["email"] == "patient2@clinic.test"


def test_profile_is_owner_only(service, clinic):
    assert service.patient_profile(bearer(clinic.patients[1]), clinic.patients[2]).error == ErrorKind.UNAUTHORIZED
    assert service.patient_profile(doctor(clinic.doctor), clinic.patients[2]).error == ErrorKind.UNAUTHORIZED
    assert service.patient_profile(None, clinic.patients[2]).error == ErrorKind.UNAUTHORIZED


def test_profile_of_unknown_patient(service):
    assert service.patient_profile(bearer(999), 999).error == ErrorKind.NOT_FOUND


def test_patient_updates_demographics(service, store, clinic):
    patient_id = clinic.patients[0]
    service.update_patient(bearer(patient_id), patient_id, {"gender": "female", "age": 34})

    result = service.update_patient(bearer(patient_id), patient_id, {"weight": 61, "blood_group": "B+"})

    assert result.accepted
    assert result.detail == "Updated"
    assert {k: result.value[k] for k in ("gender", "age", "weight", "blood_group")} == {
        "gender": "female", "age": 34, "weight": 61, "blood_group": "B+",
    }


def test_update_ignores_identity_fields(service, store, clinic):
    patient_id = clinic.patients[0]

    service.update_patient(bearer(patient_id), patient_id, {"name": "Someone Else", "email": "x@y.test", "age": 40})

    with store.transaction() as session:
        patient = session.query(Patient).filter_by(id=patient_id).one()
        assert (patient.name, patient.email, patient.age) == ("Patient 0", "patient0@clinic.test", 40)


def test_only_the_patient_may_update(service, store, clinic):
    result = service.update_patient(bearer(clinic.patients[1]), clinic.patients[0], {"age": 99})

    assert result.error == ErrorKind.UNAUTHORIZED
    with store.transaction() as session:
        assert session.query(Patient).filter_by(id=clinic.patients[0]).one().age is None


def test_update_rejects_negative_values(service, clinic):
    result = service.update_patient(bearer(clinic.patients[0]), clinic.patients[0], {"weight": -3})
    assert result.error == ErrorKind.INVALID_REQUEST


# History

def test_appointment_history_is_newest_first(service, clinic):
    patient = bearer(clinic.patients[0])
    service.create_appointment(patient, appointment_request(clinic, date="2026-11-02"))
    service.create_appointment(patient, appointment_request(clinic, date="2026-11-09", slot_index=2,
                                                            appointment_type=clinic.follow_up))
    service.cancel_appointment(patient, {"doctor_id": clinic.doctor, "patient_id": clinic.patients[0],
                                         "date": "2026-11-02"})

    history = service.patient_appointments(patient, clinic.patients[0]).value

    assert [(a["date"], a["status"]) for a in history] == [("2026-11-09", "scheduled"), ("2026-11-02", "cancelled")]
    assert history[0]["doctor_name"] == "Dr. Asha Rao"
    assert history[0]["appointment_type_name"] == "Follow-up"


def test_history_is_owner_only(service, clinic):
    result = service.patient_appointments(bearer(clinic.patients[1]), clinic.patients[0])
    assert result.error == ErrorKind.UNAUTHORIZED


# Prescriptions

def test_prescription_is_linked_to_the_days_appointment(service, store, clinic):
    service.create_appointment(bearer(clinic.patients[0]), appointment_request(clinic))

    result = service.new_prescription(doctor(clinic.doctor), prescription_request(clinic))

    assert result.accepted
    assert result.value["appointments_linked"] == 1
    with store.transaction() as session:
        appointment = session.query(Appointment).one()
        assert appointment.prescription_id == result.value["prescription_id"]

    history = service.patient_appointments(bearer(clinic.patients[0]), clinic.patients[0]).value
    assert history[0]["prescription_id"] == result.value["prescription_id"]


def test_prescription_without_appointment_is_still_recorded(service, clinic):
    result = service.new_prescription(doctor(clinic.doctor), prescription_request(clinic, patient_index=3))

    assert result.accepted
    assert result.value["appointments_linked"] == 0


def test_cancelled_appointment_is_not_linked(service, clinic):
    patient = bearer(clinic.patients[0])
    service.create_appointment(patient, appointment_request(clinic))
    service.cancel_appointment(patient, {"doctor_id": clinic.doctor, "patient_id": clinic.patients[0], "date": DAY})

    result = service.new_prescription(doctor(clinic.doctor), prescription_request(clinic))

    assert result.value["appointments_linked"] == 0


def test_only_the_prescribing_doctor_may_write(service, store, clinic):
    assert service.new_prescription(doctor(clinic.other_doctor),
                                    prescription_request(clinic)).error == ErrorKind.UNAUTHORIZED
    assert service.new_prescription(bearer(clinic.patients[0]),
                                    prescription_request(clinic)).error == ErrorKind.UNAUTHORIZED
    with store.transaction() as session:
        assert session.query(Prescription).count() == 0


def test_prescription_validation(service, clinic):
    assert service.new_prescription(doctor(clinic.doctor),
                                    prescription_request(clinic, text="")).error == ErrorKind.INVALID_REQUEST
    assert service.new_prescription(doctor(clinic.doctor),
                                    prescription_request(clinic, date="2026-11-31")).error == ErrorKind.INVALID_DATE
    assert service.new_prescription(doctor(clinic.doctor),
                                    prescription_request(clinic, patient_id=999)).error == ErrorKind.NOT_FOUND


def test_patient_lists_own_prescriptions(service, clinic):
    service.new_prescription(doctor(clinic.doctor), prescription_request(clinic, date="2026-11-02", text="Rest"))
    service.new_prescription(doctor(clinic.doctor), prescription_request(clinic, date="2026-11-09", text="Fluids"))

    result = service.patient_prescriptions(bearer(clinic.patients[0]), clinic.patients[0])

    assert [(p["date"], p["prescription"]) for p in result.value] == [("2026-11-09", "Fluids"), ("2026-11-02", "Rest")]
    assert result.value[0]["doctor_name"] == "Dr. Asha Rao"
    assert service.patient_prescriptions(bearer(clinic.patients[1]),
                                         clinic.patients[0]).error == ErrorKind.UNAUTHORIZED
