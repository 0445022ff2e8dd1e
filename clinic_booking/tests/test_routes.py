import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from clinic_booking.app import create_app
from clinic_booking.app.auth import AuthGate
from clinic_booking.app.dependencies import UserRole
from clinic_booking.app.lifecycle import BookingService
from clinic_booking.app.routes import get_booking_service
from clinic_booking.app.store import Store

from conftest import DAY, SECRET, appointment_request, bearer, token_request


@pytest.fixture
def client(service):
    app = create_app()
    app.dependency_overrides[get_booking_service] = lambda: service
    with TestClient(app) as client:
        yield client


def auth(identity, role=UserRole.PATIENT):
    return {"Authorization": bearer(identity, role)}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_register_and_login_patient(client, clinic):
    response = client.post("/patients", json={
        "name": "Meera Iyer", "email": "meera@clinic.test", "phone": "555-0300", "password": "hunter22",
    })
    assert response.status_code == 200
    patient_id = response.json()["id"]

    response = client.post("/patients", json={
        "name": "Meera Again", "email": "meera@clinic.test", "phone": "555-0301", "password": "x",
    })
    assert response.status_code == 400

    response = client.post("/token", data={"username": "meera@clinic.test", "password": "wrong"})
    assert response.status_code == 401

    response = client.post("/token", data={"username": "meera@clinic.test", "password": "hunter22"})
    assert response.status_code == 200
    login = response.json()
    assert login["id"] == patient_id
    assert login["role"] == "patient"

    # The issued token books on the patient's own behalf.
    headers = {"Authorization": f"Bearer {login['access_token']}"}
    response = client.post("/appointments", json=appointment_request(clinic, patient_id=patient_id), headers=headers)
    assert response.status_code == 200
    assert response.json()["accepted"] is True


def test_register_doctor(client, clinic):
    response = client.post("/doctors", json={
        "name": "Dr. Kiran Das", "speciality_id": 1, "city": "Pune", "address": "7 FC Road",
        "email": "kiran@clinic.test", "phone": "555-0400", "password": "stethoscope",
    })
    assert response.status_code == 200

    response = client.post("/token", data={"username": "kiran@clinic.test", "password": "stethoscope"})
    assert response.json()["role"] == "doctor"

    cities = client.get("/cities").json()
    assert {"city": "Pune"} in cities
    doctors = client.get("/doctors", params={"city": "Pune"}).json()
    assert {doctor["name"] for doctor in doctors} == {"Dr. Asha Rao", "Dr. Kiran Das"}


def test_listings(client, clinic):
    assert [s["name"] for s in client.get("/specialities").json()] == ["General Medicine"]
    assert [t["name"] for t in client.get("/appointment-types").json()] == ["Consultation", "Follow-up"]


def test_book_appointment_status_codes(client, clinic):
    request = appointment_request(clinic)

    response = client.post("/appointments", json=request)
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert response.json()["error"] == "unauthorized"

    response = client.post("/appointments", json=request, headers=auth(clinic.patients[0]))
    assert response.status_code == 200
    body = response.json()
    assert body["accepted"] is True
    assert body["detail"] == "Inserted"
    assert isinstance(body["value"]["appointment_id"], int)

    response = client.post("/appointments", json=appointment_request(clinic, patient_index=1),
                           headers=auth(clinic.patients[1]))
    assert response.status_code == 409
    assert response.json()["error"] == "slot_conflict"

    response = client.post("/appointments", json=appointment_request(clinic, patient_index=1, date="02-11-2026"),
                           headers=auth(clinic.patients[1]))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_date"


def test_timeslots_and_availability(client, clinic):
    client.post("/appointments", json=appointment_request(clinic, slot_index=1), headers=auth(clinic.patients[0]))

    response = client.get(f"/doctors/{clinic.doctor}/timeslots", params={"date": DAY})
    assert response.status_code == 200
    assert [slot["available"] for slot in response.json()["value"]] == [True, False, True]

    response = client.get(f"/doctors/{clinic.doctor}/slots/{clinic.slots[1]}/available", params={"date": DAY})
    assert response.json()["value"] is False
    response = client.get(f"/doctors/{clinic.doctor}/slots/{clinic.slots[2]}/available", params={"date": DAY})
    assert response.json()["value"] is True

    assert client.get("/doctors/999/timeslots", params={"date": DAY}).status_code == 404


def test_token_queue(client, clinic):
    assert client.get(f"/doctors/{clinic.doctor}/tokens/next", params={"date": DAY}).json()["value"] == 1

    response = client.post("/tokens", json=token_request(clinic), headers=auth(clinic.patients[0]))
    assert response.json()["value"]["token_number"] == 1
    response = client.post("/tokens", json=token_request(clinic, patient_index=1), headers=auth(clinic.patients[1]))
    token_id = response.json()["value"]["token_id"]

    response = client.get(f"/patients/{clinic.patients[1]}/token", params={"doctor_id": clinic.doctor, "date": DAY},
                          headers=auth(clinic.patients[1]))
    assert response.json()["value"] == 2

    response = client.patch(f"/tokens/{token_id}/status", json={"status": "ongoing"},
                            headers=auth(clinic.doctor, UserRole.DOCTOR))
    assert response.status_code == 200
    response = client.get(f"/doctors/{clinic.doctor}/tokens/current", params={"date": DAY})
    assert response.json()["value"] == 2

    response = client.patch(f"/tokens/{token_id}/status", json={"status": "scheduled"},
                            headers=auth(clinic.doctor, UserRole.DOCTOR))
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"

    assert client.patch(f"/visits/{token_id}/status", json={"status": "ongoing"}).status_code == 404


def test_emergencies_and_doctor_views(client, clinic):
    client.post("/emergencies", json=token_request(clinic), headers=auth(clinic.patients[0]))
    client.post("/appointments", json=appointment_request(clinic), headers=auth(clinic.patients[1]))

    response = client.get(f"/doctors/{clinic.doctor}/emergencies", params={"date": DAY},
                          headers=auth(clinic.doctor, UserRole.DOCTOR))
    assert [e["emergency_no"] for e in response.json()["value"]] == [1]
    assert client.get(f"/doctors/{clinic.doctor}/emergencies/next", params={"date": DAY}).json()["value"] == 2

    response = client.get(f"/doctors/{clinic.doctor}/appointments", headers=auth(clinic.doctor, UserRole.DOCTOR))
    assert [a["patient_id"] for a in response.json()["value"]] == [clinic.patients[1]]

    response = client.get(f"/doctors/{clinic.doctor}/appointments",
                          headers=auth(clinic.other_doctor, UserRole.DOCTOR))
    assert response.status_code == 401


def test_cancel_appointment(client, clinic):
    client.post("/appointments", json=appointment_request(clinic), headers=auth(clinic.patients[0]))

    response = client.post("/appointments/cancel", headers=auth(clinic.patients[0]), json={
        "doctor_id": clinic.doctor, "patient_id": clinic.patients[0], "date": DAY,
    })
    assert response.status_code == 200

    response = client.post("/appointments", json=appointment_request(clinic, patient_index=1),
                           headers=auth(clinic.patients[1]))
    assert response.status_code == 200


class DownStore(Store):

    def list_doctors(self, session, city=None):
        raise OperationalError("SELECT * FROM doctors", {}, Exception("connection refused"))


def test_store_failure_is_503(engine, clinic):
    app = create_app()
    service = BookingService(DownStore(engine), AuthGate(SECRET))
    app.dependency_overrides[get_booking_service] = lambda: service

    with TestClient(app) as client:
        response = client.get("/doctors")

    assert response.status_code == 503
    assert response.json()["error"] == "store_unavailable"


def test_patient_records(client, clinic):
    patient = clinic.patients[0]
    client.post("/appointments", json=appointment_request(clinic), headers=auth(patient))

    response = client.patch(f"/patients/{patient}", json={"blood_group": "O-", "age": 29}, headers=auth(patient))
    assert response.status_code == 200
    assert response.json()["value"]["blood_group"] == "O-"
    assert client.patch(f"/patients/{patient}", json={"age": 30}, headers=auth(clinic.patients[1])).status_code == 401

    response = client.get(f"/patients/{patient}", headers=auth(patient))
    assert (response.json()["value"]["age"], response.json()["value"]["gender"]) == (29, None)

    response = client.post("/prescriptions", headers=auth(clinic.doctor, UserRole.DOCTOR), json={
        "doctor_id": clinic.doctor, "patient_id": patient, "date": DAY, "prescription": "Saline gargle",
    })
    assert response.status_code == 200
    prescription_id = response.json()["value"]["prescription_id"]

    history = client.get(f"/patients/{patient}/appointments", headers=auth(patient)).json()["value"]
    assert [a["prescription_id"] for a in history] == [prescription_id]
    prescriptions = client.get(f"/patients/{patient}/prescriptions", headers=auth(patient)).json()["value"]
    assert [p["prescription"] for p in prescriptions] == ["Saline gargle"]

    assert client.get("/patients/999", headers=auth(999)).status_code == 404
