# auth.py
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session
from .dependencies import UserRole
from .errors import Unauthorized
import os
import json
import logging

# Get JWT secret key from environment variable
SECRET_KEY = os.getenv("JWT_SECRET_KEY")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def authenticate_user(store, session: Session, email: str, password: str):
    """Check a login and return ``(identity_id, role)``, or None."""
    login = store.get_login(session, email)
    if not login:
        logging.error(f"Login not found: {email}")
        return None
    if not verify_password(password, login.hashed_password):
        logging.error(f"Password verification failed for: {email}")
        return None
    identity = store.identity_for_email(session, email, login.is_doctor)
    if identity is None:
        logging.error(f"No {'doctor' if login.is_doctor else 'patient'} profile for login: {email}")
        return None
    return identity, UserRole.DOCTOR if login.is_doctor else UserRole.PATIENT


def create_access_token(data: dict, expires_delta: timedelta = None, secret_key: str = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, secret_key or SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def issue_token(identity: int, role: UserRole, expires_delta: timedelta = None, secret_key: str = None):
    return create_access_token({"sub": str(identity), "role": role.value}, expires_delta, secret_key)


class SessionClaim(BaseModel):
    identity: int
    role: UserRole
    expires_at: datetime


class AuthGate:
    """Verifies bearer credentials; never raises on a bad token."""

    def __init__(self, secret_key: str = None):
        self.secret_key = secret_key or SECRET_KEY

    def verify(self, credential: Optional[str]) -> Optional[SessionClaim]:
        if not credential:
            logging.info("No credential given, denying access")
            return None
        token = credential.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except JWTError as e:
            logging.info(f"JWTError: {str(e)}")
            return None
        try:
            return SessionClaim(
                identity=int(payload["sub"]),
                role=UserRole(payload["role"]),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as e:
            logging.info(f"Malformed claims in credential: {e}")
            return None


class AccessRule(BaseModel):
    """Who may run an operation: ``role`` None means public; ``owner_field``
    names the request field that must equal the caller's identity."""
    role: Optional[UserRole] = None
    owner_field: Optional[str] = None

    @property
    def public(self) -> bool:
        return self.role is None


PUBLIC = AccessRule()
PATIENT_OWNER = AccessRule(role=UserRole.PATIENT, owner_field="patient_id")
DOCTOR_OWNER = AccessRule(role=UserRole.DOCTOR, owner_field="doctor_id")

DEFAULT_POLICY: Dict[str, AccessRule] = {
    "create_appointment": PATIENT_OWNER,
    "create_token": PATIENT_OWNER,
    "create_emergency": PATIENT_OWNER,
    "cancel_appointment": PATIENT_OWNER,
    "patient_token": PATIENT_OWNER,
    "patient_profile": PATIENT_OWNER,
    "update_patient": PATIENT_OWNER,
    "patient_appointments": PATIENT_OWNER,
    "patient_prescriptions": PATIENT_OWNER,
    "doctor_appointments": DOCTOR_OWNER,
    "doctor_emergencies": DOCTOR_OWNER,
    "transition_status": DOCTOR_OWNER,
    "new_prescription": DOCTOR_OWNER,
    "slot_available": PUBLIC,
    "next_token": PUBLIC,
    "next_emergency_number": PUBLIC,
    "current_serving": PUBLIC,
    "doctor_timeslots": PUBLIC,
}


def load_policy(overrides: Dict[str, dict] = None) -> Dict[str, AccessRule]:
    """Merge per-operation overrides, e.g. ``{"current_serving": {"role": "doctor"}}``."""
    policy = dict(DEFAULT_POLICY)
    for operation, rule in (overrides or {}).items():
        policy[operation] = rule if isinstance(rule, AccessRule) else AccessRule(**rule)
    return policy


def policy_from_env() -> Dict[str, AccessRule]:
    raw = os.getenv("AUTH_POLICY_OVERRIDES")
    return load_policy(json.loads(raw) if raw else None)


def check_access(rule: AccessRule, claim: Optional[SessionClaim], request: dict) -> None:
    """Raise ``Unauthorized`` unless the claim satisfies the rule for this request."""
    if rule.public:
        return
    if claim is None:
        raise Unauthorized("Could not validate credentials")
    if claim.role != rule.role:
        raise Unauthorized(f"Operation requires the {rule.role.value} role")
    if rule.owner_field and request.get(rule.owner_field) != claim.identity:
        raise Unauthorized(f"Credential does not match {rule.owner_field}")
