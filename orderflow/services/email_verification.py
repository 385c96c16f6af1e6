"""
E-mail OTP verification for chat orders.

One outstanding code per address: issuing a new code replaces the old one.
A code allows ``otp_max_attempts`` wrong guesses; the guess that uses up the
last attempt already reports ``max_attempts``.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from ..config import AppConfig
from ..db.session import get_session
from ..errors import ValidationError
from ..models.chat_session import EmailVerificationCode
from ..models.user import User
from ..utils.timeutil import utcnow
from ..utils.validators import normalize_email
from .collaborators import Collaborators
from .logging import log_event


INVALID = "invalid"
EXPIRED = "expired"
MAX_ATTEMPTS = "max_attempts"
NOT_FOUND = "not_found"


@dataclass
class VerificationResult:
    success: bool
    reason: Optional[str] = None
    attempts_remaining: int = 0


def generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


class EmailVerificationService:
    def __init__(self, config: AppConfig, session_factory=get_session, collaborators: Optional[Collaborators] = None):
        self._config = config
        self._session_factory = session_factory
        self._collab = collaborators or Collaborators()

    def issue_code(self, email: str, contact_id: Optional[str] = None, now: Optional[datetime] = None) -> str:
        address = normalize_email(email)
        if address is None:
            raise ValidationError("Please enter a valid email address (e.g., name@example.com).")
        now = now or utcnow()
        code = generate_otp()
        with self._session_factory() as session:
            session.query(EmailVerificationCode).filter(EmailVerificationCode.email == address).delete(
                synchronize_session=False
            )
            session.add(
                EmailVerificationCode(
                    id=str(uuid4()),
                    email=address,
                    code=code,
                    attempts=0,
                    contact_id=contact_id,
                    expires_at=now + timedelta(minutes=self._config.otp_ttl_minutes),
                )
            )
        self._collab.send_otp(address, code)
        log_event("info", "otp.issued", email=address)
        return code

    def verify_code(self, email: str, code: str, now: Optional[datetime] = None) -> VerificationResult:
        address = normalize_email(email)
        limit = self._config.otp_max_attempts
        now = now or utcnow()
        with self._session_factory() as session:
            row = session.query(EmailVerificationCode).filter(EmailVerificationCode.email == address).first()
            if row is None:
                return VerificationResult(False, NOT_FOUND)
            if row.expires_at <= now:
                return VerificationResult(False, EXPIRED)
            if row.attempts >= limit:
                return VerificationResult(False, MAX_ATTEMPTS)
            if not secrets.compare_digest(row.code, (code or "").strip()):
                row.attempts += 1
                remaining = limit - row.attempts
                log_event("info", "otp.mismatch", email=address, attempts=row.attempts)
                return VerificationResult(False, MAX_ATTEMPTS if remaining <= 0 else INVALID, max(0, remaining))
            session.delete(row)
        log_event("info", "otp.verified", email=address)
        return VerificationResult(True)

    def get_or_create_user(self, email: str, contact_id: Optional[str] = None, name: Optional[str] = None) -> str:
        """Match by e-mail, then by chat contact id; otherwise create a customer."""
        address = normalize_email(email)
        with self._session_factory() as session:
            user = session.query(User).filter(User.email == address).first()
            if user is None and contact_id:
                user = session.query(User).filter(User.chat_contact_id == str(contact_id)).first()
                if user is not None and not user.email:
                    user.email = address
            if user is None:
                user = User(id=str(uuid4()), email=address, name=name, role="customer", chat_contact_id=contact_id)
                session.add(user)
                log_event("info", "user.created_from_chat", user_id=user.id)
            elif contact_id and not user.chat_contact_id:
                user.chat_contact_id = str(contact_id)
            session.flush()
            return user.id
