"""
OTP signing protocol.

A signer moves from unchallenged, to OTP issued, to OTP verified (holding a
claim), to signed. Nothing before ``submit_signature`` touches the contract
or the signer row; ``submit_signature`` applies the signature, the status
change, the signer timestamp and the audit entry in one commit.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from itsdangerous import BadSignature, SignatureExpired
from sqlalchemy import update
from sqlmodel import Session, select

from . import audit
from .config import CLAIM_TTL_SECONDS, OTP_TTL_MINUTES, SECRET_KEY
from .email import send_otp_email
from .errors import (
    AlreadySignedError,
    ConsentRequired,
    DeliveryError,
    InvalidOrExpiredOtp,
    InvalidOrExpiredToken,
    SignatureRequired,
)
from .lifecycle import contract_variables, lock_contract
from .models import ContractStatus, Signer, SigningOtp
from .utils import canonical_json, data_url_to_bytes, make_claim, read_claim, utcnow

logger = logging.getLogger(__name__)

OTP_DIGITS = 6


def hash_otp(code: str) -> str:
    return hmac.new(SECRET_KEY.encode(), code.encode(), hashlib.sha256).hexdigest()


def generate_otp_code() -> str:
    return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"


def device_fingerprint(user_agent: Optional[str], ip: Optional[str]) -> str:
    raw = f"{user_agent or ''}|{ip or ''}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


# ---------- signer lookups ----------

def _signer_by_token(session: Session, token: str) -> Signer:
    signer = session.exec(select(Signer).where(Signer.token == token)).first()
    if not signer or signer.token_expires_at < utcnow():
        raise InvalidOrExpiredToken()
    return signer


def get_signer_by_token(session: Session, token: str) -> Signer:
    """Lookup for anything that changes state: used tokens do not resolve."""
    signer = _signer_by_token(session, token)
    if signer.signed_at is not None:
        raise InvalidOrExpiredToken()
    return signer


def get_signer_for_document(session: Session, token: str) -> Signer:
    """Read-only lookup; a used token still opens the finished document until it expires."""
    return _signer_by_token(session, token)


def _load_signer(session: Session, signer_id: int) -> Signer:
    signer = session.get(Signer, signer_id)
    if not signer:
        raise InvalidOrExpiredToken()
    return signer


# ---------- OTP ----------

@dataclass
class OtpIssue:
    otp_id: int
    expires_at: datetime
    delivered: bool
    code: Optional[str] = None


def issue_otp(
    session: Session,
    signer_id: int,
    send: Callable[[str, str, int], bool] = send_otp_email,
    return_code: bool = False,
) -> OtpIssue:
    """
    Create a new OTP for the signer and deliver it.

    With ``return_code`` the code is handed back instead of being sent, for
    environments without a mail sender. Earlier OTPs stay valid.
    """
    signer = _load_signer(session, signer_id)
    if signer.signed_at is not None:
        raise AlreadySignedError()
    code = generate_otp_code()
    otp = SigningOtp(
        signer_id=signer.id,
        hashed_code=hash_otp(code),
        expires_at=utcnow() + timedelta(minutes=OTP_TTL_MINUTES),
    )
    session.add(otp)
    session.flush()

    if return_code:
        session.commit()
        session.refresh(otp)
        logger.warning("OTP for signer %s returned to caller instead of delivered", signer.id)
        return OtpIssue(otp_id=otp.id, expires_at=otp.expires_at, delivered=False, code=code)

    if not send(signer.email, code, OTP_TTL_MINUTES):
        session.rollback()
        raise DeliveryError("Could not send the signing code")
    session.commit()
    session.refresh(otp)
    logger.info("Issued OTP %s for signer %s", otp.id, signer.id)
    return OtpIssue(otp_id=otp.id, expires_at=otp.expires_at, delivered=True)


def verify_otp(session: Session, signer_id: int, code: str) -> str:
    """Consume a matching OTP and return a claim for the final submission."""
    now = utcnow()
    candidates = session.exec(
        select(SigningOtp)
        .where(
            SigningOtp.signer_id == signer_id,
            SigningOtp.used_at.is_(None),
            SigningOtp.expires_at > now,
        )
        .order_by(SigningOtp.created_at.desc(), SigningOtp.id.desc())
    ).all()
    digest = hash_otp((code or "").strip())
    match = next((otp for otp in candidates if hmac.compare_digest(otp.hashed_code, digest)), None)
    if match is None:
        raise InvalidOrExpiredOtp()

    # only one verifier can flip used_at
    result = session.exec(
        update(SigningOtp)
        .where(SigningOtp.id == match.id, SigningOtp.used_at.is_(None))
        .values(used_at=now)
    )
    if result.rowcount != 1:
        session.rollback()
        raise InvalidOrExpiredOtp()
    session.commit()
    logger.info("OTP %s verified for signer %s", match.id, signer_id)
    return make_claim({"signer_id": signer_id, "issued_at": now.isoformat()})


def verify_claim(claim: str, signer_id: int) -> dict:
    try:
        payload = read_claim(claim, max_age=CLAIM_TTL_SECONDS)
    except SignatureExpired:
        raise InvalidOrExpiredToken("Verification expired, request a new code")
    except BadSignature:
        raise InvalidOrExpiredToken("Invalid verification")
    if not isinstance(payload, dict) or payload.get("signer_id") != signer_id:
        raise InvalidOrExpiredToken("Invalid verification")
    return payload


# ---------- submit ----------

def submit_signature(
    session: Session,
    signer_id: int,
    claim: str,
    consent: bool,
    signature_image: Optional[str],
    target_field: str,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
):
    if not consent:
        raise ConsentRequired()
    if not signature_image or data_url_to_bytes(signature_image) is None:
        raise SignatureRequired()
    if not (target_field or "").strip():
        raise SignatureRequired("A signature field name is required")
    verify_claim(claim, signer_id)

    signer = _load_signer(session, signer_id)
    contract = lock_contract(session, signer.contract_id)
    # reload under the lock
    session.refresh(signer)
    if signer.signed_at is not None or contract.status == ContractStatus.SIGNED:
        session.rollback()
        raise AlreadySignedError("Already signed")

    now = utcnow()
    variables = contract_variables(contract)
    variables[target_field] = signature_image
    contract.variables_json = canonical_json(variables)
    contract.status = ContractStatus.SIGNED
    contract.updated_at = now
    signer.signed_at = now
    entry = audit.append_entry(
        session,
        contract,
        signer,
        ip=ip,
        user_agent=user_agent,
        device_signature=device_fingerprint(user_agent, ip),
        auth_method="otp",
    )
    session.add(contract)
    session.add(signer)
    session.commit()
    session.refresh(contract)
    session.refresh(entry)
    logger.info("Signer %s signed contract %s", signer.id, contract.id)
    return contract, entry
