import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request, Response
from sqlmodel import Session

from .. import email, lifecycle, signing_protocol, storage
from ..config import RENDER_ASYNC, is_development
from ..db import get_session
from ..errors import ContractError
from ..models import ContractStatus
from ..renderer import DOCX_MEDIA_TYPE
from ..schemas import OtpVerify, SignSubmit
from ..variables import signature_field_names
from ..worker import finalize_document
from .contracts import signer_out

logger = logging.getLogger(__name__)

router = APIRouter()


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


# ---------- routes ----------

@router.get("/{token}")
def load_signing_session(token: str, session: Session = Depends(get_session)):
    signer = signing_protocol.get_signer_for_document(session, token)
    contract = lifecycle.load_contract(session, signer.contract_id)
    template = lifecycle.load_template(session, contract.template_id)
    return {
        "contract": {
            "id": contract.id,
            "status": contract.status,
            "template_name": template.name,
            "template_version": contract.template_version,
            "document_hash": contract.document_hash,
        },
        "signer": signer_out(signer, include_token=False),
        "signature_fields": signature_field_names(lifecycle.template_definitions(template)),
        "already_signed": signer.signed_at is not None or contract.status == ContractStatus.SIGNED,
    }


@router.get("/{token}/document")
def get_document(token: str, session: Session = Depends(get_session)):
    signer = signing_protocol.get_signer_for_document(session, token)
    contract = lifecycle.load_contract(session, signer.contract_id)
    data = storage.read(contract.document_url)
    return Response(
        content=data,
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="contract-{contract.id}.docx"'},
    )


@router.post("/{token}/send-otp")
def send_otp(token: str, session: Session = Depends(get_session)):
    signer = signing_protocol.get_signer_by_token(session, token)
    dev_mode = is_development() and not email.smtp_configured()
    issued = signing_protocol.issue_otp(
        session,
        signer.id,
        send=email.send_otp_email,
        return_code=dev_mode,
    )
    response = {"ok": True, "expires_at": issued.expires_at, "delivered": issued.delivered}
    if issued.code:
        response["dev_code"] = issued.code
    return response


@router.post("/{token}/verify-otp")
def verify_otp(token: str, payload: OtpVerify, session: Session = Depends(get_session)):
    signer = signing_protocol.get_signer_by_token(session, token)
    claim = signing_protocol.verify_otp(session, signer.id, payload.code)
    return {"ok": True, "claim": claim}


@router.post("/{token}/submit")
def submit(token: str, payload: SignSubmit, request: Request, session: Session = Depends(get_session)):
    # tolerant lookup so a repeat submit reports "already signed"
    signer = signing_protocol.get_signer_for_document(session, token)
    contract, entry = signing_protocol.submit_signature(
        session,
        signer.id,
        payload.claim,
        payload.consent,
        payload.signature_data_url,
        payload.signature_variable_name,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    response = {"ok": True, "status": contract.status, "audit_id": entry.id, "document_regenerated": False}
    try:
        regenerated = finalize_document(session, contract.id, run_async=RENDER_ASYNC)
    except ContractError as exc:
        # the signature is committed; the document can be regenerated later
        logger.error("Document regeneration failed for contract %s: %s", contract.id, exc.message)
        response["regeneration_error"] = exc.message
        return response
    if regenerated is not None:
        response["document_regenerated"] = True
        response["document_hash"] = regenerated.document_hash
    return response
