import json
from typing import Optional
from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import audit, lifecycle, storage
from ..auth import require_admin_access
from ..config import APP_BASE_URL
from ..db import get_session
from ..models import Contract, Signer
from ..renderer import DOCX_MEDIA_TYPE
from ..schemas import ContractCreate, DraftUpdate

router = APIRouter(dependencies=[Depends(require_admin_access)])


def signer_out(signer: Signer, include_token: bool = True) -> dict:
    data = {
        "id": signer.id,
        "signing_order": signer.signing_order,
        "full_name": signer.full_name,
        "email": signer.email,
        "phone": signer.phone,
        "role": signer.role,
        "token_expires_at": signer.token_expires_at,
        "signed_at": signer.signed_at,
    }
    if include_token:
        data["token"] = signer.token
        data["sign_url"] = f"{APP_BASE_URL}/sign/{signer.token}"
    return data


def contract_out(contract: Contract, signers, include_tokens: bool = True) -> dict:
    data = {
        "id": contract.id,
        "template_id": contract.template_id,
        "template_version": contract.template_version,
        "status": contract.status,
        "variables": json.loads(contract.variables_json or "{}"),
        "document_url": contract.document_url,
        "document_hash": contract.document_hash,
        "created_at": contract.created_at,
        "updated_at": contract.updated_at,
        "signers": [signer_out(s, include_tokens) for s in signers],
    }
    if include_tokens and contract.draft_edit_token:
        data["draft_edit_token"] = contract.draft_edit_token
        data["fill_url"] = f"{APP_BASE_URL}/fill/{contract.draft_edit_token}"
    return data


def contract_summary(session: Session, contract: Contract) -> dict:
    return {
        "id": contract.id,
        "template_id": contract.template_id,
        "template_version": contract.template_version,
        "status": contract.status,
        "document_url": contract.document_url,
        "created_at": contract.created_at,
        "signers_count": len(lifecycle.list_signers(session, contract.id)),
    }


def entry_out(entry) -> dict:
    return {
        "id": entry.id,
        "signer_id": entry.signer_id,
        "ip": entry.ip,
        "user_agent": entry.user_agent,
        "device": entry.device,
        "device_signature": entry.device_signature,
        "auth_method": entry.auth_method,
        "document_hash": entry.document_hash,
        "contract_version": entry.contract_version,
        "created_at": entry.created_at,
    }


@router.get("")
def list_contracts(template_id: Optional[int] = None, session: Session = Depends(get_session)):
    return [contract_summary(session, c) for c in lifecycle.list_contracts(session, template_id)]


@router.post("")
def create_contract(payload: ContractCreate, session: Session = Depends(get_session)):
    if payload.shareable_link:
        contract = lifecycle.create_shareable_draft(session, payload.template_id)
    else:
        contract = lifecycle.create_contract(session, payload.template_id, payload.variables, payload.signers)
    return contract_out(contract, lifecycle.list_signers(session, contract.id))


@router.get("/{contract_id}")
def get_contract(contract_id: int, session: Session = Depends(get_session)):
    contract = lifecycle.load_contract(session, contract_id)
    return contract_out(contract, lifecycle.list_signers(session, contract.id))


@router.patch("/{contract_id}")
def update_contract(contract_id: int, payload: DraftUpdate, session: Session = Depends(get_session)):
    contract = lifecycle.update_draft(session, contract_id, payload.variables, payload.signers)
    return contract_out(contract, lifecycle.list_signers(session, contract.id))


@router.post("/{contract_id}/regenerate")
def regenerate_contract(contract_id: int, session: Session = Depends(get_session)):
    contract = lifecycle.regenerate_document(session, contract_id)
    return {"ok": True, "document_url": contract.document_url, "document_hash": contract.document_hash}


@router.get("/{contract_id}/document")
def download_document(contract_id: int, session: Session = Depends(get_session)):
    contract = lifecycle.load_contract(session, contract_id)
    data = storage.read(contract.document_url)
    return Response(
        content=data,
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="contract-{contract.id}.docx"'},
    )


@router.get("/{contract_id}/audit")
def get_audit(contract_id: int, session: Session = Depends(get_session)):
    lifecycle.load_contract(session, contract_id)
    return [entry_out(e) for e in audit.list_entries(session, contract_id)]


@router.get("/{contract_id}/audit.pdf")
def get_audit_report(contract_id: int, session: Session = Depends(get_session)):
    contract = lifecycle.load_contract(session, contract_id)
    pdf = audit.render_audit_report(
        contract,
        lifecycle.list_signers(session, contract_id),
        audit.list_entries(session, contract_id),
    )
    return Response(content=pdf, media_type="application/pdf")
