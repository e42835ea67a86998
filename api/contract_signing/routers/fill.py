from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import lifecycle
from ..db import get_session
from ..placeholders import resolve_placeholders
from ..renderer import DOCX_MEDIA_TYPE
from ..schemas import FillUpdate, SignerInput
from .contracts import contract_out

router = APIRouter()


def _fill_out(session: Session, contract) -> dict:
    template = lifecycle.load_template(session, contract.template_id)
    meta = resolve_placeholders(template.file_content)
    data = contract_out(contract, lifecycle.list_signers(session, contract.id), include_tokens=False)
    data["template"] = {
        "id": template.id,
        "name": template.name,
        "version": template.version,
        "variable_definitions": [
            d.model_dump(mode="json", exclude_none=True) for d in lifecycle.template_definitions(template)
        ],
        "variables": meta.variable_names,
        "dropdowns": meta.dropdown_options,
    }
    return data


def _inline_docx(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@router.get("/{token}")
def load_fill_session(token: str, session: Session = Depends(get_session)):
    contract = lifecycle.get_draft_by_edit_token(session, token)
    return _fill_out(session, contract)


@router.patch("/{token}")
def save_fill(token: str, payload: FillUpdate, session: Session = Depends(get_session)):
    contract = lifecycle.get_draft_by_edit_token(session, token)
    signers = None
    if payload.signer_full_name or payload.signer_email or payload.signer_role:
        current = lifecycle.list_signers(session, contract.id)[0]
        signers = [SignerInput(
            full_name=payload.signer_full_name or current.full_name,
            email=payload.signer_email or current.email,
            role=payload.signer_role or current.role,
        )]
    contract = lifecycle.update_draft(session, contract.id, payload.variables, signers)
    return _fill_out(session, contract)


@router.get("/{token}/document")
def fill_document(token: str, session: Session = Depends(get_session)):
    contract = lifecycle.get_draft_by_edit_token(session, token)
    return _inline_docx(lifecycle.render_draft(session, contract), "contract.docx")


@router.get("/{token}/preview-document")
def fill_preview_document(token: str, session: Session = Depends(get_session)):
    contract = lifecycle.get_draft_by_edit_token(session, token)
    return _inline_docx(lifecycle.render_blank_preview(session, contract.template_id), "preview.docx")
