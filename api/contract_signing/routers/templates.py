from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, File, Form, Response, UploadFile
from sqlmodel import Session

from .. import lifecycle
from ..auth import require_admin_access
from ..db import get_session
from ..lifecycle import create_template, load_template, render_preview, template_definitions, update_template
from ..models import Template
from ..placeholders import resolve_placeholders
from ..renderer import DOCX_MEDIA_TYPE
from .contracts import contract_summary

router = APIRouter(dependencies=[Depends(require_admin_access)])


def _template_out(template: Template) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "version": template.version,
        "has_preview": template.preview_content is not None,
        "variable_definitions": [d.model_dump(mode="json", exclude_none=True) for d in template_definitions(template)],
        "created_at": template.created_at,
        "updated_at": template.updated_at,
    }


async def _read_upload(upload: Optional[UploadFile]) -> Optional[bytes]:
    if upload is None:
        return None
    data = await upload.read()
    return data or None


@router.get("")
def list_templates(session: Session = Depends(get_session)):
    return [
        {"id": t.id, "name": t.name, "version": t.version, "created_at": t.created_at}
        for t in lifecycle.list_templates(session)
    ]


@router.post("")
async def upload_template(
    name: str = Form(...),
    file: UploadFile = File(...),
    variable_definitions: Optional[str] = Form(default=None),
    preview: Optional[UploadFile] = File(default=None),
    session: Session = Depends(get_session),
):
    content = await file.read()
    template = create_template(
        session,
        name,
        content,
        variable_definitions=variable_definitions,
        preview_content=await _read_upload(preview),
    )
    return _template_out(template)


@router.post("/extract-variables")
async def extract_variables(file: UploadFile = File(...)):
    """Placeholders of an uploaded DOCX, without storing it."""
    meta = resolve_placeholders(await file.read())
    return {
        "variables": meta.variable_names,
        "dropdowns": meta.dropdown_options,
        "mirrors": meta.mirror_sources,
    }


@router.get("/{template_id}")
def get_template(template_id: int, session: Session = Depends(get_session)):
    return _template_out(load_template(session, template_id))


@router.put("/{template_id}")
async def replace_template(
    template_id: int,
    name: Optional[str] = Form(default=None),
    file: Optional[UploadFile] = File(default=None),
    variable_definitions: Optional[str] = Form(default=None),
    preview: Optional[UploadFile] = File(default=None),
    clear_preview: bool = Form(default=False),
    session: Session = Depends(get_session),
):
    template = update_template(
        session,
        template_id,
        name=name,
        file_content=await _read_upload(file),
        variable_definitions=variable_definitions,
        preview_content=await _read_upload(preview),
        clear_preview=clear_preview,
    )
    return _template_out(template)


@router.get("/{template_id}/placeholders")
def get_placeholders(template_id: int, session: Session = Depends(get_session)):
    template = load_template(session, template_id)
    meta = resolve_placeholders(template.file_content)
    return {
        "variables": meta.variable_names,
        "dropdowns": meta.dropdown_options,
        "mirrors": meta.mirror_sources,
    }


@router.post("/{template_id}/preview")
def preview_template(template_id: int, variables: Dict[str, Any], session: Session = Depends(get_session)):
    document = render_preview(session, template_id, variables)
    return Response(
        content=document,
        media_type=DOCX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="template-{template_id}-preview.docx"'},
    )


@router.delete("/{template_id}")
def delete_template(template_id: int, session: Session = Depends(get_session)):
    removed = lifecycle.delete_template(session, template_id)
    return {"success": True, "deleted_contracts": removed}


@router.get("/{template_id}/contracts")
def list_template_contracts(template_id: int, session: Session = Depends(get_session)):
    template = load_template(session, template_id)
    return {
        "template": {"id": template.id, "name": template.name},
        "contracts": [contract_summary(session, c) for c in lifecycle.list_contracts(session, template_id)],
    }
