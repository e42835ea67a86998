"""
Contract lifecycle: templates in, rendered drafts out.

A contract's ``variables_json``, ``document_url`` and ``document_hash`` only
ever change together, in one commit, after the new document has been
rendered and stored. Rendering and storage happen before the contract row is
locked, so a failed render leaves the stored triple untouched.
"""

import json
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlmodel import Session, delete, select

from . import storage
from .config import DRAFT_EDIT_TOKEN_TTL_DAYS, SIGNER_TOKEN_TTL_HOURS
from .errors import (
    ConflictError,
    ContractSignedError,
    InvalidOrExpiredToken,
    TemplateNotFound,
    TemplateRenderError,
)
from .models import AuditLogEntry, Contract, ContractStatus, Signer, SigningOtp, Template
from .placeholders import find_template_problems
from .renderer import render_document
from .schemas import SignerInput
from .utils import canonical_json, sha256_bytes, utcnow
from .variables import (
    VariableDefinition,
    definitions_from_json,
    definitions_to_json,
    parse_variable_definitions,
    signature_field_names,
    strip_signatures,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_SIGNER = SignerInput(full_name="Signer", email="signer@example.com")
REGENERATE_ATTEMPTS = 3


# ---------- templates ----------

def load_template(session: Session, template_id: int) -> Template:
    template = session.get(Template, template_id)
    if not template:
        logger.error("Template not found: %s", template_id)
        raise TemplateNotFound(template_id)
    return template


def template_definitions(template: Template) -> List[VariableDefinition]:
    return definitions_from_json(template.variable_definitions_json)


def _check_template_file(content: bytes):
    problems = find_template_problems(content)
    if problems:
        raise TemplateRenderError.from_details(problems)


def create_template(
    session: Session,
    name: str,
    file_content: bytes,
    variable_definitions=None,
    preview_content: Optional[bytes] = None,
) -> Template:
    defs = parse_variable_definitions(variable_definitions)
    _check_template_file(file_content)
    template = Template(
        name=name.strip(),
        version=1,
        file_content=file_content,
        preview_content=preview_content or None,
        variable_definitions_json=definitions_to_json(defs),
    )
    session.add(template)
    session.commit()
    session.refresh(template)
    logger.info("Created template %s (%s)", template.id, template.name)
    return template


def update_template(
    session: Session,
    template_id: int,
    name: Optional[str] = None,
    file_content: Optional[bytes] = None,
    variable_definitions=None,
    preview_content: Optional[bytes] = None,
    clear_preview: bool = False,
) -> Template:
    """Update a template in place; any content change bumps the version by one."""
    template = load_template(session, template_id)
    changed = False
    if name and name.strip():
        template.name = name.strip()
    if variable_definitions is not None:
        defs_json = definitions_to_json(parse_variable_definitions(variable_definitions))
        if defs_json != template.variable_definitions_json:
            template.variable_definitions_json = defs_json
            changed = True
    if file_content:
        _check_template_file(file_content)
        if file_content != template.file_content:
            template.file_content = file_content
            changed = True
    if clear_preview:
        if template.preview_content is not None:
            template.preview_content = None
            changed = True
    elif preview_content:
        template.preview_content = preview_content
        changed = True
    if changed:
        template.version += 1
    template.updated_at = utcnow()
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def list_templates(session: Session) -> List[Template]:
    return session.exec(select(Template).order_by(Template.created_at.desc(), Template.id.desc())).all()


def delete_template(session: Session, template_id: int) -> int:
    """Delete a template with every contract made from it. Returns the number of contracts removed."""
    template = load_template(session, template_id)
    contract_ids = session.exec(select(Contract.id).where(Contract.template_id == template_id)).all()
    if contract_ids:
        signer_ids = select(Signer.id).where(Signer.contract_id.in_(contract_ids))
        session.exec(delete(SigningOtp).where(SigningOtp.signer_id.in_(signer_ids)))
        session.exec(delete(AuditLogEntry).where(AuditLogEntry.contract_id.in_(contract_ids)))
        session.exec(delete(Signer).where(Signer.contract_id.in_(contract_ids)))
        session.exec(delete(Contract).where(Contract.id.in_(contract_ids)))
    session.delete(template)
    session.commit()
    logger.info("Deleted template %s and %s contract(s)", template_id, len(contract_ids))
    return len(contract_ids)


# ---------- rendering ----------

def contract_variables(contract: Contract) -> Dict[str, str]:
    return json.loads(contract.variables_json or "{}")


def _document_key(template_id: int) -> str:
    return f"contracts/{template_id}/{uuid.uuid4().hex}.docx"


def render_and_store(template: Template, variables: Mapping[str, object], store=storage) -> Tuple[str, str]:
    """Render ``variables`` into the template, store the result, return (locator, hash)."""
    signature_fields = signature_field_names(template_definitions(template))
    try:
        document = render_document(template.file_content, variables, signature_fields)
    except TemplateRenderError as exc:
        logger.error("Template %s render failed: %s", template.id, exc.message)
        raise
    locator = store.save(_document_key(template.id), document)
    return locator, sha256_bytes(document)


def render_preview(session: Session, template_id: int, variables: Mapping[str, object]) -> bytes:
    """Render without storing, using the preview file when the template has one."""
    template = load_template(session, template_id)
    signature_fields = signature_field_names(template_definitions(template))
    source = template.preview_content or template.file_content
    return render_document(source, strip_signatures(variables, signature_fields), signature_fields)


# ---------- contracts ----------

def load_contract(session: Session, contract_id: int) -> Contract:
    contract = session.get(Contract, contract_id)
    if not contract:
        raise TemplateNotFound(contract_id, kind="Contract")
    return contract


def lock_contract(session: Session, contract_id: int) -> Contract:
    """Re-read the contract row under a row lock, discarding cached state."""
    stmt = (
        select(Contract)
        .where(Contract.id == contract_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    contract = session.exec(stmt).first()
    if not contract:
        raise TemplateNotFound(contract_id, kind="Contract")
    return contract


def list_signers(session: Session, contract_id: int) -> List[Signer]:
    return session.exec(
        select(Signer)
        .where(Signer.contract_id == contract_id)
        .order_by(Signer.signing_order, Signer.id)
    ).all()


def list_contracts(session: Session, template_id: Optional[int] = None) -> List[Contract]:
    stmt = select(Contract)
    if template_id is not None:
        stmt = stmt.where(Contract.template_id == template_id)
    return session.exec(stmt.order_by(Contract.created_at.desc(), Contract.id.desc())).all()


def _new_signer(contract_id: int, data: SignerInput, index: int) -> Signer:
    return Signer(
        contract_id=contract_id,
        signing_order=data.signing_order if data.signing_order is not None else index,
        full_name=data.full_name,
        email=data.email,
        phone=data.phone,
        role=data.role or "signer",
        token=secrets.token_urlsafe(32),
        token_expires_at=utcnow() + timedelta(hours=SIGNER_TOKEN_TTL_HOURS),
    )


def create_contract(
    session: Session,
    template_id: int,
    variables: Mapping[str, object],
    signers: Sequence[SignerInput],
    store=storage,
    draft_edit_token: Optional[str] = None,
) -> Contract:
    template = load_template(session, template_id)
    signature_fields = signature_field_names(template_definitions(template))
    # signatures never exist at creation time
    data = strip_signatures(variables, signature_fields)
    locator, digest = render_and_store(template, data, store)

    contract = Contract(
        template_id=template.id,
        template_version=template.version,
        variables_json=canonical_json(data),
        status=ContractStatus.DRAFT,
        document_url=locator,
        document_hash=digest,
    )
    if draft_edit_token:
        contract.draft_edit_token = draft_edit_token
        contract.draft_edit_token_expires_at = utcnow() + timedelta(days=DRAFT_EDIT_TOKEN_TTL_DAYS)
    session.add(contract)
    session.flush()
    for idx, signer in enumerate(signers or [PLACEHOLDER_SIGNER]):
        session.add(_new_signer(contract.id, signer, idx))
    session.commit()
    session.refresh(contract)
    logger.info("Created contract %s from template %s v%s", contract.id, template.id, template.version)
    return contract


def create_shareable_draft(session: Session, template_id: int, store=storage) -> Contract:
    """Empty draft with one placeholder signer, editable through its edit token."""
    return create_contract(
        session,
        template_id,
        {},
        [PLACEHOLDER_SIGNER],
        store=store,
        draft_edit_token=secrets.token_urlsafe(32),
    )


def get_contract_by_edit_token(session: Session, token: str) -> Contract:
    contract = session.exec(select(Contract).where(Contract.draft_edit_token == token)).first()
    if not contract:
        raise InvalidOrExpiredToken()
    expires_at = contract.draft_edit_token_expires_at
    if expires_at is not None and expires_at < utcnow():
        raise InvalidOrExpiredToken()
    return contract


def get_draft_by_edit_token(session: Session, token: str) -> Contract:
    """Edit-token lookup for the fill flow; finalized contracts are closed to it."""
    contract = get_contract_by_edit_token(session, token)
    if contract.status != ContractStatus.DRAFT:
        raise ContractSignedError("Contract has already been finalized")
    return contract


def render_draft(session: Session, contract: Contract) -> bytes:
    """Current draft rendered on the fly, declared fields defaulting to empty."""
    template = load_template(session, contract.template_id)
    defs = template_definitions(template)
    signature_fields = signature_field_names(defs)
    data = {d.name: "" for d in defs}
    data.update(contract_variables(contract))
    return render_document(template.file_content, strip_signatures(data, signature_fields), signature_fields)


def render_blank_preview(session: Session, template_id: int) -> bytes:
    """The preview file as uploaded, or the template rendered with every field empty."""
    template = load_template(session, template_id)
    if template.preview_content:
        return template.preview_content
    signature_fields = signature_field_names(template_definitions(template))
    return render_document(template.file_content, {}, signature_fields)


def _patch_signers(session: Session, contract_id: int, signers: Iterable[SignerInput]):
    # positional patch: count, order and tokens stay as they are
    existing = list_signers(session, contract_id)
    for current, update in zip(existing, signers):
        current.full_name = update.full_name
        current.email = update.email
        if update.phone is not None:
            current.phone = update.phone
        if update.role:
            current.role = update.role
        session.add(current)


def update_draft(
    session: Session,
    contract_id: int,
    variables: Mapping[str, object],
    signers: Optional[Sequence[SignerInput]] = None,
    store=storage,
) -> Contract:
    contract = load_contract(session, contract_id)
    if contract.status != ContractStatus.DRAFT:
        raise ContractSignedError()
    template = load_template(session, contract.template_id)
    signature_fields = signature_field_names(template_definitions(template))
    data = strip_signatures(variables, signature_fields)
    locator, digest = render_and_store(template, data, store)

    contract = lock_contract(session, contract_id)
    if contract.status != ContractStatus.DRAFT:
        session.rollback()
        raise ContractSignedError()
    contract.variables_json = canonical_json(data)
    contract.document_url = locator
    contract.document_hash = digest
    contract.updated_at = utcnow()
    session.add(contract)
    if signers:
        _patch_signers(session, contract_id, signers)
    session.commit()
    session.refresh(contract)
    logger.info("Updated draft contract %s", contract_id)
    return contract


def regenerate_document(session: Session, contract_id: int, store=storage) -> Contract:
    """
    Re-render a contract from its stored variables, signatures included.

    Used right after a signature is committed. Status is left alone. If the
    variables change while rendering, the render is redone so the stored
    hash always matches the stored variables.
    """
    for _ in range(REGENERATE_ATTEMPTS):
        contract = load_contract(session, contract_id)
        snapshot = contract.variables_json
        template = load_template(session, contract.template_id)
        locator, digest = render_and_store(template, contract_variables(contract), store)

        contract = lock_contract(session, contract_id)
        if contract.variables_json != snapshot:
            session.rollback()
            continue
        contract.document_url = locator
        contract.document_hash = digest
        contract.updated_at = utcnow()
        session.add(contract)
        session.commit()
        session.refresh(contract)
        logger.info("Regenerated document for contract %s (%s)", contract_id, contract.status)
        return contract
    raise ConflictError(f"Contract {contract_id} changed while its document was being regenerated")
