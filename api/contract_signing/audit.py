import logging
from io import BytesIO
from typing import Iterable, List, Optional

from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlmodel import Session, select

from .models import AuditLogEntry, Contract, Signer

logger = logging.getLogger(__name__)

_TABLET_MARKERS = ("ipad", "tablet", "kindle", "silk", "playbook")
_MOBILE_MARKERS = ("mobi", "iphone", "ipod", "android", "blackberry", "opera mini", "windows phone")


def device_class(user_agent: Optional[str]) -> str:
    """Coarse device class from a user agent: mobile, tablet, desktop or unknown."""
    ua = (user_agent or "").lower()
    if not ua.strip():
        return "unknown"
    if any(m in ua for m in _TABLET_MARKERS):
        return "tablet"
    # android without "mobile" is a tablet
    if "android" in ua and "mobile" not in ua:
        return "tablet"
    if any(m in ua for m in _MOBILE_MARKERS):
        return "mobile"
    return "desktop"


def append_entry(
    session: Session,
    contract: Contract,
    signer: Signer,
    ip: Optional[str],
    user_agent: Optional[str],
    device_signature: Optional[str],
    auth_method: str = "otp",
) -> AuditLogEntry:
    # joins the caller's transaction; the caller commits
    entry = AuditLogEntry(
        contract_id=contract.id,
        signer_id=signer.id,
        ip=ip,
        user_agent=user_agent,
        device=device_class(user_agent),
        device_signature=device_signature,
        auth_method=auth_method,
        document_hash=contract.document_hash,
        contract_version=contract.template_version,
    )
    session.add(entry)
    return entry


def list_entries(session: Session, contract_id: int) -> List[AuditLogEntry]:
    return session.exec(
        select(AuditLogEntry)
        .where(AuditLogEntry.contract_id == contract_id)
        .order_by(AuditLogEntry.created_at, AuditLogEntry.id)
    ).all()


def render_audit_report(contract: Contract, signers: Iterable[Signer], entries: Iterable[AuditLogEntry]) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(72, 750, "Signature Audit Report")
    c.setFont("Helvetica", 10)
    y = 720

    def line(text: str, font: str = "Helvetica"):
        nonlocal y
        c.setFont(font, 10)
        c.drawString(72, y, text[:95])
        y -= 14
        if y < 72:
            c.showPage(); y = 750

    line(f"Contract: {contract.id}")
    line(f"Template: {contract.template_id} (version {contract.template_version})")
    line(f"Status: {contract.status}")
    line(f"Current document SHA256: {contract.document_hash or '-'}")
    y -= 6
    line("Signers", font="Helvetica-Bold")
    by_id = {}
    for s in signers:
        by_id[s.id] = s
        signed = s.signed_at.isoformat() + "Z" if s.signed_at else "not signed"
        line(f"{s.signing_order + 1}. {s.full_name} <{s.email}> [{s.role}] {signed}")
    y -= 6
    line("Events", font="Helvetica-Bold")
    count = 0
    for entry in entries:
        count += 1
        who = by_id.get(entry.signer_id)
        name = who.full_name if who else f"signer {entry.signer_id}"
        line(f"{entry.created_at.isoformat()}Z  {name} signed via {entry.auth_method}")
        line(f"    ip={entry.ip or '-'} device={entry.device or '-'} fingerprint={entry.device_signature or '-'}")
        line(f"    document SHA256 at signing: {entry.document_hash or '-'} (version {entry.contract_version})")
    if not count:
        line("No signing events recorded.")
    c.showPage(); c.save()
    logger.info("Rendered audit report for contract %s (%s events)", contract.id, count)
    return buf.getvalue()
