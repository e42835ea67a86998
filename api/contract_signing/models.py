
from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field as ORMField

class ContractStatus:
    DRAFT = "DRAFT"
    SENT = "SENT"
    SIGNED = "SIGNED"

class Template(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    version: int = 1
    file_content: bytes
    preview_content: Optional[bytes] = None
    variable_definitions_json: str = "[]"
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)

class Contract(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    template_id: int = ORMField(index=True)
    template_version: int
    variables_json: str = "{}"
    status: str = ContractStatus.DRAFT
    document_url: Optional[str] = None
    document_hash: Optional[str] = None
    draft_edit_token: Optional[str] = ORMField(default=None, index=True, unique=True)
    draft_edit_token_expires_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)

class Signer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    contract_id: int = ORMField(index=True)
    signing_order: int = 0
    full_name: str
    email: str
    phone: Optional[str] = None
    role: str = "signer"
    token: str = ORMField(index=True, unique=True)
    token_expires_at: datetime
    signed_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

class SigningOtp(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    signer_id: int = ORMField(index=True)
    hashed_code: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

class AuditLogEntry(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    contract_id: int = ORMField(index=True)
    signer_id: int
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    device: Optional[str] = None
    device_signature: Optional[str] = None
    auth_method: str = "otp"
    # frozen at signing time, independent of later contract state
    document_hash: Optional[str] = None
    contract_version: Optional[int] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
