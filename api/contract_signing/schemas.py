
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

class SignerInput(BaseModel):
    full_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: Optional[str] = None
    role: str = "signer"
    signing_order: Optional[int] = None

class ContractCreate(BaseModel):
    template_id: int
    variables: Dict[str, Any] = {}
    signers: List[SignerInput] = []
    shareable_link: bool = False

class DraftUpdate(BaseModel):
    variables: Dict[str, Any]
    signers: Optional[List[SignerInput]] = None

class FillUpdate(BaseModel):
    variables: Dict[str, Any]
    signer_full_name: Optional[str] = None
    signer_email: Optional[str] = None
    signer_role: Optional[str] = None

class OtpVerify(BaseModel):
    code: str = Field(min_length=6, max_length=6)

class SignSubmit(BaseModel):
    claim: str = Field(min_length=1)
    consent: bool
    signature_data_url: str
    signature_variable_name: str = Field(min_length=1)
