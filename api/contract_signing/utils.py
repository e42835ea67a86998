import base64, binascii, hashlib, json, re
from datetime import datetime
from itsdangerous import URLSafeTimedSerializer
from .config import SECRET_KEY

DATA_URL_RE = re.compile(r"^data:image/(png|jpeg|jpg|gif);base64,", re.IGNORECASE)

def data_url_to_bytes(data_url) -> bytes | None:
    # expects "data:image/png;base64,....."; anything else is not an image value
    if not isinstance(data_url, str) or not DATA_URL_RE.match(data_url):
        return None
    payload = DATA_URL_RE.sub("", data_url, count=1).strip()
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))

def utcnow() -> datetime:
    return datetime.utcnow()

def _claim_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(SECRET_KEY, salt="otp-claim")

def make_claim(payload: dict) -> str:
    return _claim_serializer().dumps(payload)

def read_claim(claim: str, max_age: int) -> dict:
    return _claim_serializer().loads(claim, max_age=max_age)
