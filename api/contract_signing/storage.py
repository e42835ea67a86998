import io
import logging
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET
from .errors import StorageError

logger = logging.getLogger(__name__)

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=False
)

def ensure_bucket():
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)

def put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
    ensure_bucket()
    _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)

def get_bytes(key: str) -> bytes:
    resp = _client.get_object(MINIO_BUCKET, key)
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()

def save(key: str, data: bytes, content_type: str = DOCX_CONTENT_TYPE) -> str:
    """Store ``data`` under ``key`` and return its locator."""
    try:
        put_bytes(key, data, content_type=content_type)
    except (S3Error, HTTPError, OSError) as exc:
        logger.error("Storage write failed for %s: %s", key, exc)
        raise StorageError(f"Could not store document: {exc}")
    return key

def read(locator: str) -> bytes:
    try:
        return get_bytes(locator)
    except (S3Error, HTTPError, OSError) as exc:
        logger.error("Storage read failed for %s: %s", locator, exc)
        raise StorageError(f"Could not read document: {exc}")
