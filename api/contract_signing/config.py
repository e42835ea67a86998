
import os

APP_ENV = os.getenv("APP_ENV", "production")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./contracts.db")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "contracts")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN", "admin-test-token")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "contracts")
RENDER_ASYNC = os.getenv("RENDER_ASYNC", "0").lower() in ("1", "true", "yes")

SIGNER_TOKEN_TTL_HOURS = int(os.getenv("SIGNER_TOKEN_TTL_HOURS", "72"))
DRAFT_EDIT_TOKEN_TTL_DAYS = int(os.getenv("DRAFT_EDIT_TOKEN_TTL_DAYS", "365"))
OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "10"))
CLAIM_TTL_SECONDS = int(os.getenv("CLAIM_TTL_SECONDS", "900"))


def is_development() -> bool:
    return APP_ENV == "development"
