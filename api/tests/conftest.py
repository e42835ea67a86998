import os
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from contract_signing.main import app  # noqa: E402
from contract_signing import db as db_module  # noqa: E402
from contract_signing.db import get_session  # noqa: E402
from contract_signing import storage as storage_module  # noqa: E402
from contract_signing import email as email_module  # noqa: E402


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise FileNotFoundError(key)
        return store[key]

    monkeypatch.setattr(storage_module, "put_bytes", fake_put_bytes)
    monkeypatch.setattr(storage_module, "get_bytes", fake_get_bytes)
    return store


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, body, html_body=None, sender_name=None):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": body,
                "html": html_body,
            }
        )

    monkeypatch.setattr(email_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def client(test_engine, setup_db, mock_storage):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
