import json
import os
import re

from sqlmodel import Session, select

from contract_signing.models import AuditLogEntry, Contract
from contract_signing.routers import signing as signing_router
from contract_signing.utils import sha256_bytes
from docx_builder import SIGNATURE_DATA_URL, build_docx, paragraph, part_names, read_part

ADMIN_HEADERS = {"X-Access-Token": os.getenv("ADMIN_ACCESS_TOKEN", "admin-test-token")}
DEFINITIONS = [{"name": "name", "type": "text"}, {"name": "sig", "type": "signature"}]


def upload_template(client, content=None, definitions=DEFINITIONS, name="Lease"):
    response = client.post(
        "/api/templates",
        data={"name": name, "variable_definitions": json.dumps(definitions)},
        files={"file": ("lease.docx", content or build_docx(body=["Dear {name}", "{sig}"]), "application/octet-stream")},
        headers=ADMIN_HEADERS,
    )
    return response


def create_contract(client, template_id, variables=None, **extra):
    payload = {
        "template_id": template_id,
        "variables": variables if variables is not None else {"name": "Ana"},
        "signers": [{"full_name": "Ana Pop", "email": "ana@example.com"}],
        **extra,
    }
    response = client.post("/api/contracts", json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 200, response.text
    return response.json()


def otp_from(sent_emails):
    return re.search(r"\b(\d{6})\b", sent_emails[-1]["text"]).group(1)


def test_admin_token_required(client):
    assert client.get("/api/templates/1").status_code == 401
    assert client.get("/api/templates/1", headers={"X-Access-Token": "wrong"}).status_code == 403


def test_unknown_template_maps_to_404(client):
    response = client.post(
        "/api/contracts",
        json={"template_id": 999, "variables": {}, "signers": []},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "TEMPLATE_NOT_FOUND"


def test_broken_template_upload_explains_problem(client):
    response = upload_template(client, content=build_docx(body=["Dear {name"]))
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "TEMPLATE_RENDER_ERROR"
    assert body["message"].startswith("Unclosed tag '{name'")


def test_template_with_split_tag_is_accepted_and_rendered(client):
    content = build_docx(body=[paragraph("Dear {na", "me}"), "{sig}"])
    template = upload_template(client, content=content).json()
    contract = create_contract(client, template["id"])
    document = client.get(f"/api/contracts/{contract['id']}/document", headers=ADMIN_HEADERS)
    assert "Dear Ana" in read_part(document.content, "word/document.xml")


def test_template_versioning_and_placeholders(client):
    template = upload_template(client).json()
    assert template["version"] == 1
    assert [d["name"] for d in template["variable_definitions"]] == ["name", "sig"]

    updated = client.put(
        f"/api/templates/{template['id']}",
        files={"file": ("v2.docx", build_docx(body=["{#plan# A} {@fee}", "{name}"]), "application/octet-stream")},
        headers=ADMIN_HEADERS,
    )
    assert updated.status_code == 200
    assert updated.json()["version"] == 2

    placeholders = client.get(f"/api/templates/{template['id']}/placeholders", headers=ADMIN_HEADERS).json()
    assert placeholders == {"variables": ["plan", "fee", "name"], "dropdowns": {"plan": ["A"]}, "mirrors": {"fee": "plan"}}


def test_template_preview_renders_without_storing(client, mock_storage):
    template = upload_template(client).json()
    response = client.post(f"/api/templates/{template['id']}/preview", json={"name": "Preview"}, headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert "Dear Preview" in read_part(response.content, "word/document.xml")
    assert mock_storage == {}


def test_end_to_end_signing(client, test_engine, mock_storage, sent_emails):
    template = upload_template(client).json()
    contract = create_contract(client, template["id"])
    assert contract["status"] == "DRAFT"
    assert contract["document_hash"]
    token = contract["signers"][0]["token"]

    session_info = client.get(f"/api/sign/{token}").json()
    assert session_info["signature_fields"] == ["sig"]
    assert session_info["already_signed"] is False

    sent = client.post(f"/api/sign/{token}/send-otp")
    assert sent.status_code == 200
    assert sent.json()["delivered"] is True
    assert sent_emails[-1]["to"] == "ana@example.com"

    verified = client.post(f"/api/sign/{token}/verify-otp", json={"code": otp_from(sent_emails)})
    assert verified.status_code == 200
    claim = verified.json()["claim"]

    submit_payload = {
        "claim": claim,
        "consent": True,
        "signature_data_url": SIGNATURE_DATA_URL,
        "signature_variable_name": "sig",
    }
    submitted = client.post(
        f"/api/sign/{token}/submit",
        json=submit_payload,
        headers={"user-agent": "Mozilla/5.0 (Windows NT 10.0)", "x-forwarded-for": "203.0.113.7, 10.0.0.1"},
    )
    assert submitted.status_code == 200, submitted.text
    body = submitted.json()
    assert body["status"] == "SIGNED"
    assert body["document_regenerated"] is True

    with Session(test_engine) as session:
        stored = session.get(Contract, contract["id"])
        assert stored.status == "SIGNED"
        assert stored.document_hash == sha256_bytes(mock_storage[stored.document_url])
        entries = session.exec(select(AuditLogEntry)).all()
        assert len(entries) == 1
        assert entries[0].auth_method == "otp"
        assert entries[0].ip == "203.0.113.7"
        assert entries[0].device == "desktop"
        assert entries[0].document_hash == contract["document_hash"]

    again = client.post(f"/api/sign/{token}/submit", json=submit_payload)
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_SIGNED"
    assert "already signed" in again.json()["message"].lower()

    # the finished document stays readable through the used token
    document = client.get(f"/api/sign/{token}/document")
    assert document.status_code == 200
    assert any(name.startswith("word/media/signature_") for name in part_names(document.content))
    assert client.post(f"/api/sign/{token}/send-otp").status_code == 404

    patched = client.patch(f"/api/contracts/{contract['id']}", json={"variables": {"name": "Eve"}}, headers=ADMIN_HEADERS)
    assert patched.status_code == 409
    assert patched.json()["code"] == "CONTRACT_SIGNED"

    audit = client.get(f"/api/contracts/{contract['id']}/audit", headers=ADMIN_HEADERS).json()
    assert len(audit) == 1
    report = client.get(f"/api/contracts/{contract['id']}/audit.pdf", headers=ADMIN_HEADERS)
    assert report.content.startswith(b"%PDF")


def test_wrong_otp_and_missing_consent(client, sent_emails):
    template = upload_template(client).json()
    token = create_contract(client, template["id"])["signers"][0]["token"]
    client.post(f"/api/sign/{token}/send-otp")
    code = otp_from(sent_emails)
    wrong = "000000" if code != "000000" else "111111"

    bad = client.post(f"/api/sign/{token}/verify-otp", json={"code": wrong})
    assert bad.status_code == 400
    assert bad.json()["code"] == "INVALID_OTP"

    claim = client.post(f"/api/sign/{token}/verify-otp", json={"code": code}).json()["claim"]
    reused = client.post(f"/api/sign/{token}/verify-otp", json={"code": code})
    assert reused.json()["code"] == "INVALID_OTP"

    no_consent = client.post(
        f"/api/sign/{token}/submit",
        json={"claim": claim, "consent": False, "signature_data_url": SIGNATURE_DATA_URL, "signature_variable_name": "sig"},
    )
    assert no_consent.status_code == 400
    assert no_consent.json()["code"] == "CONSENT_REQUIRED"


def test_development_mode_returns_code(client, monkeypatch, sent_emails):
    monkeypatch.setattr(signing_router, "is_development", lambda: True)
    template = upload_template(client).json()
    token = create_contract(client, template["id"])["signers"][0]["token"]
    response = client.post(f"/api/sign/{token}/send-otp").json()
    assert response["delivered"] is False
    assert sent_emails == []
    verified = client.post(f"/api/sign/{token}/verify-otp", json={"code": response["dev_code"]})
    assert verified.status_code == 200


def test_unknown_signing_token(client):
    response = client.get("/api/sign/does-not-exist")
    assert response.status_code == 404
    assert response.json()["code"] == "INVALID_TOKEN"


def test_shareable_fill_link(client, mock_storage):
    template = upload_template(client).json()
    draft = create_contract(client, template["id"], variables={}, shareable_link=True)
    edit_token = draft["draft_edit_token"]
    assert draft["fill_url"].endswith(edit_token)
    assert len(draft["signers"]) == 1

    loaded = client.get(f"/api/fill/{edit_token}").json()
    assert loaded["template"]["variables"] == ["name", "sig"]
    assert "draft_edit_token" not in loaded

    saved = client.patch(
        f"/api/fill/{edit_token}",
        json={"variables": {"name": "Dana"}, "signer_full_name": "Dana Ilie", "signer_email": "dana@example.com"},
    )
    assert saved.status_code == 200
    body = saved.json()
    assert body["variables"] == {"name": "Dana"}
    assert body["signers"][0]["full_name"] == "Dana Ilie"
    assert body["document_hash"] != draft["document_hash"]

    downloaded = client.get(f"/api/contracts/{draft['id']}/document", headers=ADMIN_HEADERS)
    assert "Dear Dana" in read_part(downloaded.content, "word/document.xml")


def test_draft_update_through_api(client, mock_storage):
    template = upload_template(client).json()
    contract = create_contract(client, template["id"])
    first = client.patch(f"/api/contracts/{contract['id']}", json={"variables": {"name": "Maria"}}, headers=ADMIN_HEADERS).json()
    second = client.patch(f"/api/contracts/{contract['id']}", json={"variables": {"name": "Maria"}}, headers=ADMIN_HEADERS).json()
    assert first["document_url"] != second["document_url"]
    assert first["document_hash"] == second["document_hash"]


def test_template_listing_and_deletion(client, sent_emails):
    first = upload_template(client, name="Lease").json()
    second = upload_template(client, name="Rental").json()
    listed = client.get("/api/templates", headers=ADMIN_HEADERS).json()
    assert [t["id"] for t in listed] == [second["id"], first["id"]]

    contract = create_contract(client, first["id"])
    token = contract["signers"][0]["token"]
    client.post(f"/api/sign/{token}/send-otp")

    of_template = client.get(f"/api/templates/{first['id']}/contracts", headers=ADMIN_HEADERS).json()
    assert of_template["template"] == {"id": first["id"], "name": "Lease"}
    assert [c["id"] for c in of_template["contracts"]] == [contract["id"]]
    assert of_template["contracts"][0]["signers_count"] == 1

    everything = client.get("/api/contracts", headers=ADMIN_HEADERS).json()
    assert [c["id"] for c in everything] == [contract["id"]]
    assert client.get(f"/api/contracts?template_id={second['id']}", headers=ADMIN_HEADERS).json() == []

    deleted = client.delete(f"/api/templates/{first['id']}", headers=ADMIN_HEADERS)
    assert deleted.json() == {"success": True, "deleted_contracts": 1}
    assert client.get(f"/api/templates/{first['id']}", headers=ADMIN_HEADERS).status_code == 404
    assert client.get(f"/api/contracts/{contract['id']}", headers=ADMIN_HEADERS).status_code == 404
    assert client.get(f"/api/sign/{token}").status_code == 404
    assert client.delete(f"/api/templates/{first['id']}", headers=ADMIN_HEADERS).status_code == 404


def test_extract_variables_does_not_store_template(client):
    response = client.post(
        "/api/templates/extract-variables",
        files={"file": ("draft.docx", build_docx(body=["{#plan# A} {@fee}", paragraph("{na", "me}")]), "application/octet-stream")},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    assert response.json() == {"variables": ["plan", "fee", "name"], "dropdowns": {"plan": ["A"]}, "mirrors": {"fee": "plan"}}
    assert client.get("/api/templates", headers=ADMIN_HEADERS).json() == []

    broken = client.post(
        "/api/templates/extract-variables",
        files={"file": ("draft.docx", b"not a docx", "application/octet-stream")},
        headers=ADMIN_HEADERS,
    )
    assert broken.status_code == 400


def test_fill_documents_and_finalized_link(client, test_engine):
    template = upload_template(client).json()
    draft = create_contract(client, template["id"], variables={}, shareable_link=True)
    edit_token = draft["draft_edit_token"]
    client.patch(f"/api/fill/{edit_token}", json={"variables": {"name": "Dana"}})

    document = client.get(f"/api/fill/{edit_token}/document")
    assert document.status_code == 200
    assert "inline" in document.headers["content-disposition"]
    assert "Dear Dana" in read_part(document.content, "word/document.xml")

    preview = client.get(f"/api/fill/{edit_token}/preview-document")
    assert preview.status_code == 200
    assert "Dear Dana" not in read_part(preview.content, "word/document.xml")
    assert "{name}" not in read_part(preview.content, "word/document.xml")

    with Session(test_engine) as session:
        contract = session.get(Contract, draft["id"])
        contract.status = "SIGNED"
        session.add(contract)
        session.commit()

    for path in ("", "/document", "/preview-document"):
        closed = client.get(f"/api/fill/{edit_token}{path}")
        assert closed.status_code == 409
        assert closed.json()["code"] == "CONTRACT_SIGNED"
