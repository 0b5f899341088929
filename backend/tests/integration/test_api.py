"""
Integration Tests — full HTTP stack
═══════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Multipart upload parsing and the size cap
  - Bearer token verification (real HS256 tokens, no dependency override)
  - Service wiring done by create_app()
  - Error envelope {error_code, message, details, request_id}
  - Upload → process → chat → list → delete lifecycle

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, Pydantic schemas, SQLite via aiosqlite,
           LocalArtifactStore, PyMuPDF / Pillow rasterization
  🔲 Fake: OCR engine     (FakeRecognizer)
  🔲 Fake: LLM            (FakeCompletion)

How to run
──────────
  pytest -m integration backend/tests/integration/test_api.py -v
"""

from __future__ import annotations

import uuid

import pytest

from docchat.auth.token import TokenPayload, get_current_user
from tests.factories import png_image, scanned_pdf, text_pdf

API = "/api/v1"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

async def _upload(client, headers, data: bytes = None, filename: str = "scan.png", content_type: str = "image/png"):
    return await client.post(
        f"{API}/documents",
        files={"file": (filename, data or png_image(), content_type)},
        headers=headers,
    )


async def _processed_document_id(client, headers, **upload_kwargs) -> str:
    resp = await _upload(client, headers, **upload_kwargs)
    assert resp.status_code == 201, resp.text
    doc_id = resp.json()["id"]
    resp = await client.post(f"{API}/ocr/process", json={"documentId": doc_id}, headers=headers)
    assert resp.status_code == 200, resp.text
    return doc_id


def _assert_envelope(resp, status_code: int, error_code: str) -> dict:
    assert resp.status_code == status_code, resp.text
    body = resp.json()
    assert body["error_code"] == error_code
    assert body["message"]
    assert "details" in body
    return body


# ─────────────────────────────────────────────────────────────────────────────
# Operations endpoints
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestOperations:

    async def test_health(self, async_client):
        resp = await async_client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "docchat-api"}

    async def test_ready(self, async_client):
        resp = await async_client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["database"]["status"] == "ok"

    async def test_request_id_echoed(self, async_client):
        resp = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"


# ─────────────────────────────────────────────────────────────────────────────
# Authentication
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.auth
class TestAuthentication:

    @pytest.mark.parametrize("method, path", [
        ("GET",    f"{API}/documents"),
        ("GET",    f"{API}/conversations"),
        ("POST",   f"{API}/ocr/process/{uuid.uuid4()}"),
        ("DELETE", f"{API}/documents/{uuid.uuid4()}"),
    ])
    async def test_missing_token_is_401(self, async_client, method, path):
        resp = await async_client.request(method, path)

        _assert_envelope(resp, 401, "UNAUTHORIZED")
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    async def test_expired_token_is_401(self, async_client, make_token):
        resp = await async_client.get(
            f"{API}/documents", headers={"Authorization": f"Bearer {make_token(expired=True)}"}
        )
        body = _assert_envelope(resp, 401, "UNAUTHORIZED")
        assert body["details"][0]["message"] == "Token has expired"

    async def test_dependency_override(self, app, async_client):
        app.dependency_overrides[get_current_user] = lambda: TokenPayload(sub="override-user")
        try:
            resp = await async_client.get(f"{API}/documents")
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 200
        assert resp.json() == []


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestDocumentsApi:

    async def test_upload_png(self, async_client, auth_headers):
        resp = await _upload(async_client, auth_headers, filename="receipt.png")

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "unprocessed"
        assert body["filename"] == "receipt.png"
        assert body["content_type"] == "image/png"
        assert body["page_count"] == 0
        assert "extracted_text" not in body
        assert "storage_key" not in body

    async def test_upload_unsupported_type(self, async_client, auth_headers):
        resp = await _upload(async_client, auth_headers, data=b"plain text", filename="a.txt", content_type="text/plain")
        _assert_envelope(resp, 415, "UNSUPPORTED_MEDIA_TYPE")

    async def test_upload_mismatched_content(self, async_client, auth_headers):
        resp = await _upload(async_client, auth_headers, data=png_image(), filename="a.pdf", content_type="application/pdf")
        _assert_envelope(resp, 415, "UNSUPPORTED_MEDIA_TYPE")

    @pytest.mark.parametrize("settings_overrides", [{"max_upload_bytes": 2048}])
    async def test_upload_too_large(self, async_client, auth_headers):
        resp = await _upload(async_client, auth_headers, data=b"%PDF-1.4\n" + b"0" * 4096,
                             filename="big.pdf", content_type="application/pdf")
        _assert_envelope(resp, 413, "FILE_TOO_LARGE")

    async def test_upload_without_file_is_validation_error(self, async_client, auth_headers):
        resp = await async_client.post(f"{API}/documents", headers=auth_headers, data={"other": "x"})
        body = _assert_envelope(resp, 422, "VALIDATION_ERROR")
        assert body["details"][0]["field"] == "file"

    async def test_list_get_delete(self, async_client, auth_headers, other_headers):
        doc_id = (await _upload(async_client, auth_headers)).json()["id"]

        listed = await async_client.get(f"{API}/documents", headers=auth_headers)
        assert [d["id"] for d in listed.json()] == [doc_id]
        assert (await async_client.get(f"{API}/documents", headers=other_headers)).json() == []

        detail = await async_client.get(f"{API}/documents/{doc_id}", headers=auth_headers)
        assert detail.status_code == 200
        assert detail.json()["extracted_text"] is None

        foreign = await async_client.get(f"{API}/documents/{doc_id}", headers=other_headers)
        _assert_envelope(foreign, 404, "NOT_FOUND")

        assert (await async_client.delete(f"{API}/documents/{doc_id}", headers=other_headers)).status_code == 404
        assert (await async_client.delete(f"{API}/documents/{doc_id}", headers=auth_headers)).status_code == 204
        _assert_envelope(await async_client.get(f"{API}/documents/{doc_id}", headers=auth_headers), 404, "NOT_FOUND")

    async def test_malformed_id_is_validation_error(self, async_client, auth_headers):
        resp = await async_client.get(f"{API}/documents/not-a-uuid", headers=auth_headers)
        _assert_envelope(resp, 422, "VALIDATION_ERROR")


# ─────────────────────────────────────────────────────────────────────────────
# OCR processing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.processing
class TestOcrApi:

    async def test_process_scanned_pdf(self, async_client, auth_headers):
        doc_id = (await _upload(async_client, auth_headers, data=scanned_pdf(2),
                                filename="scan.pdf", content_type="application/pdf")).json()["id"]

        resp = await async_client.post(
            f"{API}/ocr/process", json={"documentId": doc_id, "language": "eng"}, headers=auth_headers
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "processed"
        assert body["page_count"] == 2
        assert body["failed_pages"] == 0
        assert body["extracted_text"] == "--- Page 1 ---\n\npage 1 text\n\n--- Page 2 ---\n\npage 2 text"

    async def test_process_by_path(self, async_client, auth_headers, recognizer):
        doc_id = (await _upload(async_client, auth_headers, data=text_pdf("Lease agreement"),
                                filename="lease.pdf", content_type="application/pdf")).json()["id"]

        resp = await async_client.post(f"{API}/ocr/process/{doc_id}", headers=auth_headers)

        assert resp.status_code == 200
        assert "Lease agreement" in resp.json()["extracted_text"]
        assert recognizer.calls == []

    async def test_process_foreign_document(self, async_client, auth_headers, other_headers):
        doc_id = (await _upload(async_client, auth_headers)).json()["id"]
        resp = await async_client.post(f"{API}/ocr/process/{doc_id}", headers=other_headers)
        _assert_envelope(resp, 404, "NOT_FOUND")

    async def test_invalid_language(self, async_client, auth_headers):
        doc_id = (await _upload(async_client, auth_headers)).json()["id"]
        resp = await async_client.post(
            f"{API}/ocr/process", json={"documentId": doc_id, "language": "eng; rm -rf /"}, headers=auth_headers
        )
        _assert_envelope(resp, 400, "BAD_REQUEST")

    async def test_all_pages_failed_is_500_and_status_failed(self, async_client, auth_headers, recognizer):
        recognizer.fail_on = {0}
        doc_id = (await _upload(async_client, auth_headers)).json()["id"]

        resp = await async_client.post(f"{API}/ocr/process/{doc_id}", headers=auth_headers)

        body = _assert_envelope(resp, 500, "INTERNAL_ERROR")
        assert "all 1 page(s)" in body["message"]
        detail = (await async_client.get(f"{API}/documents/{doc_id}", headers=auth_headers)).json()
        assert detail["status"] == "failed"
        assert detail["error_message"]


# ─────────────────────────────────────────────────────────────────────────────
# Conversations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.conversations
class TestConversationsApi:

    async def test_full_chat_flow(self, async_client, auth_headers, completion):
        doc_id = await _processed_document_id(async_client, auth_headers)

        created = await async_client.post(f"{API}/conversations", json={"documentId": doc_id}, headers=auth_headers)
        assert created.status_code == 201
        conversation_id = created.json()["id"]
        assert created.json()["document_id"] == doc_id

        sent = await async_client.post(
            f"{API}/conversations/message",
            json={"conversationId": conversation_id, "content": "What is on the page?"},
            headers=auth_headers,
        )
        assert sent.status_code == 200
        body = sent.json()
        assert body["error"] is None
        assert body["user_message"]["sequence"] == 1
        assert body["assistant_message"]["sequence"] == 2
        assert body["assistant_message"]["content"] == completion.reply

        detail = await async_client.get(f"{API}/conversations/{conversation_id}", headers=auth_headers)
        assert detail.status_code == 200
        detail = detail.json()
        assert detail["document_text"] == "page 1 text"
        assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]

        listed = (await async_client.get(f"{API}/conversations", headers=auth_headers)).json()
        assert len(listed) == 1
        assert listed[0]["last_message"]["role"] == "assistant"
        assert listed[0]["document_filename"] == "scan.png"

        deleted = await async_client.delete(f"{API}/conversations/{conversation_id}", headers=auth_headers)
        assert deleted.status_code == 204
        _assert_envelope(
            await async_client.get(f"{API}/conversations/{conversation_id}", headers=auth_headers),
            404, "NOT_FOUND",
        )

    async def test_completion_failure_returns_200_with_error(self, async_client, auth_headers, completion):
        doc_id = await _processed_document_id(async_client, auth_headers)
        conversation_id = (await async_client.post(
            f"{API}/conversations", json={"documentId": doc_id}, headers=auth_headers
        )).json()["id"]
        completion.fail = True

        resp = await async_client.post(
            f"{API}/conversations/message",
            json={"conversationId": conversation_id, "content": "anyone?"},
            headers=auth_headers,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["assistant_message"] is None
        assert body["error"].startswith("Failed to generate response")
        assert body["user_message"]["content"] == "anyone?"

    async def test_chat_before_processing_is_400(self, async_client, auth_headers):
        doc_id = (await _upload(async_client, auth_headers)).json()["id"]
        conversation_id = (await async_client.post(
            f"{API}/conversations", json={"documentId": doc_id}, headers=auth_headers
        )).json()["id"]

        resp = await async_client.post(
            f"{API}/conversations/message",
            json={"conversationId": conversation_id, "content": "hello"},
            headers=auth_headers,
        )
        _assert_envelope(resp, 400, "BAD_REQUEST")

    async def test_foreign_conversation_is_404(self, async_client, auth_headers, other_headers):
        doc_id = await _processed_document_id(async_client, auth_headers)
        conversation_id = (await async_client.post(
            f"{API}/conversations", json={"documentId": doc_id}, headers=auth_headers
        )).json()["id"]

        for resp in (
            await async_client.get(f"{API}/conversations/{conversation_id}", headers=other_headers),
            await async_client.post(
                f"{API}/conversations/message",
                json={"conversationId": conversation_id, "content": "hi"},
                headers=other_headers,
            ),
            await async_client.delete(f"{API}/conversations/{conversation_id}", headers=other_headers),
        ):
            _assert_envelope(resp, 404, "NOT_FOUND")

    async def test_create_for_foreign_document_is_404(self, async_client, auth_headers, other_headers):
        doc_id = (await _upload(async_client, auth_headers)).json()["id"]
        resp = await async_client.post(f"{API}/conversations", json={"documentId": doc_id}, headers=other_headers)
        _assert_envelope(resp, 404, "NOT_FOUND")

    async def test_missing_fields_are_validation_errors(self, async_client, auth_headers):
        resp = await async_client.post(f"{API}/conversations/message", json={"content": "hi"}, headers=auth_headers)
        body = _assert_envelope(resp, 422, "VALIDATION_ERROR")
        assert body["details"][0]["field"] == "conversationId"

    async def test_deleting_document_removes_its_conversations(self, async_client, auth_headers):
        doc_id = await _processed_document_id(async_client, auth_headers)
        await async_client.post(f"{API}/conversations", json={"documentId": doc_id}, headers=auth_headers)

        assert (await async_client.delete(f"{API}/documents/{doc_id}", headers=auth_headers)).status_code == 204
        assert (await async_client.get(f"{API}/conversations", headers=auth_headers)).json() == []
