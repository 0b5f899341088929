"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped, each test gets a fresh tmp_path):
  settings          isolated Settings (SQLite file, local artifacts, 72 dpi)
  sessions          async_sessionmaker over a freshly created schema
  artifacts         LocalArtifactStore under tmp_path
  recognizer        FakeRecognizer (page index → "page N text")
  completion        FakeCompletion (fixed reply, can be told to fail)
  document_service / processor / conversation_service
  app / async_client  full FastAPI app through httpx ASGITransport
  make_token / auth_headers   HS256 bearer tokens signed with the test secret

Environment strategy:
  - No external services: SQLite via aiosqlite, artifacts on disk,
    Tesseract and Ollama replaced by fakes injected through create_app().
  - Override `settings_overrides` with a direct parametrize to tweak a
    single setting for one test:

        @pytest.mark.parametrize("settings_overrides", [{"max_upload_bytes": 1024}])

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # HTTP-level tests
  pytest backend/tests/unit/test_assembler.py
"""

from __future__ import annotations

import os
import time
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so the module-level app is harmless
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",   "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("JWT_SECRET",     "test-secret")
os.environ.setdefault("APP_ENV",        "test")
os.environ.setdefault("OLLAMA_API_URL", "http://ollama.invalid:11434")

from docchat.auth.token import create_access_token  # noqa: E402
from docchat.db.session import build_engine, build_session_factory, init_models  # noqa: E402
from docchat.processing.orchestrator import DocumentProcessor  # noqa: E402
from docchat.processing.rasterizer import PageRasterizer  # noqa: E402
from docchat.processing.recognition import RecognitionPool  # noqa: E402
from docchat.services.conversations import ConversationService  # noqa: E402
from docchat.services.documents import DocumentService  # noqa: E402
from docchat.storage.artifacts import LocalArtifactStore  # noqa: E402
from tests.factories import OTHER_USER, USER_ID, FakeCompletion, FakeRecognizer, make_settings  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Settings and persistence
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings_overrides() -> dict:
    return {}


@pytest.fixture
def settings(tmp_path, settings_overrides):
    return make_settings(tmp_path, **settings_overrides)


@pytest_asyncio.fixture
async def sessions(settings) -> AsyncGenerator:
    engine = build_engine(settings)
    await init_models(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def artifacts(settings):
    return LocalArtifactStore(settings.storage_root)


# ─────────────────────────────────────────────────────────────────────────────
# External collaborators (fakes)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


# ─────────────────────────────────────────────────────────────────────────────
# Services wired the way create_app() wires them
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def document_service(sessions, artifacts, settings) -> DocumentService:
    return DocumentService(sessions, artifacts, settings)


@pytest.fixture
def processor(sessions, artifacts, settings, recognizer) -> DocumentProcessor:
    return DocumentProcessor(
        sessions=sessions,
        artifacts=artifacts,
        rasterizer=PageRasterizer(dpi=settings.ocr_render_dpi, min_text_chars=settings.pdf_text_min_chars),
        pool=RecognitionPool(
            recognizer,
            concurrency=settings.ocr_concurrency,
            page_timeout=settings.ocr_page_timeout_seconds,
        ),
        settings=settings,
    )


@pytest.fixture
def conversation_service(sessions, completion) -> ConversationService:
    return ConversationService(sessions, completion)


# ─────────────────────────────────────────────────────────────────────────────
# HTTP app
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def app(settings, artifacts, recognizer, completion):
    from docchat.main import create_app

    application = create_app(settings, artifacts=artifacts, recognizer=recognizer, completion=completion)
    # ASGITransport does not run the lifespan; create the schema here
    await init_models(application.state.engine)
    yield application
    await application.state.engine.dispose()


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ─────────────────────────────────────────────────────────────────────────────
# Bearer tokens
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_token(settings):
    """
    Factory fixture: returns a function that builds signed test JWTs.

    Usage:
        token = make_token()
        token = make_token(sub=OTHER_USER)
        token = make_token(expired=True)
    """
    def _build(sub: str = USER_ID, expired: bool = False) -> str:
        now = int(time.time())
        return create_access_token(
            sub,
            settings,
            email=f"{sub}@example.com",
            iat=now,
            exp=now - 60 if expired else now + 3600,
        )

    return _build


@pytest.fixture
def auth_headers(make_token) -> dict:
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def other_headers(make_token) -> dict:
    return {"Authorization": f"Bearer {make_token(sub=OTHER_USER)}"}
