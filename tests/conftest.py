from __future__ import annotations

import io
from typing import Any, Callable

import fitz  # PyMuPDF
import pytest
from docx import Document
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy.orm import Session, sessionmaker

from apps.api.db.session import create_db_engine, create_session_factory
from apps.api.deps.deps import build_services
from apps.api.main import create_app
from apps.api.services.records import FileRecordRepository
from packages.common.config import AppSettings
from packages.storage.local import LocalStorageAdapter


BASE_URL = "http://testserver"

_STORAGE_ENV = (
    "STORAGE_BACKEND",
    "S3_BUCKET",
    "S3_ACCESS_KEY",
    "S3_SECRET_KEY",
    "S3_ENDPOINT_URL",
    "DATABASE_URL",
    "LOCAL_STORAGE_ROOT",
    "MAX_FILE_SIZE_MB",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _STORAGE_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_settings(tmp_path) -> Callable[..., AppSettings]:
    def _make(**overrides: Any) -> AppSettings:
        values: dict[str, Any] = {
            "STORAGE_BACKEND": "local",
            "LOCAL_STORAGE_ROOT": str(tmp_path / "uploads"),
            "DATABASE_URL": "sqlite://",
            "PUBLIC_BASE_URL": BASE_URL,
        }
        values.update(overrides)
        return AppSettings(_env_file=None, **values)  # type: ignore[call-arg]

    return _make


@pytest.fixture
def settings(make_settings) -> AppSettings:
    return make_settings()


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    engine = create_db_engine("sqlite://")
    return create_session_factory(engine, create_schema=True)


@pytest.fixture
def repository(session_factory) -> FileRecordRepository:
    return FileRecordRepository(session_factory)


@pytest.fixture
def local_storage(tmp_path) -> LocalStorageAdapter:
    return LocalStorageAdapter(tmp_path / "store", BASE_URL)


@pytest.fixture
def build_client(session_factory) -> Callable[[AppSettings], TestClient]:
    def _build(app_settings: AppSettings) -> TestClient:
        services = build_services(app_settings, session_factory=session_factory)
        return TestClient(create_app(app_settings, services=services))

    return _build


@pytest.fixture
def client(build_client, settings) -> TestClient:
    return build_client(settings)


@pytest.fixture
def pdf_bytes() -> bytes:
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Grade 5 math lesson plan")
    page.insert_text((72, 96), "Homework: fractions worksheet")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def docx_bytes() -> bytes:
    doc = Document()
    doc.add_paragraph("Science quiz for 7th grade")
    doc.add_paragraph("")
    doc.add_paragraph("Question 1: What is photosynthesis?")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Rubric"
    table.rows[0].cells[1].text = "10 points"
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (640, 480), color=(30, 90, 200)).save(buf, format="PNG")
    return buf.getvalue()
