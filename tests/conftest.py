"""Shared fixtures for the PDF tool suite tests"""

import re
from datetime import datetime, timezone

import fitz
import pytest
from fastapi.testclient import TestClient

from pdf_toolsuite.server import Settings, create_server
from pdf_toolsuite.stores import Session, Stores


def build_pdf(pages: int = 3, width: float = 612, height: float = 792, text: str = "Sample page") -> bytes:
    """Create an in-memory PDF with one line of text per page"""
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=width, height=height)
        page.insert_text((72, 72), f"{text} {i + 1}", fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


def set_page_key(data: bytes, page_index: int, key: str, value: str) -> bytes:
    """Rewrite a raw page dictionary entry, bypassing PyMuPDF's normalization"""
    doc = fitz.open(stream=data, filetype="pdf")
    doc.xref_set_key(doc[page_index].xref, key, value)
    out = doc.tobytes()
    doc.close()
    return out


def break_startxref(data: bytes) -> bytes:
    return re.sub(rb"startxref\s+\d+", b"startxref\n999999", data)


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def stores():
    return Stores()


@pytest.fixture
def session():
    return Session(user_id="user_test")


@pytest.fixture
def sample_pdf():
    return build_pdf(3)


@pytest.fixture
def settings(tmp_path):
    return Settings(output_dir=tmp_path / "outputs", admin_token="admin-secret")


@pytest.fixture
def server(settings):
    return create_server(settings)


@pytest.fixture
def client(server):
    with TestClient(server.app) as test_client:
        yield test_client
