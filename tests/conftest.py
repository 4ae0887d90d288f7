"""
Pytest configuration and fixtures for Greenlight Backend tests.
"""

import os
import shutil
import sqlite3
import tempfile
import threading
import time

import fitz
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_MODULE_DB_DIR = tempfile.mkdtemp(prefix="greenlight_test_db_")
os.environ["DATABASE_PATH"] = os.path.join(_MODULE_DB_DIR, "module.db")
os.environ["RECONCILE_INTERVAL_SECONDS"] = "0"
os.environ.pop("OPENAI_API_KEY", None)

from greenlight_backend.configuration import load_settings
from greenlight_backend.database import SubmissionDatabase
from greenlight_backend.main import AppContext, create_app
from greenlight_backend.models import AnalysisResult, BookDetails, BookMetadata, ComparableTitle
from greenlight_backend.submission_manager import SubmissionManager


class FakeAnalyzer:
    """Stands in for the completion service; records every call."""

    def __init__(self, result=None, error=None):
        self.result = result or AnalysisResult(
            genre="Literary Fiction",
            tropes=["found family"],
            themes=["grief", "memory"],
            comparable_titles=[ComparableTitle(title="Station Eleven", author="Emily St. John Mandel", year=2014)],
            recent_titles=[ComparableTitle(title="Tomorrow, and Tomorrow, and Tomorrow", author="Gabrielle Zevin", year=2022)],
        )
        self.error = error
        self.gate = None
        self.calls = []
        self.metadata_calls = []
        self.details_calls = []
        self.connection_error = None

    def analyze(self, text, synopsis):
        self.calls.append((text, synopsis))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.result

    def get_cached_book_metadata(self, title):
        self.metadata_calls.append(title)
        if self.error is not None:
            raise self.error
        return BookMetadata(title=title, author="Jane Doe", nyt_bestseller=False, copies_sold="50000")

    def get_book_details(self, text):
        self.details_calls.append(text)
        if self.error is not None:
            raise self.error
        return BookDetails(
            title="The Quiet Harbor",
            genre="Literary Fiction",
            target_audience="Adult readers of character-driven fiction",
            comparable_titles=["Station Eleven by Emily St. John Mandel"],
            market_potential="Strong book-club appeal",
            unique_selling_points=["Lyrical coastal setting"],
        )

    def check_connection(self):
        if self.connection_error is not None:
            raise self.connection_error


def build_pdf(*pages):
    """Build an in-memory PDF with one page per text argument."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def count_submissions(store):
    with sqlite3.connect(str(store.db_path)) as conn:
        return conn.execute("SELECT COUNT(*) FROM submissions").fetchone()[0]


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    raise AssertionError("condition not met before timeout")


@pytest.fixture(scope="session", autouse=True)
def module_db_dir():
    yield _MODULE_DB_DIR
    shutil.rmtree(_MODULE_DB_DIR, ignore_errors=True)


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        overrides={
            "database": {"path": str(tmp_path / "greenlight.db")},
            "lifecycle": {"reconcile_interval_seconds": 0, "stale_after_seconds": 60},
        },
        environ={},
    )


@pytest.fixture
def store(settings):
    return SubmissionDatabase(settings.database.path)


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def manager(store, analyzer, settings):
    manager = SubmissionManager(store, analyzer, settings)
    yield manager
    manager.shutdown(wait=True)


@pytest.fixture
def app(settings, store, analyzer, manager):
    context = AppContext(settings=settings, store=store, analyzer=analyzer, manager=manager)
    return create_app(context=context)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sample_pdf():
    return build_pdf("Hello world", "It was a dark and stormy night.")


@pytest.fixture
def submission_fields():
    return {
        "synopsis": "A short story.",
        "text": "Hello world\n\nIt was a dark and stormy night.",
        "file_name": "story.pdf",
        "file_size": 2048,
    }


@pytest.fixture
def gate():
    return threading.Event()
