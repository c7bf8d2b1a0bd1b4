import os
import sys
import pytest

# Ensure project root on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from badge_cache import BADGE_CACHE  # noqa: E402
from servicem8_sync import ApiError, ClientError, CreateOutcome, CreateStatus, Settings  # noqa: E402

TEST_API_KEY = "test_api_key_12345"


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    # Keep tests offline and deterministic
    monkeypatch.setenv("SERVICEM8_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("SERVICEM8_BASE_URL", "https://api.test.local/api_1.0")
    monkeypatch.setenv("SERVICEM8_DEFAULT_JOB_STATUS", "Quote")
    monkeypatch.setenv("SERVICEM8_UPLOAD_DIR", str(tmp_path))
    monkeypatch.setenv("SERVICEM8_ENV_FILE", str(tmp_path / "missing.env"))
    for name in (
        "SERVICEM8_CACHE_BADGES",
        "SERVICEM8_BADGE_CACHE_TTL",
        "SERVICEM8_SEARCH_PAGE_SIZE",
        "SERVICEM8_SEARCH_MAX_PAGES",
        "SERVICEM8_MAX_FILE_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)
    BADGE_CACHE.clear()
    yield
    BADGE_CACHE.clear()


@pytest.fixture
def settings():
    return Settings()


class FakeServiceM8Client:
    """In-memory stand-in for ServiceM8Client that records every call."""

    def __init__(self, credential=TEST_API_KEY, companies=None, badges=None):
        self.credential = credential
        self.companies = list(companies or [])
        self.badges = list(badges or [])
        self.calls = []
        self.company_outcomes = []
        self.job_error = None
        self.contact_error = None
        self.badge_error = None
        self.attachment_ids = []
        self.upload_errors = {}
        self.uploaded = []

    def search_company_by_email(self, email):
        self.calls.append(("search_email", email))
        return next((c for c in self.companies if c.get("email", "").lower() == email.lower()), None)

    def search_company_by_name(self, name):
        self.calls.append(("search_name", name))
        return next((c for c in self.companies if c.get("name", "").lower() == name.lower()), None)

    def create_company(self, record):
        self.calls.append(("create_company", dict(record)))
        if self.company_outcomes:
            return self.company_outcomes.pop(0)
        return CreateOutcome(CreateStatus.CREATED, record_id="company-1")

    def create_job(self, record):
        self.calls.append(("create_job", dict(record)))
        if self.job_error:
            raise self.job_error
        return "job-1"

    def create_job_contact(self, record):
        self.calls.append(("create_contact", dict(record)))
        if self.contact_error:
            raise self.contact_error
        return "contact-1"

    def list_badges(self):
        self.calls.append(("list_badges",))
        if self.badge_error:
            raise self.badge_error
        return list(self.badges)

    def create_attachment(self, record):
        self.calls.append(("create_attachment", dict(record)))
        if self.attachment_ids:
            return self.attachment_ids.pop(0)
        return f"att-{len(self.uploaded) + 1}"

    def upload_attachment_file(self, attachment_id, filename, content, mime_type):
        self.calls.append(("upload_file", attachment_id, filename))
        if filename in self.upload_errors:
            raise self.upload_errors[filename]
        self.uploaded.append((attachment_id, filename, content, mime_type))

    def call_names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_client():
    return FakeServiceM8Client()


def conflict_outcome():
    error = ClientError(
        "HTTP 400",
        status_code=400,
        body='{"errorCode": 400, "message": "Name must be unique."}',
    )
    return CreateOutcome(CreateStatus.CONFLICT, error=error)


def failed_outcome(status_code=500):
    return CreateOutcome(CreateStatus.FAILED, error=ApiError("boom", status_code=status_code))
