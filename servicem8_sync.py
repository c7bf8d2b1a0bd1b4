#!/usr/bin/env python3
"""
ServiceM8 Submission Sync - form submission to ServiceM8 job pipeline

Features:
- Two-tier credentials (global settings or a per-form override)
- Static and free-text field mappings with phone number normalization
- Lead source badges resolved through a shared, credential-keyed TTL cache
- Company find-or-create with duplicate checks and name-collision recovery
- Best-effort job contact and attachment uploads once the job exists

Steps:
1. Resolve the API key and default job status for the form.
2. Build the ServiceM8 payload from the submission. A payload with neither a
   first name nor a company name is rejected before any network call.
3. Resolve the lead source badge (never fails the submission).
4. Find or create the company record.
5. Create the job. This is attempted exactly once.
6. Create the job contact and upload attachments. Failures here are logged as
   warnings; the submission still counts as delivered.

Settings come from environment variables (see `Settings`). Run with
`python servicem8_sync.py --submission submission.json --config form.json`.
"""

from __future__ import annotations

import argparse
import http.client
import json
import logging
import mimetypes
import os
import random
import re
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from badge_cache import BADGE_CACHE, BadgeCache, credential_fingerprint
from log_capture import SubmissionLogCapture

DEFAULT_BASE_URL = "https://api.servicem8.com/api_1.0"
DEFAULT_JOB_STATUS = "Quote"
JOB_STATUSES = ("Quote", "Work Order", "Scheduled", "In Progress", "Completed")

MAX_FILE_SIZE = 10 * 1024 * 1024
RECORD_ID_HEADER = "x-record-uuid"
DUPLICATE_NAME_MARKER = "Name must be unique"

# Form-side mapping keys → ServiceM8 payload fields
STATIC_FIELD_TARGETS: Dict[str, str] = {
    "contact_first_name": "contact_first",
    "contact_last_name": "contact_last",
    "company_name": "company_name",
    "contact_email": "contact_email",
    "contact_mobile": "contact_mobile",
    "contact_phone": "contact_phone",
    "job_address": "job_address",
    "description": "job_description",
}

PHONE_FIELDS = frozenset({"contact_mobile", "contact_phone"})

# Payload fields that belong to the company/contact records or are set
# explicitly on the job; anything else from custom mappings goes on the job.
RESERVED_PAYLOAD_FIELDS = frozenset({
    "status",
    "badges",
    "company_uuid",
    "contact_first",
    "contact_last",
    "company_name",
    "contact_email",
    "contact_mobile",
    "contact_phone",
    "billing_address",
    "job_address",
    "job_description",
    "description",
})

DEFAULT_BADGE_MAPPINGS = "facebook|Facebook Lead\ngoogle|Google Ads\nwebsite|Website Enquiry"
DEFAULT_SUCCESS_MESSAGE = "Thank you! Your request has been submitted successfully."
DEFAULT_ERROR_MESSAGE = (
    "We apologize, but there was an error submitting your request. "
    "Please try again or contact us directly."
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ServiceM8Error(Exception):
    """Base class for everything that can stop or degrade a submission."""

    kind = "error"


class ConfigurationError(ServiceM8Error, ValueError):
    """Missing or invalid credentials/configuration. Nothing is attempted."""

    kind = "configuration"


class ValidationError(ServiceM8Error):
    kind = "validation"


class MissingRequiredFieldError(ValidationError):
    kind = "missing_required_field"

    def __init__(self, fields_checked: Sequence[str]):
        self.fields = tuple(fields_checked)
        super().__init__(f"Missing required field: one of {', '.join(self.fields)} is required")


class ApiError(ServiceM8Error):
    """Non-success response from the ServiceM8 API."""

    kind = "api_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "", url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.url = url

    @property
    def api_message(self) -> str:
        """The `message` field of a JSON error body, else the raw body."""
        if not self.body:
            return ""
        try:
            data = json.loads(self.body)
        except ValueError:
            return self.body
        if isinstance(data, dict):
            return str(data.get("message") or "")
        return self.body


class ClientError(ApiError):
    kind = "client_error"


class RateLimitedError(ClientError):
    kind = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ApiError):
    kind = "server_error"


class NetworkError(ServiceM8Error):
    kind = "network_error"


class RequestTimeoutError(NetworkError):
    kind = "timeout"


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

def _decode_body(raw: bytes, content_type: Optional[str]) -> Any:
    if not raw:
        return {}
    text = raw.decode("utf-8", errors="ignore")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "application/json" in (content_type or "").lower():
            logging.debug("Failed to decode JSON despite header; returning text")
    return text


def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Any] = None,
    data: Optional[bytes] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0,
    max_retries: int = 1,
    retry_backoff: float = 2.0,
    include_headers: bool = False,
) -> Any:
    """
    Perform an HTTP request with JSON support and optional retry handling.

    Args:
        method: HTTP method (GET/POST/etc.)
        url: Base URL (without query params)
        headers: Optional request headers
        json_body: Optional payload; serialized to JSON if provided
        data: Optional raw body, used when json_body is not given
        params: Optional dict appended as query string
        timeout: Request timeout in seconds
        max_retries: Total attempts before failing. The submission pipeline
            always uses 1; retries on 429/5xx/network errors only happen when
            a caller asks for them.
        retry_backoff: Base backoff (seconds) for retryable errors
        include_headers: Also return the response headers (lower-cased keys)

    Returns:
        Parsed JSON response (dict/list) when possible, else decoded text.
        With include_headers, a (body, headers) tuple.

    Raises:
        urllib.error.HTTPError / urllib.error.URLError / TimeoutError, or a
        dropped connection (ConnectionError, http.client.HTTPException), once
        attempts are exhausted.
    """
    headers = dict(headers or {})

    if json_body is not None:
        headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body).encode("utf-8")

    if params:
        encoded = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{url}?{encoded}"

    attempt = 0
    while True:
        attempt += 1
        req = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                body = _decode_body(resp.read(), resp.headers.get("Content-Type", ""))
                if include_headers:
                    return body, {str(k).lower(): v for k, v in resp.headers.items()}
                return body

        except urllib.error.HTTPError as exc:
            if exc.code == 429 and attempt < max_retries:
                base_wait = _retry_after_delay(exc) or (retry_backoff * attempt)
                wait_for = base_wait * (0.5 + random.random())
                logging.warning("HTTP 429 from %s; retrying in %.1fs (attempt %d/%d)", url, wait_for, attempt, max_retries)
                time.sleep(wait_for)
                continue
            if exc.code >= 500 and attempt < max_retries:
                wait_for = retry_backoff * attempt * (0.5 + random.random())
                logging.warning(
                    "Server error %s from %s; retrying in %.1fs (attempt %d/%d)",
                    exc.code,
                    url,
                    wait_for,
                    attempt,
                    max_retries,
                )
                time.sleep(wait_for)
                continue
            raise

        except (urllib.error.URLError, TimeoutError, ConnectionError, http.client.HTTPException) as exc:
            if attempt < max_retries:
                wait_for = retry_backoff * attempt * (0.5 + random.random())
                logging.warning("Network error %s; retrying in %.1fs (attempt %d/%d)", exc, wait_for, attempt, max_retries)
                time.sleep(wait_for)
                continue
            raise


def _retry_after_delay(error: urllib.error.HTTPError) -> Optional[float]:
    """Helper to parse Retry-After header."""
    retry_after = error.headers.get("Retry-After") if getattr(error, "headers", None) else None
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        try:
            parsed = datetime.strptime(retry_after, "%a, %d %b %Y %H:%M:%S %Z")
            delta = parsed.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
            return max(delta.total_seconds(), 0.0)
        except ValueError:
            return None


def _encode_multipart(field_name: str, filename: str, content: bytes, content_type: str) -> Tuple[bytes, str]:
    """Encode a single file as a multipart/form-data body."""
    boundary = uuid.uuid4().hex
    safe_name = filename.replace('"', "%22").replace("\r", "").replace("\n", "")
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field_name}"; filename="{safe_name}"\r\n'
        f"Content-Type: {content_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + content + tail, f"multipart/form-data; boundary={boundary}"


def _api_error_from_http(exc: urllib.error.HTTPError, url: str) -> ApiError:
    try:
        body = exc.read().decode("utf-8", errors="ignore")
    except (OSError, AttributeError, ValueError):
        body = ""
    message = f"HTTP {exc.code} from {url}"
    if exc.code == 429:
        return RateLimitedError(message, retry_after=_retry_after_delay(exc), status_code=exc.code, body=body, url=url)
    if 400 <= exc.code < 500:
        return ClientError(message, status_code=exc.code, body=body, url=url)
    return ServerError(message, status_code=exc.code, body=body, url=url)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    """Environment-driven global settings with validation."""

    base_url: str = field(default_factory=lambda: os.getenv("SERVICEM8_BASE_URL", DEFAULT_BASE_URL))
    api_key: str = field(default_factory=lambda: os.getenv("SERVICEM8_API_KEY", ""))
    # Reference only; identifies which account the key belongs to.
    account_email: str = field(default_factory=lambda: os.getenv("SERVICEM8_EMAIL", ""))
    default_job_status: str = field(
        default_factory=lambda: os.getenv("SERVICEM8_DEFAULT_JOB_STATUS", DEFAULT_JOB_STATUS)
    )
    cache_badges: bool = field(
        default_factory=lambda: os.getenv("SERVICEM8_CACHE_BADGES", "true").lower() == "true"
    )
    badge_cache_ttl: float = field(default_factory=lambda: float(os.getenv("SERVICEM8_BADGE_CACHE_TTL", "3600")))
    search_timeout: float = field(default_factory=lambda: float(os.getenv("SERVICEM8_SEARCH_TIMEOUT", "10")))
    create_timeout: float = field(default_factory=lambda: float(os.getenv("SERVICEM8_CREATE_TIMEOUT", "30")))
    upload_timeout: float = field(default_factory=lambda: float(os.getenv("SERVICEM8_UPLOAD_TIMEOUT", "60")))
    search_page_size: int = field(default_factory=lambda: int(os.getenv("SERVICEM8_SEARCH_PAGE_SIZE", "100")))
    search_max_pages: int = field(default_factory=lambda: int(os.getenv("SERVICEM8_SEARCH_MAX_PAGES", "50")))
    max_file_size: int = field(default_factory=lambda: int(os.getenv("SERVICEM8_MAX_FILE_SIZE", str(MAX_FILE_SIZE))))
    upload_dir: str = field(default_factory=lambda: os.getenv("SERVICEM8_UPLOAD_DIR", "uploads"))

    def validate(self) -> None:
        """Reject settings that would make every submission fail."""
        invalid = []

        if self.api_key:
            if not re.fullmatch(r"[A-Za-z0-9\-_]+", self.api_key):
                invalid.append("SERVICEM8_API_KEY contains invalid characters")
            if len(self.api_key) < 10:
                invalid.append("SERVICEM8_API_KEY appears to be too short")
        if self.default_job_status not in JOB_STATUSES:
            invalid.append(f"SERVICEM8_DEFAULT_JOB_STATUS must be one of {', '.join(JOB_STATUSES)}")

        for name, value in [
            ("SERVICEM8_SEARCH_TIMEOUT", self.search_timeout),
            ("SERVICEM8_CREATE_TIMEOUT", self.create_timeout),
            ("SERVICEM8_UPLOAD_TIMEOUT", self.upload_timeout),
        ]:
            if value <= 0:
                invalid.append(f"{name} must be positive (got {value})")
        if self.badge_cache_ttl < 0:
            invalid.append(f"SERVICEM8_BADGE_CACHE_TTL cannot be negative (got {self.badge_cache_ttl})")
        if not 1 <= self.search_page_size <= 1000:
            invalid.append(f"SERVICEM8_SEARCH_PAGE_SIZE out of range: {self.search_page_size} (1-1000)")
        if self.search_max_pages < 1:
            invalid.append(f"SERVICEM8_SEARCH_MAX_PAGES too low: {self.search_max_pages}")
        if self.max_file_size < 1:
            invalid.append(f"SERVICEM8_MAX_FILE_SIZE too low: {self.max_file_size}")

        if invalid:
            raise ConfigurationError(f"Invalid configuration: {'; '.join(invalid)}")


def _coerce_bool(value: Any) -> Optional[bool]:
    """Form options arrive as JSON booleans, numbers or strings like "false"."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        return text in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class PipelineConfig:
    """Per-form handler options."""

    use_global: Optional[bool] = None
    credential_override: str = ""
    default_status_override: str = ""
    field_mapping_rules: Mapping[str, str] = field(default_factory=dict)
    custom_mapping_text: str = ""
    lead_source_field: str = ""
    badge_mapping_text: str = DEFAULT_BADGE_MAPPINGS
    attachment_field: str = ""
    success_message: str = DEFAULT_SUCCESS_MESSAGE
    error_message: str = DEFAULT_ERROR_MESSAGE
    check_duplicates: bool = False
    debug: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logging.warning("Ignoring unknown pipeline options: %s", ", ".join(unknown))
        values = {key: value for key, value in data.items() if key in known}
        if "field_mapping_rules" in values:
            values["field_mapping_rules"] = dict(values["field_mapping_rules"] or {})
        for name in ("use_global", "check_duplicates", "debug"):
            if name in values:
                values[name] = _coerce_bool(values[name])
        for name in ("check_duplicates", "debug"):
            if values.get(name) is None:
                values.pop(name, None)
        return cls(**values)

    @property
    def uses_global(self) -> bool:
        flag = _coerce_bool(self.use_global)
        return flag is None or flag

    def validate(self) -> None:
        errors = []
        if not self.uses_global and not (self.credential_override or "").strip():
            errors.append("API key is required when not using global settings")
        if self.default_status_override and self.default_status_override not in JOB_STATUSES:
            errors.append(f"Unknown job status: {self.default_status_override}")

        mapped_targets = {
            STATIC_FIELD_TARGETS.get(key, key) for key, source in self.field_mapping_rules.items() if source
        }
        mapped_targets.update(target for target, _ in parse_mapping_text(self.custom_mapping_text))
        if not mapped_targets & {"contact_first", "company_name"}:
            errors.append("Either First Name or Company Name must be mapped")

        if errors:
            raise ConfigurationError("; ".join(errors))

    def user_message(self, success: bool) -> str:
        if success:
            return self.success_message or DEFAULT_SUCCESS_MESSAGE
        return self.error_message or DEFAULT_ERROR_MESSAGE


def resolve_credentials(pipeline: PipelineConfig, settings: Settings) -> Tuple[str, str]:
    """
    Pick the API key and default job status for a form.

    The form's own values win only when it opts out of global settings; an
    unset flag means "use global".

    Raises:
        ConfigurationError: the selected credential is empty.
    """
    if pipeline.uses_global:
        credential = (settings.api_key or "").strip()
        if not credential:
            raise ConfigurationError("ServiceM8 API key not configured in global settings")
        return credential, settings.default_job_status or DEFAULT_JOB_STATUS

    credential = (pipeline.credential_override or "").strip()
    if not credential:
        raise ConfigurationError("Override API key is required when global settings are disabled")
    return credential, pipeline.default_status_override or DEFAULT_JOB_STATUS


def _load_env_file(path: str = ".env.local") -> None:
    """
    Load KEY=VALUE lines from a local env file if present.

    Existing environment variables take precedence. SERVICEM8_ENV_FILE
    overrides the path.
    """
    candidate = Path(os.getenv("SERVICEM8_ENV_FILE") or path).expanduser()
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate
    if not candidate.is_file():
        return

    try:
        with candidate.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = (part.strip() for part in line.split("=", 1))
                if not key:
                    continue
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ.setdefault(key, value)
    except OSError as exc:
        print(f"Warning: failed to load environment file {candidate}: {exc}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

def parse_mapping_text(text: Optional[str]) -> List[Tuple[str, str]]:
    """
    Parse `left|right` lines into ordered pairs.

    Lines without a separator or with an empty side are skipped.
    """
    pairs: List[Tuple[str, str]] = []
    for line in re.split(r"\r\n|\n|\r", text or ""):
        if "|" not in line:
            if line.strip():
                logging.debug("Ignoring mapping line without separator: %r", line)
            continue
        left, right = (part.strip() for part in line.split("|", 1))
        if not left or not right:
            logging.debug("Ignoring incomplete mapping line: %r", line)
            continue
        pairs.append((left, right))
    return pairs


def _value_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple)):
        parts = [str(item).strip() for item in value if item is not None]
        return ", ".join(part for part in parts if part)
    return str(value).strip()


def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [item for item in value if item not in (None, "")]
    return [value]


def normalize_phone(value: Any) -> str:
    """Keep digits and at most one leading `+`."""
    text = _value_to_text(value)
    prefix = "+" if text.startswith("+") else ""
    return prefix + re.sub(r"\D", "", text)


def build_payload(
    submission: Mapping[str, Any],
    static_rules: Mapping[str, str],
    custom_rules_text: Optional[str],
    default_status: str,
) -> Dict[str, Any]:
    """
    Build the ServiceM8 payload for one submission.

    Static rules map form-side keys (see STATIC_FIELD_TARGETS) to submission
    field keys. Custom `target|source` lines are applied afterwards, in
    order, so the last rule for a target wins.

    Raises:
        MissingRequiredFieldError: neither a first name nor a company name.
    """
    payload: Dict[str, Any] = {"status": default_status}

    def assign(target: str, source_key: str) -> None:
        if source_key not in submission or submission[source_key] is None:
            return
        value = submission[source_key]
        payload[target] = normalize_phone(value) if target in PHONE_FIELDS else _value_to_text(value)

    for config_field, source_key in static_rules.items():
        if source_key:
            assign(STATIC_FIELD_TARGETS.get(config_field, config_field), source_key)

    for target, source_key in parse_mapping_text(custom_rules_text):
        assign(target, source_key)

    if not payload.get("contact_first") and not payload.get("company_name"):
        raise MissingRequiredFieldError(("contact_first", "company_name"))

    return payload


def company_display_name(payload: Mapping[str, Any]) -> str:
    first = payload.get("contact_first") or ""
    rest = payload.get("contact_last") or payload.get("company_name") or "Unknown"
    return f"{first} {rest}".strip()


def build_company_record(payload: Mapping[str, Any], name: str) -> Dict[str, Any]:
    return {
        "name": name,
        "email": payload.get("contact_email", ""),
        "mobile": payload.get("contact_mobile", ""),
        "phone": payload.get("contact_phone", ""),
        "billing_address": payload.get("billing_address") or payload.get("job_address", ""),
    }


def build_job_record(
    company_id: str,
    payload: Mapping[str, Any],
    default_status: str,
    badge_ids: Sequence[str],
) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        key: value for key, value in payload.items() if key not in RESERVED_PAYLOAD_FIELDS
    }
    record.update(
        {
            "status": payload.get("status") or default_status,
            "company_uuid": company_id,
            "job_address": payload.get("job_address", ""),
            "job_description": payload.get("job_description") or payload.get("description", ""),
        }
    )
    if badge_ids:
        # ServiceM8 expects the badge list as a JSON-encoded string
        record["badges"] = json.dumps(list(badge_ids))
    return record


def build_contact_record(job_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "job_uuid": job_id,
        "first": payload.get("contact_first", ""),
        "last": payload.get("contact_last", ""),
        "email": payload.get("contact_email", ""),
        "mobile": payload.get("contact_mobile", ""),
        "phone": payload.get("contact_phone", ""),
        "type": "JOB",
    }


def _log_notice(debug: bool, message: str, *args: Any, step: Optional[str] = None) -> None:
    """Progress notices; promoted to INFO when the form has debug enabled."""
    logging.log(logging.INFO if debug else logging.DEBUG, message, *args, extra={"step": step})


# ---------------------------------------------------------------------------
# ServiceM8 API client
# ---------------------------------------------------------------------------

class CreateStatus(Enum):
    CREATED = "created"
    CONFLICT = "conflict"  # company name already taken
    FAILED = "failed"


@dataclass(frozen=True)
class CreateOutcome:
    status: CreateStatus
    record_id: Optional[str] = None
    error: Optional[ServiceM8Error] = None


class ServiceM8Client:
    """Minimal ServiceM8 REST client for the submission pipeline."""

    def __init__(self, credential: str, settings: Settings):
        self.base_url = settings.base_url.rstrip("/")
        self.credential = credential
        self.search_timeout = settings.search_timeout
        self.create_timeout = settings.create_timeout
        self.upload_timeout = settings.upload_timeout
        self.page_size = max(1, settings.search_page_size)
        self.max_pages = max(1, settings.search_max_pages)

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Any] = None,
        data: Optional[bytes] = None,
        content_type: Optional[str] = None,
        timeout: float,
        max_retries: int = 1,
    ) -> Tuple[Any, Dict[str, str]]:
        url = f"{self.base_url}{endpoint}"
        headers = {"X-API-Key": self.credential, "Accept": "application/json"}
        if content_type:
            headers["Content-Type"] = content_type
        try:
            return _http_request(
                method,
                url,
                headers=headers,
                json_body=payload,
                data=data,
                params=params,
                timeout=timeout,
                max_retries=max_retries,
                include_headers=True,
            )
        except urllib.error.HTTPError as exc:
            raise _api_error_from_http(exc, url) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise RequestTimeoutError(f"Request to {url} timed out after {timeout}s") from exc
            raise NetworkError(f"Request to {url} failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise RequestTimeoutError(f"Request to {url} timed out after {timeout}s") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise NetworkError(f"Connection to {url} failed: {exc!r}") from exc

    @staticmethod
    def _record_id(headers: Mapping[str, str], what: str) -> str:
        record_id = (headers.get(RECORD_ID_HEADER) or "").strip()
        if not record_id:
            raise ApiError(f"ServiceM8 did not return an id for the new {what}")
        return record_id

    # --- Companies ---

    def fetch_company_page(self, skip: int = 0, top: Optional[int] = None, max_retries: int = 1) -> List[Dict[str, Any]]:
        body, _ = self._request(
            "GET",
            "/company.json",
            params={"$top": top or self.page_size, "$skip": skip},
            timeout=self.search_timeout,
            max_retries=max_retries,
        )
        return body if isinstance(body, list) else []

    def iter_company_pages(self) -> Iterator[List[Dict[str, Any]]]:
        """Yield company pages until a short page or the page cap."""
        for page in range(self.max_pages):
            companies = self.fetch_company_page(skip=page * self.page_size)
            yield companies
            if len(companies) < self.page_size:
                return
        logging.warning(
            "Company search stopped after %d pages of %d; remaining records were not scanned",
            self.max_pages,
            self.page_size,
        )

    def find_company(self, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Dict[str, Any]]:
        for companies in self.iter_company_pages():
            for company in companies:
                if isinstance(company, dict) and predicate(company):
                    return company
        return None

    def search_company_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        wanted = email.strip().casefold()
        return self.find_company(lambda c: str(c.get("email") or "").strip().casefold() == wanted)

    def search_company_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        wanted = name.strip().casefold()
        return self.find_company(lambda c: str(c.get("name") or "").strip().casefold() == wanted)

    def create_company(self, record: Dict[str, Any]) -> CreateOutcome:
        """Create a company; a duplicate-name rejection comes back as CONFLICT."""
        try:
            _, headers = self._request("POST", "/company.json", payload=record, timeout=self.create_timeout)
            return CreateOutcome(CreateStatus.CREATED, record_id=self._record_id(headers, "company"))
        except ClientError as exc:
            if exc.status_code == 400 and DUPLICATE_NAME_MARKER in exc.api_message:
                return CreateOutcome(CreateStatus.CONFLICT, error=exc)
            return CreateOutcome(CreateStatus.FAILED, error=exc)
        except ServiceM8Error as exc:
            return CreateOutcome(CreateStatus.FAILED, error=exc)

    # --- Jobs ---

    def create_job(self, record: Dict[str, Any]) -> str:
        _, headers = self._request("POST", "/job.json", payload=record, timeout=self.create_timeout)
        return self._record_id(headers, "job")

    def create_job_contact(self, record: Dict[str, Any]) -> str:
        _, headers = self._request("POST", "/jobcontact.json", payload=record, timeout=self.create_timeout)
        return self._record_id(headers, "job contact")

    # --- Badges ---

    def list_badges(self) -> List[Dict[str, Any]]:
        body, _ = self._request("GET", "/badge.json", timeout=self.search_timeout)
        return [badge for badge in body if isinstance(badge, dict)] if isinstance(body, list) else []

    # --- Attachments ---

    def create_attachment(self, record: Dict[str, Any]) -> Optional[str]:
        _, headers = self._request("POST", "/Attachment.json", payload=record, timeout=self.create_timeout)
        return (headers.get(RECORD_ID_HEADER) or "").strip() or None

    def upload_attachment_file(self, attachment_id: str, filename: str, content: bytes, mime_type: str) -> None:
        body, content_type = _encode_multipart("file", filename, content, mime_type)
        self._request(
            "POST",
            f"/Attachment/{urllib.parse.quote(attachment_id)}.file",
            data=body,
            content_type=content_type,
            timeout=self.upload_timeout,
        )


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------

class BadgeResolver:
    """Map lead source values to ServiceM8 badge ids via the shared cache."""

    def __init__(
        self,
        client_factory: Callable[[str], ServiceM8Client],
        settings: Settings,
        cache: Optional[BadgeCache] = None,
    ):
        self.client_factory = client_factory
        self.settings = settings
        self.cache = cache if cache is not None else BADGE_CACHE

    def get_badges(self, credential: str) -> List[Dict[str, Any]]:
        if self.settings.cache_badges:
            cached = self.cache.get(credential)
            if cached is not None:
                return cached

        try:
            badges = self.client_factory(credential).list_badges()
        except ServiceM8Error as exc:
            logging.warning("Failed to fetch badges: %s", exc, extra={"step": "badges"})
            return []

        if self.settings.cache_badges:
            self.cache.set(credential, badges, ttl=self.settings.badge_cache_ttl)
        return badges

    def resolve_badge(self, lead_source_value: Any, badge_mapping_text: str, credential: str) -> Optional[str]:
        source_value = _value_to_text(lead_source_value)
        if not source_value:
            return None

        badge_name = next(
            (name for value, name in parse_mapping_text(badge_mapping_text) if value == source_value),
            None,
        )
        if not badge_name:
            return None

        for badge in self.get_badges(credential):
            if badge.get("name") == badge_name and badge.get("uuid"):
                return badge["uuid"]
        logging.warning(
            "Badge %r for lead source %r does not exist in ServiceM8",
            badge_name,
            source_value,
            extra={"step": "badges"},
        )
        return None

    def resolve_badges(self, lead_source_value: Any, badge_mapping_text: str, credential: str) -> List[str]:
        """Resolve every value of a (possibly multi-value) lead source field."""
        badge_ids: List[str] = []
        for value in _as_list(lead_source_value):
            badge_id = self.resolve_badge(value, badge_mapping_text, credential)
            if badge_id and badge_id not in badge_ids:
                badge_ids.append(badge_id)
        return badge_ids


# ---------------------------------------------------------------------------
# Company resolution
# ---------------------------------------------------------------------------

class CompanyResolver:
    """Find or create the ServiceM8 company for a submission."""

    def __init__(
        self,
        client: ServiceM8Client,
        *,
        now: Optional[Callable[[], datetime]] = None,
        debug: bool = False,
    ):
        self.client = client
        self._now = now or datetime.now
        self.debug = debug

    def _search(self, search: Callable[[str], Optional[Dict[str, Any]]], value: str) -> Optional[str]:
        try:
            company = search(value)
        except ServiceM8Error as exc:
            logging.warning("Company search failed, continuing without a match: %s", exc, extra={"step": "company"})
            return None
        if company and company.get("uuid"):
            return str(company["uuid"])
        return None

    def resolve(self, payload: Mapping[str, Any], check_duplicates: bool = False) -> str:
        """
        Return the company id for this payload.

        Raises:
            ServiceM8Error: the company could not be found or created.
        """
        email = (payload.get("contact_email") or "").strip()
        if check_duplicates and email:
            company_id = self._search(self.client.search_company_by_email, email)
            if company_id:
                _log_notice(self.debug, "Using existing company: %s", company_id, step="company")
                return company_id

        name = company_display_name(payload)
        record = build_company_record(payload, name)
        outcome = self.client.create_company(record)
        if outcome.status is CreateStatus.CREATED:
            _log_notice(self.debug, "Company ready: %s", outcome.record_id, step="company")
            return outcome.record_id  # type: ignore[return-value]
        if outcome.status is CreateStatus.FAILED:
            raise outcome.error or ApiError("Company creation failed")

        logging.info("Company name %r already exists in ServiceM8; searching by name", name, extra={"step": "company"})
        company_id = self._search(self.client.search_company_by_name, name)
        if company_id:
            _log_notice(self.debug, "Found existing company by name: %s", company_id, step="company")
            return company_id

        record = dict(record, name=f"{name} ({self._now().strftime('%Y-%m-%d %H:%M')})")
        retry = self.client.create_company(record)
        if retry.status is CreateStatus.CREATED:
            _log_notice(self.debug, "Created company with unique name: %s", record["name"], step="company")
            return retry.record_id  # type: ignore[return-value]
        raise retry.error or ApiError("Company creation failed after renaming")


def create_job(
    client: ServiceM8Client,
    company_id: str,
    payload: Mapping[str, Any],
    default_status: str,
    badge_ids: Sequence[str] = (),
) -> str:
    """Create the job for a resolved company. Single attempt."""
    return client.create_job(build_job_record(company_id, payload, default_status, badge_ids))


def create_job_contact(client: ServiceM8Client, job_id: str, payload: Mapping[str, Any]) -> str:
    return client.create_job_contact(build_contact_record(job_id, payload))


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileReference:
    file_id: str
    filename: str
    size: int
    path: Path
    mime_type: str = "application/octet-stream"


class LocalFileStore:
    """Resolve submission file identifiers to files under one directory."""

    def __init__(self, root: Any):
        self.root = Path(root)

    def load(self, file_id: Any) -> Optional[FileReference]:
        root = self.root.resolve()
        candidate = (root / str(file_id)).resolve()
        if root not in candidate.parents or not candidate.is_file():
            return None
        mime_type = mimetypes.guess_type(candidate.name)[0] or "application/octet-stream"
        return FileReference(str(file_id), candidate.name, candidate.stat().st_size, candidate, mime_type)


@dataclass
class AttachmentOutcome:
    file_id: str
    filename: str = ""
    status: str = "uploaded"  # uploaded | skipped | failed
    attachment_id: Optional[str] = None
    reason: str = ""


class AttachmentUploader:
    """Attach submission files to a job, one file at a time."""

    def __init__(
        self,
        client: ServiceM8Client,
        file_store: Any,
        *,
        max_file_size: int = MAX_FILE_SIZE,
        debug: bool = False,
    ):
        self.client = client
        self.file_store = file_store
        self.max_file_size = max_file_size
        self.debug = debug

    def upload(self, job_id: str, file_ids: Sequence[Any]) -> List[AttachmentOutcome]:
        return [self._upload_one(job_id, file_id) for file_id in file_ids]

    def _upload_one(self, job_id: str, file_id: Any) -> AttachmentOutcome:
        ref = self.file_store.load(file_id)
        if ref is None:
            logging.warning("File %s not found; skipping", file_id, extra={"step": "attachments"})
            return AttachmentOutcome(str(file_id), status="skipped", reason="not_found")

        context = {"step": "attachments", "attachment": ref.filename}
        if ref.size > self.max_file_size:
            logging.warning("File %s exceeds size limit (%d bytes)", ref.filename, ref.size, extra=context)
            return AttachmentOutcome(ref.file_id, ref.filename, status="skipped", reason="too_large")

        record = {
            "related_object": "job",
            "related_object_uuid": job_id,
            "attachment_name": ref.filename,
            "file_type": os.path.splitext(ref.filename)[1].lower(),
            "active": True,
        }
        try:
            attachment_id = self.client.create_attachment(record)
        except ServiceM8Error as exc:
            logging.error("Failed to create attachment record for %s: %s", ref.filename, exc, extra=context)
            return AttachmentOutcome(ref.file_id, ref.filename, status="failed", reason=str(exc))
        if not attachment_id:
            logging.error("No attachment UUID returned for %s", ref.filename, extra=context)
            return AttachmentOutcome(ref.file_id, ref.filename, status="failed", reason="no_attachment_id")

        try:
            content = ref.path.read_bytes()
        except OSError as exc:
            logging.error("File not readable: %s (%s)", ref.path, exc, extra=context)
            return AttachmentOutcome(ref.file_id, ref.filename, "failed", attachment_id, reason="unreadable")

        try:
            self.client.upload_attachment_file(attachment_id, ref.filename, content, ref.mime_type)
        except ServiceM8Error as exc:
            logging.error("Failed to upload %s: %s", ref.filename, exc, extra=context)
            return AttachmentOutcome(ref.file_id, ref.filename, "failed", attachment_id, reason=str(exc))

        _log_notice(self.debug, "Uploaded file %s to job %s", ref.filename, job_id, step="attachments")
        return AttachmentOutcome(ref.file_id, ref.filename, "uploaded", attachment_id)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@dataclass
class SubmissionResult:
    success: bool
    message: str
    submission_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_detail: str = ""
    company_id: Optional[str] = None
    job_id: Optional[str] = None
    contact_id: Optional[str] = None
    badge_ids: List[str] = field(default_factory=list)
    attachments: List[AttachmentOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    log_entries: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SubmissionOrchestrator:
    """
    Run one submission through the ServiceM8 pipeline.

    Everything up to and including job creation is fatal: the user gets the
    configured error message and the details go to the log. Contact and
    attachment failures after the job exists only add warnings.
    """

    def __init__(
        self,
        pipeline: PipelineConfig,
        settings: Optional[Settings] = None,
        *,
        client_factory: Optional[Callable[[str], ServiceM8Client]] = None,
        file_store: Any = None,
        badge_cache: Optional[BadgeCache] = None,
        now: Optional[Callable[[], datetime]] = None,
        pipeline_id: str = "default",
    ):
        self.config = pipeline
        self.settings = settings or Settings()
        self.client_factory = client_factory or (lambda credential: ServiceM8Client(credential, self.settings))
        self.file_store = file_store if file_store is not None else LocalFileStore(self.settings.upload_dir)
        self.badge_cache = badge_cache if badge_cache is not None else BADGE_CACHE
        self._now = now or datetime.now
        self.pipeline_id = pipeline_id

    def process(self, submission: Mapping[str, Any], submission_id: Optional[str] = None) -> SubmissionResult:
        result = SubmissionResult(success=False, message="", submission_id=submission_id)
        with SubmissionLogCapture(submission_id) as capture:
            try:
                self._run(submission, result)
            except Exception as exc:  # pylint: disable=broad-except
                logging.exception("Unexpected error processing submission %s: %s", submission_id, exc)
                if not result.success:
                    result.error_kind = "unexpected"
                    result.error_detail = str(exc)
        result.log_entries = capture.entries
        result.message = self.config.user_message(result.success)
        return result

    def _fail(self, result: SubmissionResult, exc: ServiceM8Error) -> None:
        result.error_kind = exc.kind
        result.error_detail = str(exc)

    def _run(self, submission: Mapping[str, Any], result: SubmissionResult) -> None:
        debug = bool(self.config.debug)

        try:
            credential, default_status = resolve_credentials(self.config, self.settings)
        except ConfigurationError as exc:
            logging.error("%s. Cannot process submission.", exc, extra={"step": "config"})
            self._fail(result, exc)
            return

        scope = "global" if self.config.uses_global else self.pipeline_id
        self.badge_cache.observe_credential(scope, credential)
        _log_notice(
            debug,
            "Processing submission %s with key %s...",
            result.submission_id,
            credential_fingerprint(credential)[:8],
            step="start",
        )

        try:
            payload = build_payload(
                submission,
                self.config.field_mapping_rules,
                self.config.custom_mapping_text,
                default_status,
            )
        except ValidationError as exc:
            logging.error("%s", exc, extra={"step": "payload"})
            self._fail(result, exc)
            return

        client = self.client_factory(credential)

        if self.config.lead_source_field:
            resolver = BadgeResolver(self.client_factory, self.settings, self.badge_cache)
            result.badge_ids = resolver.resolve_badges(
                submission.get(self.config.lead_source_field),
                self.config.badge_mapping_text,
                credential,
            )
            if result.badge_ids:
                payload["badges"] = list(result.badge_ids)

        try:
            result.company_id = CompanyResolver(client, now=self._now, debug=debug).resolve(
                payload, self.config.check_duplicates
            )
            result.job_id = create_job(client, result.company_id, payload, default_status, result.badge_ids)
        except RateLimitedError as exc:
            logging.error(
                "ServiceM8 rate limit exceeded (retry after %s s).",
                exc.retry_after if exc.retry_after is not None else "?",
                extra={"step": "job", "status_code": exc.status_code},
            )
            self._fail(result, exc)
            return
        except ApiError as exc:
            logging.error(
                "API error %s: %s",
                exc.status_code if exc.status_code is not None else "-",
                exc.body[:500] or exc,
                extra={"step": "job", "status_code": exc.status_code},
            )
            self._fail(result, exc)
            return
        except ServiceM8Error as exc:
            logging.error("Request failed: %s", exc, extra={"step": "job"})
            self._fail(result, exc)
            return

        result.success = True
        _log_notice(debug, "Created job %s for submission %s", result.job_id, result.submission_id, step="job")

        try:
            result.contact_id = create_job_contact(client, result.job_id, payload)
        except ServiceM8Error as exc:
            warning = f"Job {result.job_id} created but contact details couldn't be added: {exc}"
            logging.warning(warning, extra={"step": "contact", "job_id": result.job_id})
            result.warnings.append(warning)

        file_ids = _as_list(submission.get(self.config.attachment_field)) if self.config.attachment_field else []
        if file_ids:
            uploader = AttachmentUploader(
                client,
                self.file_store,
                max_file_size=self.settings.max_file_size,
                debug=debug,
            )
            result.attachments = uploader.upload(result.job_id, file_ids)
            for outcome in result.attachments:
                if outcome.status != "uploaded":
                    result.warnings.append(
                        f"Attachment {outcome.filename or outcome.file_id} {outcome.status}: {outcome.reason}"
                    )


# ---------------------------------------------------------------------------
# Connection check
# ---------------------------------------------------------------------------

CONNECTION_ERROR_MESSAGES: Dict[int, str] = {
    401: "Authentication failed. Please check your API key.",
    403: "Access denied. The API key may not have the correct permissions.",
    404: "API endpoint not found. Please check ServiceM8 service status.",
    429: "Rate limit exceeded. Please try again in a few minutes.",
}


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    message: str
    status_code: Optional[int] = None
    company_name: str = ""


def check_connection(credential: Optional[str], settings: Optional[Settings] = None, max_retries: int = 2) -> ConnectionCheck:
    """Probe the API with a one-record company read."""
    credential = (credential or "").strip()
    if not credential:
        return ConnectionCheck(False, "Please enter an API key to test the connection.")

    client = ServiceM8Client(credential, settings or Settings())
    try:
        companies = client.fetch_company_page(top=1, max_retries=max_retries)
    except ApiError as exc:
        code = exc.status_code
        message = CONNECTION_ERROR_MESSAGES.get(code or 0, f"Failed to connect. HTTP Status Code: {code}")
        logging.warning("Connection check failed: %s", exc)
        return ConnectionCheck(False, message, code)
    except RequestTimeoutError:
        return ConnectionCheck(False, "Connection timed out. Could not reach ServiceM8 servers.")
    except NetworkError as exc:
        logging.warning("Connection check failed: %s", exc)
        return ConnectionCheck(False, "Could not reach the ServiceM8 API host. Check your internet connection.")

    first = companies[0] if companies else {}
    return ConnectionCheck(True, "Connection successful!", 200, first.get("name") or "Unknown")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _read_json(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send a form submission to ServiceM8")
    parser.add_argument("--submission", help="Path to a JSON object of form field values")
    parser.add_argument("--config", help="Path to a JSON object of pipeline options")
    parser.add_argument("--submission-id", dest="submission_id", help="Identifier used in logs")
    parser.add_argument("--upload-dir", dest="upload_dir", help="Directory holding uploaded files")
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Check the API key against ServiceM8 and exit",
    )
    parser.add_argument("--api-key", dest="api_key", help="API key for --test-connection (defaults to settings)")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--output", help="Optional path to write the JSON result")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    try:
        settings = Settings()
        if args.upload_dir:
            settings = replace(settings, upload_dir=args.upload_dir)
        settings.validate()
    except ValueError as exc:
        logging.error("Fatal error: %s", exc)
        return 1

    if args.test_connection:
        check = check_connection(args.api_key or settings.api_key, settings)
        print(json.dumps(asdict(check), indent=2))
        return 0 if check.ok else 1

    if not args.submission:
        parser.error("--submission is required unless --test-connection is specified")

    try:
        submission = _read_json(args.submission)
        pipeline = PipelineConfig.from_dict(_read_json(args.config)) if args.config else PipelineConfig()
        pipeline.validate()
    except (OSError, ValueError) as exc:
        logging.error("Fatal error: %s", exc)
        return 1

    result = SubmissionOrchestrator(pipeline, settings).process(submission, args.submission_id)
    output_json = json.dumps(result.to_dict(), indent=2, default=str)
    print(output_json)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(output_json)
        logging.info("Wrote result to %s", args.output)

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
