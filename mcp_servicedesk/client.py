"""ServiceDesk Plus REST API client.

The client builds authenticated requests against the SDP v3 API, retries
transient failures and unwraps the ``response_status`` envelope into typed
models.

Retry policy:
    - HTTP 429: exponential backoff starting at 100ms, or the server's Retry-After
    - HTTP 502/503/504: fixed 500ms delay
    - Timeouts and connection failures: 100ms delay
    - Everything else (validation, auth, not found, SDP errors) is not retried

The API key is sent only in the ``authtoken`` header and is never logged.
"""

import json
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar
from urllib.parse import quote, urlsplit

import requests  # type: ignore[import-untyped]
from pydantic import BaseModel, ValidationError
from requests.adapters import HTTPAdapter  # type: ignore[import-untyped]

from .config import Config
from .errors import (
    AuthenticationError,
    ConnectionTestError,
    HTTPStatusError,
    InputValidationError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
    SerializationError,
    ServiceDeskError,
    ServiceUnavailableError,
    TransportError,
    TransportInitError,
    redact,
)
from .models import (
    Conversation,
    CreateNoteRequest,
    CreateRequestParams,
    GetRequestResponse,
    ListConversationsResponse,
    ListInfo,
    ListNotesResponse,
    ListParams,
    ListRequestsResponse,
    ListTechniciansResponse,
    Note,
    NoteResponse,
    RequestSummary,
    SdpResponse,
    SearchCriterion,
    ServiceRequest,
    Technician,
    UpdateRequestParams,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

SDP_ACCEPT_HEADER = "application/vnd.manageengine.sdp.v3+json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
API_PATH = "/api/v3"

MAX_RETRY_ATTEMPTS = 3
INITIAL_BACKOFF = 0.1  # seconds, doubled after each rate-limited attempt
SERVER_ERROR_DELAY = 0.5  # seconds
MAX_ERROR_BODY_LEN = 500
MAX_ID_ECHO_LEN = 50
POOL_MAXSIZE = 10

# Where secondary content lives in the JSON returned by a content_url
CONTENT_PATHS = (
    ("notification", "description"),
    ("notification", "content"),
    ("conversation", "description"),
    ("note", "description"),
    ("note", "content"),
)

# Write payload fields that SDP expects as {"name": ...} references
NAMED_FIELDS = ("priority", "status", "category", "subcategory", "item", "group")


def normalize_base_url(url: str) -> str:
    """Return the base URL with exactly one trailing ``/api/v3`` segment.

    Args:
        url: Instance URL as configured, with or without ``/api`` or ``/api/v3``

    Returns:
        Normalized API base URL; normalizing it again returns it unchanged
    """
    url = url.rstrip("/")
    if url.endswith(API_PATH):
        return url
    if url.endswith("/api"):
        return f"{url}/v3"
    return f"{url}{API_PATH}"


def validate_id(value: str, field_name: str) -> None:
    """Ensure an identifier is a non-empty string of ASCII digits.

    SDP ids are strictly numeric. Anything else is rejected before it can be
    interpolated into a URL path.

    Raises:
        InputValidationError: If the value is empty or contains a non-digit
    """
    if not value or not (value.isascii() and value.isdigit()):
        raise InputValidationError(f"{field_name} must be a numeric string, got: {value[:MAX_ID_ECHO_LEN]!r}")


def with_retry(operation: str, func: Callable[[], T], *, secret: str = "") -> T:
    """Call ``func`` and retry it on transient failures.

    At most ``MAX_RETRY_ATTEMPTS`` calls are made. Non-retryable errors, and
    the last error once attempts are exhausted, are re-raised unchanged.

    Args:
        operation: Label used in log messages (e.g. "GET /requests")
        func: Zero-argument callable performing one attempt
        secret: Value to redact from logged error text

    Returns:
        Whatever ``func`` returns on the first successful attempt
    """
    delay = INITIAL_BACKOFF
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except ServiceDeskError as e:
            if not e.is_retryable or attempt >= MAX_RETRY_ATTEMPTS:
                if attempt > 1:
                    logger.debug("All retry attempts exhausted for %s after %d attempts", operation, attempt)
                raise

            if e.is_rate_limit:
                actual_delay = e.retry_after if e.retry_after is not None else delay
            elif isinstance(e, ServiceUnavailableError):
                actual_delay = SERVER_ERROR_DELAY
            else:
                actual_delay = delay

            logger.debug(
                "Retrying %s after transient error (attempt %d/%d, delay %.0fms): %s",
                operation,
                attempt,
                MAX_RETRY_ATTEMPTS,
                actual_delay * 1000,
                e.sanitized(secret),
            )
            time.sleep(actual_delay)

            if e.is_rate_limit:
                delay *= 2


def _parse_retry_after(value: str | None) -> float | None:
    if value is None or not value.strip().isdigit():
        return None
    return float(int(value.strip()))


def _request_payload(values: dict[str, Any]) -> dict[str, Any]:
    """Build a ``request`` write payload from the fields that are present."""
    data: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if key in NAMED_FIELDS:
            data[key] = {"name": value}
        elif key == "technician_id":
            data["technician"] = {"id": value}
        elif key == "requester_email":
            data["requester"] = {"email_id": value}
        else:
            data[key] = value
    return data


class ServiceDeskClient:
    """Client for the ServiceDesk Plus v3 REST API.

    One instance holds an immutable configuration and a pooled
    ``requests.Session``; it keeps no other state and can serve
    concurrent tool calls.
    """

    def __init__(self, config: Config | None = None, session: requests.Session | None = None) -> None:
        """Initialize the client.

        Args:
            config: Connection settings (default: loaded from the environment)
            session: Pre-built session, mainly for tests

        Raises:
            ConfigurationError: If no config is given and the environment is incomplete
            TransportInitError: If the HTTP session cannot be created
        """
        self.config = config or Config.from_env()
        self.base_url = normalize_base_url(self.config.base_url)
        self.timeout = self.config.timeout
        self._api_key = self.config.api_key.get_secret_value()
        self.session = session if session is not None else self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        try:
            session = requests.Session()
            adapter = HTTPAdapter(pool_maxsize=POOL_MAXSIZE)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        except (OSError, ValueError) as e:
            raise TransportInitError(e) from e
        return session

    @property
    def web_base_url(self) -> str:
        """Instance URL without the API path."""
        return self.base_url.removesuffix(API_PATH)

    def sanitize(self, message: str) -> str:
        """Redact the API key from arbitrary text."""
        return redact(message, self._api_key)

    def request_web_url(self, request_id: str) -> str:
        """URL for viewing a request in the SDP web UI."""
        return f"{self.web_base_url}/WorkOrder.do?woMode=viewWO&woID={quote(request_id, safe='')}"

    # ==================== Request execution ====================

    def _send(self, method: str, url: str, operation: str, **kwargs: Any) -> requests.Response:
        """Send one HTTP request and classify non-2xx responses.

        Redirects are not followed so the authtoken header is only ever sent
        to the configured host.
        """
        headers = {"authtoken": self._api_key, "Accept": SDP_ACCEPT_HEADER, **kwargs.pop("headers", {})}
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.timeout, allow_redirects=False, **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise RequestTimeoutError(self.timeout, operation) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(e) from e

        if not 200 <= response.status_code < 300:
            raise self._classify_http_error(response)
        return response

    def _classify_http_error(self, response: requests.Response) -> ServiceDeskError:
        status = response.status_code
        if status in (401, 403):
            return AuthenticationError()
        if status == 404:
            return NotFoundError("resource")
        if status == 429:
            logger.warning("Rate limited by SDP server")
            return RateLimitedError(_parse_retry_after(response.headers.get("retry-after")))
        if status in (502, 503, 504):
            logger.warning("SDP server temporarily unavailable (%s)", status)
            return ServiceUnavailableError(status)

        body = self.sanitize(response.text or "")
        if len(body) > MAX_ERROR_BODY_LEN:
            body = f"{body[:MAX_ERROR_BODY_LEN]}...[truncated]"
        return HTTPStatusError(status, body)

    def _request_inner(
        self, method: str, path: str, input_data: dict[str, Any] | None, response_model: type[M]
    ) -> M:
        """Perform a single API call without retrying.

        ``input_data`` goes into an ``input_data`` query parameter for GET and
        into an ``input_data`` form field for every other method.
        """
        url = f"{self.base_url}{path}"
        operation = f"{method} {path}"
        logger.debug("Making SDP API request: %s", operation)

        kwargs: dict[str, Any] = {}
        if input_data is not None:
            try:
                input_json = json.dumps(input_data)
            except (TypeError, ValueError) as e:
                raise SerializationError(e) from e
            if method == "GET":
                kwargs["params"] = {"input_data": input_json}
            else:
                kwargs["data"] = {"input_data": input_json}
                kwargs["headers"] = {"Content-Type": FORM_CONTENT_TYPE}

        response = self._send(method, url, operation, **kwargs)

        try:
            envelope = SdpResponse.model_validate_json(response.text)
        except ValidationError as e:
            raise SerializationError(e) from e

        payload = envelope.into_result()
        try:
            return response_model.model_validate(payload)
        except ValidationError as e:
            raise SerializationError(e) from e

    def _request(
        self, method: str, path: str, response_model: type[M], input_data: dict[str, Any] | None = None
    ) -> M:
        """Perform an API call with retries for transient failures."""
        return with_retry(
            f"{method} {path}",
            lambda: self._request_inner(method, path, input_data, response_model),
            secret=self._api_key,
        )

    def _get_restamped(
        self, path: str, response_model: type[M], resource_id: str, resource: str = "request"
    ) -> M:
        """GET ``path``, reporting a not-found error with the concrete id."""
        try:
            return self._request("GET", path, response_model)
        except NotFoundError as e:
            raise NotFoundError(resource_id, resource) from e

    # ==================== Read operations ====================

    def test_connection(self) -> None:
        """Verify that the server is reachable and the API key is accepted.

        Raises:
            ConnectionTestError: With a message describing what to check
        """
        logger.debug("Testing connection to SDP server")
        try:
            self.list_requests(ListParams().with_limit(1))
        except AuthenticationError as e:
            raise ConnectionTestError("Authentication failed - verify SDP_API_KEY is correct") from e
        except RequestTimeoutError as e:
            raise ConnectionTestError(
                f"Connection timed out after {e.duration:g}s - "
                "verify SDP_BASE_URL is correct and server is reachable"
            ) from e
        except TransportError as e:
            raise ConnectionTestError(
                f"HTTP error: {self.sanitize(str(e.cause))} - verify SDP_BASE_URL is correct"
            ) from e
        except ServiceDeskError as e:
            raise ConnectionTestError(e.sanitized(self._api_key)) from e
        logger.info("Connection test successful")

    def list_requests(self, params: ListParams | None = None) -> list[RequestSummary]:
        """List requests matching the given filters.

        Args:
            params: Filters and pagination (default: SDP's default page)

        Returns:
            Request summaries in the order SDP returned them
        """
        return self.list_requests_page(params).requests

    def list_requests_page(self, params: ListParams | None = None) -> ListRequestsResponse:
        """List requests together with the pagination info SDP returned.

        ``list_info.total_count`` is only filled in when ``params`` asked for
        it with ``with_total_count()``.
        """
        params = params or ListParams()
        return self._request("GET", "/requests", ListRequestsResponse, params.to_input_data())

    def get_request(self, request_id: str) -> ServiceRequest:
        """Get the full details of a request.

        Raises:
            InputValidationError: If the id is not numeric
            NotFoundError: If the request does not exist
        """
        validate_id(request_id, "request_id")
        return self._get_restamped(f"/requests/{request_id}", GetRequestResponse, request_id).request

    def list_notes(self, request_id: str) -> list[Note]:
        validate_id(request_id, "request_id")
        return self._get_restamped(f"/requests/{request_id}/notes", ListNotesResponse, request_id).notes

    def get_note(self, request_id: str, note_id: str) -> Note:
        validate_id(request_id, "request_id")
        validate_id(note_id, "note_id")
        return self._get_restamped(
            f"/requests/{request_id}/notes/{note_id}", NoteResponse, f"{note_id} on request {request_id}", "note"
        ).note

    def list_conversations(self, request_id: str) -> list[Conversation]:
        validate_id(request_id, "request_id")
        return self._get_restamped(
            f"/requests/{request_id}/conversations", ListConversationsResponse, request_id
        ).conversations

    def get_content_from_url(self, content_url: str) -> str:
        """Fetch secondary content (note or conversation body) from a content URL.

        Args:
            content_url: Path returned by SDP, e.g. /api/v3/requests/1/notifications/2

        Returns:
            The extracted description/content, or the raw body if none is found

        Raises:
            InputValidationError: If the URL resolves to a different host or port
        """
        return with_retry(
            "get_content_from_url", lambda: self._get_content_inner(content_url), secret=self._api_key
        )

    def _check_same_authority(self, url: str) -> None:
        try:
            target = urlsplit(url)
            base = urlsplit(self.web_base_url)
            target_authority = (target.hostname, target.port)
            base_authority = (base.hostname, base.port)
        except ValueError as e:
            raise InputValidationError(f"invalid content URL: {e}") from e
        if target_authority != base_authority:
            raise InputValidationError(
                f"content URL host mismatch: expected {base.hostname!r}, got {str(target.hostname)[:MAX_ID_ECHO_LEN]!r}"
            )

    def _get_content_inner(self, content_url: str) -> str:
        url = f"{self.web_base_url}{content_url}"
        self._check_same_authority(url)

        response = self._send("GET", url, f"GET {content_url}")
        body = response.text

        try:
            data = json.loads(body)
        except ValueError:
            return body

        if isinstance(data, dict):
            for wrapper, field in CONTENT_PATHS:
                section = data.get(wrapper)
                if isinstance(section, dict) and isinstance(section.get(field), str):
                    return section[field]
        return body

    def list_notes_with_content(self, request_id: str) -> list[Note]:
        """List notes and fill in any content the list endpoint left out.

        Notes without inline content are completed from their content URL,
        or by fetching the note individually. A failed fetch keeps the partial
        note and is logged.
        """
        notes = self.list_notes(request_id)
        full_notes = []
        for note in notes:
            if note.description is None:
                try:
                    if note.content_url:
                        note = note.model_copy(update={"description": self.get_content_from_url(note.content_url)})
                    else:
                        note = self.get_note(request_id, note.id)
                except ServiceDeskError as e:
                    logger.warning(
                        "Failed to fetch content for note %s on request %s, using partial note: %s",
                        note.id,
                        request_id,
                        e.sanitized(self._api_key),
                    )
            full_notes.append(note)
        return full_notes

    def list_conversations_with_content(self, request_id: str) -> list[Conversation]:
        """List conversations and fetch the bodies SDP only provides by URL."""
        conversations = self.list_conversations(request_id)
        result = []
        for conversation in conversations:
            if conversation.description is None and conversation.content_url:
                try:
                    content = self.get_content_from_url(conversation.content_url)
                    conversation = conversation.model_copy(update={"description": content})
                except ServiceDeskError as e:
                    logger.warning(
                        "Failed to fetch content for conversation %s on request %s: %s",
                        conversation.id,
                        request_id,
                        e.sanitized(self._api_key),
                    )
            result.append(conversation)
        return result

    def list_technicians(self, group: str | None = None, limit: int | None = None) -> list[Technician]:
        """List technicians, optionally restricted to one support group."""
        input_data: dict[str, Any] = {"list_info": ListInfo(row_count=limit).model_dump(exclude_none=True)}
        if group is not None:
            input_data["search_criteria"] = [SearchCriterion.equals("group.name", group).model_dump(exclude_none=True)]
        return self._request("GET", "/technicians", ListTechniciansResponse, input_data).technicians

    # ==================== Write operations ====================

    def create_request(self, params: CreateRequestParams) -> ServiceRequest:
        """Create a request. Only the fields that are set are sent."""
        if params.technician_id is not None:
            validate_id(params.technician_id, "technician_id")
        input_data = {"request": _request_payload(params.model_dump())}
        return self._request("POST", "/requests", GetRequestResponse, input_data).request

    def update_request(self, request_id: str, params: UpdateRequestParams) -> ServiceRequest:
        """Update the fields of a request that are set in ``params``."""
        validate_id(request_id, "request_id")
        if params.technician_id is not None:
            validate_id(params.technician_id, "technician_id")
        input_data = {"request": _request_payload(params.model_dump(exclude={"request_id"}))}
        return self._request("PUT", f"/requests/{request_id}", GetRequestResponse, input_data).request

    def close_request(
        self, request_id: str, closure_code: str | None = None, comments: str | None = None
    ) -> ServiceRequest:
        """Close a request; closure details are optional."""
        validate_id(request_id, "request_id")
        closure_info: dict[str, Any] = {}
        if closure_code is not None:
            closure_info["closure_code"] = {"name": closure_code}
        if comments is not None:
            closure_info["closure_comments"] = comments

        request_data: dict[str, Any] = {}
        if closure_info:
            request_data["closure_info"] = closure_info

        return self._request(
            "PUT", f"/requests/{request_id}/close", GetRequestResponse, {"request": request_data}
        ).request

    def add_note(
        self,
        request_id: str,
        content: str,
        show_to_requester: bool | None = None,
        notify_technician: bool | None = None,
    ) -> Note:
        """Add a note to a request (internal unless ``show_to_requester``)."""
        validate_id(request_id, "request_id")
        note = CreateNoteRequest(
            description=content, show_to_requester=show_to_requester, notify_technician=notify_technician
        )
        input_data = {"note": note.model_dump(exclude_none=True)}
        return self._request("POST", f"/requests/{request_id}/notes", NoteResponse, input_data).note

    def assign_request(
        self, request_id: str, technician_id: str | None = None, group: str | None = None
    ) -> ServiceRequest:
        """Assign a request to a technician and/or a support group."""
        validate_id(request_id, "request_id")
        if technician_id is not None:
            validate_id(technician_id, "technician_id")
        input_data = {"request": _request_payload({"technician_id": technician_id, "group": group})}
        return self._request("PUT", f"/requests/{request_id}", GetRequestResponse, input_data).request
