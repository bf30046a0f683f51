"""Pydantic models for ServiceDesk Plus entities, envelopes and tool parameters."""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field

from .errors import SDP_AUTH_FAILED, SDP_NOT_FOUND, SDP_SUCCESS, AuthenticationError, NotFoundError, SdpApiError

MAX_SUBJECT_LENGTH = 250


def _string_or_int(v: Any) -> Any:
    """Accept ids and epoch values that SDP sends either as strings or numbers."""
    if isinstance(v, bool):
        return v
    if isinstance(v, int):
        return str(v)
    return v


def _blank_to_none(v: Any) -> Any:
    """Treat whitespace-only optional strings as absent."""
    if isinstance(v, str):
        return v.strip() or None
    return v


def _first_if_list(v: Any) -> Any:
    """Some list endpoints wrap response_status in a one-element array."""
    if isinstance(v, list) and v:
        return v[0]
    return v


LenientStr = Annotated[str, BeforeValidator(_string_or_int)]
OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]
OptionalId = Annotated[str | None, BeforeValidator(_string_or_int), BeforeValidator(_blank_to_none)]


class StrictBaseModel(BaseModel):
    """Base model with strict validation that forbids extra fields.

    This ensures that typos or incorrect field names in request parameters
    are caught early with clear validation errors rather than being silently ignored.
    String fields are automatically stripped of leading/trailing whitespace.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ResponseFormat(str, Enum):
    """Output format for tool responses.

    Attributes:
        MARKDOWN: Human-readable markdown format
        JSON: Machine-readable JSON format with full metadata
    """

    MARKDOWN = "markdown"
    JSON = "json"


def _normalize_format(v: str) -> str:
    """Normalize response format to lowercase."""
    if isinstance(v, str):
        return v.lower()
    return v


ResponseFormatInput = Annotated[ResponseFormat, BeforeValidator(_normalize_format)]


# ==================== Envelope ====================


class ResponseMessage(BaseModel):
    """A single message inside ``response_status``."""

    message: str = ""
    status_code: LenientStr | None = None
    message_type: str | None = Field(None, alias="type")


class ResponseStatus(BaseModel):
    """Status block present on every SDP response."""

    status_code: int
    status: str = ""
    messages: list[ResponseMessage] = Field(default_factory=list)

    def is_success(self) -> bool:
        return self.status_code == SDP_SUCCESS

    def to_error(self) -> AuthenticationError | NotFoundError | SdpApiError:
        """Map a failed status to the matching error.

        4005 yields a not-found error with a placeholder id; callers that know
        the concrete id replace it.
        """
        if self.status_code == SDP_AUTH_FAILED:
            return AuthenticationError()
        if self.status_code == SDP_NOT_FOUND:
            return NotFoundError("unknown")
        message = self.messages[0].message if self.messages else "Unknown error"
        return SdpApiError(self.status_code, message)


class SdpResponse(BaseModel):
    """SDP response envelope.

    The resource payload (``request``, ``requests``, ``note``...) is sent as
    top-level fields next to ``response_status``; they are collected as
    extra fields.
    """

    model_config = ConfigDict(extra="allow")

    response_status: Annotated[ResponseStatus, BeforeValidator(_first_if_list)]

    @property
    def payload(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def into_result(self) -> dict[str, Any]:
        """Return the payload, or raise the error described by the status block."""
        if self.response_status.is_success():
            return self.payload
        raise self.response_status.to_error()


# ==================== Outbound list/search structures ====================


class ListInfo(BaseModel):
    """Pagination and sorting controls sent in ``input_data.list_info``."""

    model_config = ConfigDict(frozen=True)

    row_count: int | None = None
    start_index: int | None = None
    sort_field: str | None = None
    sort_order: str | None = None
    get_total_count: bool | None = None


class SearchCriterion(BaseModel):
    """One filter condition of a search."""

    model_config = ConfigDict(frozen=True)

    field: str
    condition: str
    value: Any
    logical_operator: str | None = None

    @classmethod
    def equals(cls, field: str, value: str) -> "SearchCriterion":
        return cls(field=field, condition="is", value=value)

    @classmethod
    def not_equals(cls, field: str, value: str) -> "SearchCriterion":
        return cls(field=field, condition="is not", value=value)

    @classmethod
    def contains(cls, field: str, value: str) -> "SearchCriterion":
        return cls(field=field, condition="contains", value=value)

    def and_(self) -> "SearchCriterion":
        return self.model_copy(update={"logical_operator": "AND"})

    def or_(self) -> "SearchCriterion":
        return self.model_copy(update={"logical_operator": "OR"})


class ListParams(BaseModel):
    """Filters and pagination for listing requests.

    Immutable: every ``with_*`` method returns a new instance, criteria are
    kept in the order they were added.

    Example:
        params = ListParams().with_status("Open").with_priority("High").with_limit(10)
    """

    model_config = ConfigDict(frozen=True)

    list_info: ListInfo = Field(default_factory=ListInfo)
    search_criteria: tuple[SearchCriterion, ...] = ()

    def _with_info(self, **changes: Any) -> "ListParams":
        return self.model_copy(update={"list_info": self.list_info.model_copy(update=changes)})

    def with_criterion(self, criterion: SearchCriterion) -> "ListParams":
        return self.model_copy(update={"search_criteria": (*self.search_criteria, criterion)})

    def with_limit(self, limit: int) -> "ListParams":
        return self._with_info(row_count=limit)

    def with_offset(self, offset: int) -> "ListParams":
        return self._with_info(start_index=offset)

    def with_sort(self, field: str, order: str = "desc") -> "ListParams":
        return self._with_info(sort_field=field, sort_order=order)

    def with_total_count(self) -> "ListParams":
        return self._with_info(get_total_count=True)

    def with_status(self, status: str) -> "ListParams":
        return self.with_criterion(SearchCriterion.equals("status.name", status))

    def with_priority(self, priority: str) -> "ListParams":
        return self.with_criterion(SearchCriterion.equals("priority.name", priority))

    def with_technician(self, technician: str) -> "ListParams":
        return self.with_criterion(SearchCriterion.equals("technician.name", technician))

    def with_requester(self, requester: str) -> "ListParams":
        return self.with_criterion(SearchCriterion.equals("requester.name", requester))

    def with_subject_contains(self, subject: str) -> "ListParams":
        return self.with_criterion(SearchCriterion.contains("subject", subject))

    def with_created_after(self, date: str) -> "ListParams":
        """Only requests created after ``date`` (YYYY-MM-DD)."""
        return self.with_criterion(SearchCriterion(field="created_time", condition="greater than", value=date))

    def with_created_before(self, date: str) -> "ListParams":
        """Only requests created before ``date`` (YYYY-MM-DD)."""
        return self.with_criterion(SearchCriterion(field="created_time", condition="less than", value=date))

    def with_open_only(self, closed_statuses: tuple[str, ...] | list[str]) -> "ListParams":
        """Exclude every status listed in ``closed_statuses``."""
        params = self
        for status in closed_statuses:
            params = params.with_criterion(SearchCriterion.not_equals("status.name", status))
        return params

    def to_input_data(self) -> dict[str, Any]:
        """Build the ``input_data`` object for ``GET /requests``.

        SDP expects ``search_criteria`` inside ``list_info``. Every criterion
        except the last must carry a ``logical_operator`` ("AND" unless one
        was set explicitly) and the last must carry none.
        """
        list_info = self.list_info.model_dump(exclude_none=True)
        if self.search_criteria:
            last = len(self.search_criteria) - 1
            list_info["search_criteria"] = [
                criterion.model_copy(
                    update={"logical_operator": None if i == last else (criterion.logical_operator or "AND")}
                ).model_dump(exclude_none=True)
                for i, criterion in enumerate(self.search_criteria)
            ]
        return {"list_info": list_info}


class CreateNoteRequest(BaseModel):
    """Body of ``POST /requests/{id}/notes``."""

    description: str
    show_to_requester: bool | None = None
    notify_technician: bool | None = None


# ==================== Entities ====================


class NamedEntity(BaseModel):
    """Reference to another SDP entity by id and name."""

    id: LenientStr | None = None
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or "Unknown"


class SdpTimestamp(BaseModel):
    """Timestamp as sent by SDP: epoch milliseconds plus a display string."""

    value: LenientStr | None = None
    display_value: str | None = None

    def display(self) -> str | None:
        return self.display_value or self.value


def _entity_name(entity: NamedEntity | None) -> str | None:
    return entity.name if entity else None


def _timestamp(ts: SdpTimestamp | None) -> str | None:
    return ts.display() if ts else None


class RequestSummary(BaseModel):
    """Request (ticket) as returned by the list endpoint."""

    id: LenientStr
    subject: str | None = None
    status: NamedEntity | None = None
    priority: NamedEntity | None = None
    technician: NamedEntity | None = None
    requester: NamedEntity | None = None
    created_time: SdpTimestamp | None = None
    last_updated_time: SdpTimestamp | None = None
    due_by_time: SdpTimestamp | None = None
    request_type: NamedEntity | None = None
    category: NamedEntity | None = None
    subcategory: NamedEntity | None = None
    site: NamedEntity | None = None
    group: NamedEntity | None = None

    @property
    def display_subject(self) -> str:
        return self.subject or "(No subject)"

    @property
    def display_status(self) -> str:
        return _entity_name(self.status) or "Unknown"

    @property
    def display_priority(self) -> str:
        return _entity_name(self.priority) or "Unknown"

    @property
    def display_technician(self) -> str:
        return _entity_name(self.technician) or "Unassigned"

    @property
    def display_requester(self) -> str:
        return _entity_name(self.requester) or "Unknown"

    @property
    def display_created(self) -> str | None:
        return _timestamp(self.created_time)


class Resolution(BaseModel):
    """Resolution details for a completed request."""

    content: str | None = None
    submitted_by: NamedEntity | None = None
    submitted_on: SdpTimestamp | None = None


class ClosureInfo(BaseModel):
    """Closure details for a closed request."""

    closure_code: NamedEntity | None = None
    closure_comments: str | None = None
    closed_by: NamedEntity | None = None
    closed_time: SdpTimestamp | None = None


class ServiceRequest(RequestSummary):
    """Full request (ticket) details."""

    description: str | None = None
    urgency: NamedEntity | None = None
    impact: NamedEntity | None = None
    item: NamedEntity | None = None
    level: NamedEntity | None = None
    mode: NamedEntity | None = None
    service: NamedEntity | None = None
    first_response_due_by_time: SdpTimestamp | None = None
    resolution_due_by_time: SdpTimestamp | None = None
    completed_time: SdpTimestamp | None = None
    resolution: Resolution | None = None
    closure_info: ClosureInfo | None = None
    is_overdue: bool | None = None
    is_fcr: bool | None = None
    has_attachments: bool | None = None
    has_notes: bool | None = None
    email_ids_to_notify: list[str] | None = None
    approval_status: NamedEntity | None = None

    @property
    def display_group(self) -> str | None:
        return _entity_name(self.group)

    @property
    def category_path(self) -> str:
        """Category > subcategory > item, or "Uncategorized"."""
        parts = [
            name for name in (_entity_name(self.category), _entity_name(self.subcategory), _entity_name(self.item))
            if name
        ]
        return " > ".join(parts) if parts else "Uncategorized"


class Note(BaseModel):
    """Note attached to a request."""

    id: LenientStr
    description: str | None = None
    created_by: NamedEntity | None = None
    created_time: SdpTimestamp | None = None
    show_to_requester: bool | None = None
    notify_technician: bool | None = None
    content_url: str | None = None

    @property
    def display_content(self) -> str:
        return self.description or "(No content)"

    @property
    def display_created_by(self) -> str:
        return _entity_name(self.created_by) or "Unknown"


class Conversation(BaseModel):
    """Email exchange or notification attached to a request.

    SDP often leaves the body out of the list response and only sends a
    ``content_url`` to fetch it from.
    """

    id: LenientStr
    description: str | None = Field(None, validation_alias=AliasChoices("description", "content", "body"))
    from_user: NamedEntity | None = Field(None, validation_alias=AliasChoices("from", "from_user"))
    to: list[str | dict[str, Any]] | None = None
    sent_time: SdpTimestamp | None = Field(
        None, validation_alias=AliasChoices("sent_time", "created_time", "created_date")
    )
    conversation_type: str | None = Field(None, validation_alias=AliasChoices("type", "conversation_type"))
    is_incoming: bool | None = None
    subject: str | None = None
    content_url: str | None = None
    has_attachments: bool | None = None
    show_to_requester: bool | None = None

    @property
    def display_content(self) -> str:
        if self.description is not None:
            return self.description
        if self.content_url:
            return "(Content could not be fetched)"
        if self.subject:
            return f"[Subject: {self.subject}]"
        return "(No content)"

    @property
    def display_from(self) -> str:
        return _entity_name(self.from_user) or "Unknown"

    @property
    def direction(self) -> str:
        if self.is_incoming is None:
            return "Unknown"
        return "Incoming" if self.is_incoming else "Outgoing"


class Technician(BaseModel):
    """Technician that requests can be assigned to."""

    id: LenientStr
    name: str | None = None
    email_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    mobile: str | None = None
    job_title: str | None = Field(None, validation_alias=AliasChoices("job_title", "jobtitle"))
    department: Any = None
    is_active: bool | None = None
    site: Any = None

    @property
    def display_name(self) -> str:
        return self.name or self.email_id or self.id


class ListInfoResponse(BaseModel):
    """Pagination info returned by list endpoints."""

    has_more_rows: bool = False
    total_count: int | None = None
    start_index: int | None = None
    row_count: int | None = None


# ==================== Response payloads ====================


class ListRequestsResponse(BaseModel):
    requests: list[RequestSummary] = Field(default_factory=list)
    list_info: ListInfoResponse | None = None


class GetRequestResponse(BaseModel):
    request: ServiceRequest


class ListNotesResponse(BaseModel):
    notes: list[Note] = Field(default_factory=list)


class NoteResponse(BaseModel):
    note: Note


class ListConversationsResponse(BaseModel):
    conversations: list[Conversation] = Field(default_factory=list)


class ListTechniciansResponse(BaseModel):
    technicians: list[Technician] = Field(default_factory=list)
    list_info: ListInfoResponse | None = None


# ==================== Tool parameters ====================


class ListRequestsParams(StrictBaseModel):
    """List requests parameters."""

    status: OptionalText = Field(None, description="Filter by status name (e.g. 'Open', 'On Hold')")
    priority: OptionalText = Field(None, description="Filter by priority name (e.g. 'Low', 'High')")
    technician: OptionalText = Field(None, description="Filter by assigned technician name")
    requester: OptionalText = Field(None, description="Filter by requester name")
    subject_contains: OptionalText = Field(None, description="Only requests whose subject contains this text")
    open_only: bool = Field(default=False, description="Exclude closed, cancelled and resolved requests")
    created_after: OptionalText = Field(None, description="Created after this date (YYYY-MM-DD)")
    created_before: OptionalText = Field(None, description="Created before this date (YYYY-MM-DD)")
    limit: int = Field(default=20, ge=1, le=100, description="Maximum number of requests to return (1-100)")
    offset: int | None = Field(None, ge=0, description="Number of requests to skip")
    sort_field: OptionalText = Field(None, description="Field to sort by (e.g. 'created_time', 'due_by_time')")
    sort_order: Literal["asc", "desc"] = Field(default="desc", description="Sort direction: \"asc\" or \"desc\"")
    response_format: ResponseFormatInput = Field(
        default=ResponseFormat.MARKDOWN, description="Output format: \"markdown\" (default) or \"json\""
    )


class GetRequestParams(StrictBaseModel):
    """Get request parameters."""

    request_id: LenientStr = Field(description="Numeric request ID")
    response_format: ResponseFormatInput = Field(
        default=ResponseFormat.MARKDOWN, description="Output format: \"markdown\" (default) or \"json\""
    )


class RequestIdParams(StrictBaseModel):
    """Parameters for operations that only need a request ID."""

    request_id: LenientStr = Field(description="Numeric request ID")


class ListTechniciansParams(StrictBaseModel):
    """List technicians parameters."""

    group: OptionalText = Field(None, description="Only technicians in this support group")
    limit: int | None = Field(None, ge=1, le=1000, description="Maximum number of technicians to return")
    response_format: ResponseFormatInput = Field(
        default=ResponseFormat.MARKDOWN, description="Output format: \"markdown\" (default) or \"json\""
    )


class CreateRequestParams(StrictBaseModel):
    """Create request parameters."""

    subject: str = Field(min_length=1, max_length=MAX_SUBJECT_LENGTH, description="Ticket subject")
    description: OptionalText = Field(None, description="Detailed description (HTML allowed)")
    requester_email: OptionalText = Field(None, description="Email of the person reporting the issue")
    priority: OptionalText = Field(None, description="Priority name (e.g. 'Low', 'Medium', 'High', 'Urgent')")
    category: OptionalText = Field(None, description="Category name")
    subcategory: OptionalText = Field(None, description="Subcategory name (valid for the category)")
    item: OptionalText = Field(None, description="Item name (valid for the subcategory)")
    group: OptionalText = Field(None, description="Support group to assign")
    technician_id: OptionalId = Field(None, description="Technician ID to assign (see sdp_list_technicians)")


class UpdateRequestParams(StrictBaseModel):
    """Update request parameters."""

    request_id: LenientStr = Field(description="Numeric request ID")
    subject: OptionalText = Field(None, description="New subject (max 250 characters)")
    description: OptionalText = Field(None, description="New description (HTML allowed)")
    priority: OptionalText = Field(None, description="New priority name")
    status: OptionalText = Field(None, description="New status name (e.g. 'Open', 'In Progress', 'On Hold')")
    category: OptionalText = Field(None, description="New category name")
    subcategory: OptionalText = Field(None, description="New subcategory name")
    group: OptionalText = Field(None, description="New support group")
    technician_id: OptionalId = Field(None, description="Technician ID to reassign to")

    def has_updates(self) -> bool:
        """Whether any field besides request_id is set."""
        return bool(self.model_dump(exclude={"request_id"}, exclude_none=True))


class CloseRequestParams(StrictBaseModel):
    """Close request parameters."""

    request_id: LenientStr = Field(description="Numeric request ID")
    closure_code: OptionalText = Field(None, description="Closure code (e.g. 'Success', 'Cancelled')")
    closure_comments: OptionalText = Field(None, description="How the issue was resolved or why it was closed")


class AddNoteParams(StrictBaseModel):
    """Add note parameters."""

    request_id: LenientStr = Field(description="Numeric request ID")
    content: str = Field(min_length=1, description="Note content (HTML allowed)")
    show_to_requester: bool | None = Field(None, description="Make the note visible to the requester")
    notify_technician: bool | None = Field(None, description="Notify the assigned technician")


class AssignRequestParams(StrictBaseModel):
    """Assign request parameters."""

    request_id: LenientStr = Field(description="Numeric request ID")
    technician_id: OptionalId = Field(None, description="Technician ID (see sdp_list_technicians)")
    group: OptionalText = Field(None, description="Support group name")

    def has_assignment(self) -> bool:
        return self.technician_id is not None or self.group is not None
