"""ServiceDesk Plus MCP Server implementation."""

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, NoReturn

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from starlette.requests import Request
from starlette.responses import JSONResponse

from .client import ServiceDeskClient
from .errors import ConnectionTestError, ServiceDeskError
from .models import (
    MAX_SUBJECT_LENGTH,
    AddNoteParams,
    AssignRequestParams,
    CloseRequestParams,
    Conversation,
    CreateRequestParams,
    GetRequestParams,
    ListParams,
    ListRequestsParams,
    ListRequestsResponse,
    ListTechniciansParams,
    Note,
    RequestIdParams,
    ResponseFormat,
    ServiceRequest,
    Technician,
    UpdateRequestParams,
)

# Configure logging
logger = logging.getLogger(__name__)

# Constants
CHARACTER_LIMIT = 25000  # Maximum response size in characters
MAX_DESCRIPTION_LENGTH = 2000  # Description/resolution length in markdown output
TRUNCATION_MARKER = "... [truncated]"


# Tool annotation constants
def _read_only_annotations(title: str) -> ToolAnnotations:
    """Create read-only tool annotations with title."""
    return ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
        title=title,
    )


def _write_annotations(title: str) -> ToolAnnotations:
    """Create write tool annotations with title."""
    return ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,
        title=title,
    )


def _idempotent_write_annotations(title: str) -> ToolAnnotations:
    """Create idempotent write tool annotations with title."""
    return ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
        title=title,
    )


def _raise_tool_error(client: ServiceDeskClient, action: str, error: ServiceDeskError) -> NoReturn:
    """Log a failed operation and raise it as a tool error with the API key redacted.

    Args:
        client: Client whose API key must be scrubbed from the message
        action: What was being attempted (e.g. "get request 123")
        error: The failure raised by the client

    Raises:
        ToolError: Always
    """
    message = client.sanitize(str(error))
    logger.error("Failed to %s: %s", action, message)
    raise ToolError(f"Failed to {action}: {message}") from error


def truncate_text(text: str, max_length: int = MAX_DESCRIPTION_LENGTH) -> str:
    """Shorten text to at most ``max_length`` characters, preferring a word boundary."""
    if len(text) <= max_length:
        return text
    end = max_length - len(TRUNCATION_MARKER)
    space = max(text.rfind(" ", 0, end), text.rfind("\n", 0, end))
    if space > 0:
        end = space
    return f"{text[:end]}{TRUNCATION_MARKER}"


def _truncate_json_response(content: str, obj: dict[str, Any], limit: int) -> str:
    """Shrink the "items" array until the JSON document fits, keeping it valid."""
    meta = obj.setdefault("_meta", {})
    meta.update(
        {
            "truncated": True,
            "original_size": len(content),
            "limit": limit,
            "note": "Response truncated; reduce limit or add filters.",
        }
    )
    items = obj.get("items")
    json_str = json.dumps(obj, indent=2, default=str)
    while isinstance(items, list) and items and len(json_str) > limit:
        items.pop()
        obj["count"] = len(items)
        json_str = json.dumps(obj, indent=2, default=str)
    return json_str


def truncate_response(content: str, limit: int = CHARACTER_LIMIT) -> str:
    """Truncate response with helpful message if over limit.

    For JSON responses, preserves validity by shrinking arrays and adding metadata.
    For markdown/text responses, appends a truncation warning.

    Args:
        content: The content to potentially truncate
        limit: Maximum character limit (default: CHARACTER_LIMIT)

    Returns:
        Original content if under limit, truncated content with warning if over
    """
    if len(content) <= limit:
        return content

    if content.lstrip().startswith("{"):
        try:
            obj = json.loads(content)
        except json.JSONDecodeError as e:
            logger.debug("Failed to parse/truncate JSON response: %s", e)
        else:
            if isinstance(obj, dict):
                return _truncate_json_response(content, obj, limit)

    truncated = content[:limit]
    truncated += "\n\n⚠️ **Response Truncated**\n"
    truncated += f"Response size ({len(content)} chars) exceeds limit ({limit} chars).\n"
    truncated += "Use limit/offset or add filters to see more results."
    return truncated


def _describe_filters(params: ListRequestsParams) -> str:
    filter_parts = {
        "status": params.status,
        "priority": params.priority,
        "technician": params.technician,
        "requester": params.requester,
        "subject": params.subject_contains,
        "created_after": params.created_after,
        "created_before": params.created_before,
    }
    filters = [f"{k}='{v}'" for k, v in filter_parts.items() if v]
    if params.open_only:
        filters.append("open only")
    return ", ".join(filters) if filters else "All requests"


def _format_requests_markdown(page: ListRequestsResponse, query_info: str) -> str:
    """Format a page of request summaries as markdown.

    Args:
        page: Requests and pagination info to format
        query_info: Description of the filters used

    Returns:
        Markdown-formatted string
    """
    requests = page.requests
    lines = [f"# Requests: {query_info}", ""]
    if not requests:
        lines.append("No tickets found matching the criteria.")
        return "\n".join(lines)

    total = page.list_info.total_count if page.list_info else None
    found = f"Found {len(requests)} ticket(s)"
    if total is not None and total > len(requests):
        found += f" (of {total} total)"
    lines.append(found)
    lines.append("")
    for req in requests:
        lines.append(f"## #{req.id} - {req.display_subject}")
        lines.append(f"- **Status**: {req.display_status}")
        lines.append(f"- **Priority**: {req.display_priority}")
        lines.append(f"- **Assignee**: {req.display_technician}")
        lines.append(f"- **Requester**: {req.display_requester}")
        if req.display_created:
            lines.append(f"- **Created**: {req.display_created}")
        lines.append("")
    return "\n".join(lines)


def _format_requests_json(page: ListRequestsResponse, limit: int, offset: int) -> str:
    """Format a page of request summaries as JSON with pagination metadata.

    ``has_more`` comes from SDP's ``has_more_rows``; a full page is assumed
    to have more only when SDP sent no pagination info.
    """
    requests = page.requests
    if page.list_info is not None:
        has_more = page.list_info.has_more_rows
        total = page.list_info.total_count
    else:
        has_more = len(requests) == limit
        total = None
    response: dict[str, Any] = {
        "items": [req.model_dump(exclude_none=True) for req in requests],
        "count": len(requests),
        "total": total,
        "offset": offset,
        "limit": limit,
        "has_more": has_more,
        "next_offset": offset + limit if has_more else None,
        "_meta": {},
    }
    return json.dumps(response, indent=2, default=str)


def _format_request_detail_markdown(request: ServiceRequest, web_url: str | None = None) -> str:
    """Format a single request with full details as markdown."""
    lines = [f"# Ticket #{request.id}: {request.display_subject}", ""]
    lines.append(f"**Status**: {request.display_status}")
    lines.append(f"**Priority**: {request.display_priority}")
    if request.urgency and request.urgency.name:
        lines.append(f"**Urgency**: {request.urgency.name}")
    if request.impact and request.impact.name:
        lines.append(f"**Impact**: {request.impact.name}")
    if request.category_path != "Uncategorized":
        lines.append(f"**Category**: {request.category_path}")
    lines.append(f"**Requester**: {request.display_requester}")
    lines.append(f"**Assigned to**: {request.display_technician}")
    if request.display_group:
        lines.append(f"**Group**: {request.display_group}")
    if web_url:
        lines.append(f"**Link**: {web_url}")
    lines.append("")

    timestamps = [
        ("Created", request.created_time),
        ("Last Updated", request.last_updated_time),
        ("Due By", request.due_by_time),
    ]
    shown = [(label, ts.display()) for label, ts in timestamps if ts and ts.display()]
    if shown:
        lines.append("## Timestamps")
        lines.append("")
        lines.extend(f"- **{label}**: {value}" for label, value in shown)
        lines.append("")

    if request.is_overdue:
        lines.append("**[OVERDUE]**")
        lines.append("")

    if request.description:
        lines.append("## Description")
        lines.append("")
        lines.append(truncate_text(request.description))
        lines.append("")

    resolution = request.resolution
    if resolution and resolution.content:
        lines.append("## Resolution")
        lines.append("")
        lines.append(truncate_text(resolution.content))
        if resolution.submitted_by and resolution.submitted_by.name:
            lines.append(f"- **Submitted by**: {resolution.submitted_by.name}")
        if resolution.submitted_on and resolution.submitted_on.display():
            lines.append(f"- **Submitted on**: {resolution.submitted_on.display()}")
        lines.append("")

    lines.extend(_closure_lines(request, heading="## Closure Info"))
    return "\n".join(lines).rstrip() + "\n"


def _closure_lines(request: ServiceRequest, heading: str | None = None) -> list[str]:
    closure = request.closure_info
    if closure is None:
        return []
    lines = [heading, ""] if heading else []
    if closure.closure_code and closure.closure_code.name:
        lines.append(f"- **Closure Code**: {closure.closure_code.name}")
    if closure.closure_comments:
        lines.append(f"- **Comments**: {closure.closure_comments}")
    if closure.closed_by and closure.closed_by.name:
        lines.append(f"- **Closed by**: {closure.closed_by.name}")
    if closure.closed_time and closure.closed_time.display():
        lines.append(f"- **Closed at**: {closure.closed_time.display()}")
    return lines


def _format_technicians_markdown(technicians: list[Technician]) -> str:
    lines = ["# Technician List", ""]
    if not technicians:
        lines.append("No technicians found.")
        return "\n".join(lines)

    lines.append(f"Found {len(technicians)} technician(s)")
    lines.append("")
    for tech in technicians:
        line = f"- **{tech.display_name}** (ID: {tech.id})"
        if tech.email_id:
            line += f" - {tech.email_id}"
        if tech.is_active is False:
            line += " [INACTIVE]"
        lines.append(line)
    return "\n".join(lines)


def _format_technicians_json(technicians: list[Technician]) -> str:
    response: dict[str, Any] = {
        "items": [tech.model_dump(exclude_none=True) for tech in technicians],
        "count": len(technicians),
        "_meta": {},
    }
    return json.dumps(response, indent=2, default=str)


def _format_notes_markdown(request_id: str, notes: list[Note]) -> str:
    lines = [f"# Notes on Ticket #{request_id}", ""]
    if not notes:
        lines.append("No notes found.")
        return "\n".join(lines)

    for i, note in enumerate(notes, 1):
        visibility = "Visible to requester" if note.show_to_requester else "Internal"
        lines.append(f"## Note {i} (ID: {note.id})")
        lines.append(f"- **By**: {note.display_created_by}")
        if note.created_time and note.created_time.display():
            lines.append(f"- **Created**: {note.created_time.display()}")
        lines.append(f"- **Visibility**: {visibility}")
        lines.append("")
        lines.append(truncate_text(note.display_content))
        lines.append("")
    return "\n".join(lines)


def _format_conversations_markdown(request_id: str, conversations: list[Conversation]) -> str:
    lines = [f"# Conversations on Ticket #{request_id}", ""]
    if not conversations:
        lines.append("No conversations found.")
        return "\n".join(lines)

    for conv in conversations:
        title = conv.subject or conv.conversation_type or "Conversation"
        lines.append(f"## {title} (ID: {conv.id})")
        lines.append(f"- **From**: {conv.display_from}")
        lines.append(f"- **Direction**: {conv.direction}")
        if conv.sent_time and conv.sent_time.display():
            lines.append(f"- **Sent**: {conv.sent_time.display()}")
        lines.append("")
        lines.append(truncate_text(conv.display_content))
        lines.append("")
    return "\n".join(lines)


def _format_create_result(request: ServiceRequest) -> str:
    lines = [f"Successfully created ticket #{request.id}: {request.display_subject}", ""]
    lines.append(f"Status: {request.display_status}")
    lines.append(f"Priority: {request.display_priority}")
    lines.append(f"Assigned to: {request.display_technician}")
    if request.display_group:
        lines.append(f"Group: {request.display_group}")
    lines.append(f"Requester: {request.display_requester}")
    if request.display_created:
        lines.append(f"Created: {request.display_created}")
    lines.append("")
    lines.append("Next steps:")
    lines.append(f'  - View details: use sdp_get_request with request_id="{request.id}"')
    lines.append(f'  - Add notes: use sdp_add_note with request_id="{request.id}"')
    return "\n".join(lines)


def _format_update_result(request: ServiceRequest) -> str:
    lines = [f"Successfully updated ticket #{request.id}: {request.display_subject}", "", "Current state:"]
    lines.append(f"  Status: {request.display_status}")
    lines.append(f"  Priority: {request.display_priority}")
    lines.append(f"  Assigned to: {request.display_technician}")
    if request.display_group:
        lines.append(f"  Group: {request.display_group}")
    if request.category_path != "Uncategorized":
        lines.append(f"  Category: {request.category_path}")
    if request.last_updated_time and request.last_updated_time.display():
        lines.append("")
        lines.append(f"Last updated: {request.last_updated_time.display()}")
    return "\n".join(lines)


def _format_close_result(request: ServiceRequest) -> str:
    lines = [f"Successfully closed ticket #{request.id}: {request.display_subject}", ""]
    lines.append(f"Status: {request.display_status}")
    lines.extend(_closure_lines(request))
    return "\n".join(lines)


def _format_add_note_result(request_id: str, note: Note) -> str:
    visibility = "Visible to requester" if note.show_to_requester else "Internal (technicians only)"
    lines = [f"Successfully added note #{note.id} to ticket #{request_id}.", ""]
    lines.append(f"Visibility: {visibility}")
    if note.created_time and note.created_time.display():
        lines.append(f"Created: {note.created_time.display()}")
    if note.notify_technician:
        lines.append("Technician notification: Sent")
    return "\n".join(lines)


def _format_assign_result(request: ServiceRequest, params: AssignRequestParams) -> str:
    lines = [f"Successfully assigned ticket #{request.id}: {request.display_subject}", ""]
    if params.technician_id is not None:
        lines.append(f"Technician: {request.display_technician}")
    if params.group is not None and request.display_group:
        lines.append(f"Group: {request.display_group}")
    if request.last_updated_time and request.last_updated_time.display():
        lines.append("")
        lines.append(f"Updated: {request.last_updated_time.display()}")
    return "\n".join(lines)


class ServiceDeskMCPServer:
    """ServiceDesk Plus MCP Server with proper client lifecycle management."""

    def __init__(self, host: str = "127.0.0.1", port: int = 8000) -> None:
        """Initialize the server.

        Args:
            host: Host to bind for HTTP transport (default: 127.0.0.1)
            port: Port to bind for HTTP transport (default: 8000)
        """
        self.client: ServiceDeskClient | None = None
        self.mcp = FastMCP(
            "servicedesk_mcp",
            instructions=(
                "Access to ServiceDesk Plus tickets. Use sdp_list_requests to find tickets, "
                "sdp_get_request for details and sdp_list_technicians to see available assignees. "
                "Create tickets with sdp_create_request, modify with sdp_update_request, close with "
                "sdp_close_request, add notes with sdp_add_note and assign with sdp_assign_request. "
                "Start with sdp_ping to verify connectivity."
            ),
            host=host,
            port=port,
            lifespan=self._create_lifespan(),
        )
        self._setup_tools()

    def _create_lifespan(self) -> Any:
        """Create the lifespan context manager for the server."""

        @asynccontextmanager
        async def lifespan(_app: FastMCP) -> AsyncIterator[None]:
            """Initialize resources on startup and cleanup on shutdown."""
            await self.initialize()
            try:
                yield
            finally:
                if self.client is not None:
                    self.client.session.close()
                    self.client = None
                    logger.info("ServiceDesk Plus client cleaned up")

        return lifespan

    def get_client(self) -> ServiceDeskClient:
        """Get the ServiceDesk Plus client, ensuring it's initialized."""
        if not self.client:
            raise RuntimeError("ServiceDesk Plus client not initialized")
        return self.client

    async def initialize(self) -> None:
        """Initialize the client on server startup.

        A failed connectivity probe is logged but does not stop the server,
        so it can recover once the instance becomes reachable.
        """
        # Load environment variables from .env files
        cwd_env = Path.cwd() / ".env"
        if cwd_env.exists():
            load_dotenv(cwd_env)
            logger.info("Loaded environment from %s", cwd_env)

        envrc_path = Path.cwd() / ".envrc"
        if envrc_path.exists() and not os.environ.get("SDP_BASE_URL"):
            logger.warning(
                "Found .envrc but environment variables not loaded. Consider using direnv or creating a .env file"
            )

        # Also support loading from parent directories (for when running from subdirs)
        load_dotenv()

        try:
            self.client = ServiceDeskClient()
            logger.info("ServiceDesk Plus client initialized for %s", self.client.base_url)
        except ServiceDeskError:
            logger.exception("Failed to initialize ServiceDesk Plus client")
            raise

        logger.info("Testing connection to ServiceDesk Plus...")
        try:
            self.client.test_connection()
        except ConnectionTestError as e:
            logger.error("%s", self.client.sanitize(str(e)))
            logger.warning(
                "Server will start but may not be able to reach ServiceDesk Plus. "
                "Check configuration and network connectivity."
            )

    def _setup_tools(self) -> None:
        """Register all tools with the MCP server."""
        self._setup_system_tools()
        self._setup_request_tools()
        self._setup_write_tools()

    def _setup_system_tools(self) -> None:
        """Register connectivity and technician tools."""

        @self.mcp.tool(annotations=_read_only_annotations("Ping"))
        def sdp_ping() -> str:
            """Test connectivity to the MCP server.

            Returns:
                str: "pong" if the server is running
            """
            logger.debug("ping tool called")
            return "pong"

        @self.mcp.tool(annotations=_read_only_annotations("List Technicians"))
        def sdp_list_technicians(params: ListTechniciansParams) -> str:
            """List technicians available for ticket assignment.

            Args:
                params (ListTechniciansParams): Validated parameters containing:
                    - group (str | None): Only technicians in this support group
                    - limit (int | None): Maximum number of technicians
                    - response_format (ResponseFormat): Output format (default: "markdown")

            Returns:
                str: Technician IDs, names and emails. Use the ID with
                sdp_assign_request or sdp_create_request.

            Examples:
                - Use when: "Who can I assign this to?" -> no parameters
                - Use when: "Technicians in Network team" -> group="Network"
            """
            client = self.get_client()
            try:
                technicians = client.list_technicians(params.group, params.limit)
            except ServiceDeskError as e:
                _raise_tool_error(client, "list technicians", e)

            if params.response_format == ResponseFormat.JSON:
                result = _format_technicians_json(technicians)
            else:
                result = _format_technicians_markdown(technicians)
            return truncate_response(result)

    def _setup_request_tools(self) -> None:
        """Register read-only request tools."""

        @self.mcp.tool(annotations=_read_only_annotations("List Requests"))
        def sdp_list_requests(params: ListRequestsParams) -> str:
            """List service desk tickets with optional filters and pagination.

            Args:
                params (ListRequestsParams): Validated parameters containing:
                    - status (str | None): Status name (e.g. "Open")
                    - priority (str | None): Priority name (e.g. "High")
                    - technician (str | None): Assigned technician name
                    - requester (str | None): Requester name
                    - subject_contains (str | None): Text the subject must contain
                    - open_only (bool): Exclude closed statuses (default: False)
                    - created_after / created_before (str | None): Dates as YYYY-MM-DD
                    - limit (int): Results to return, 1-100 (default: 20)
                    - offset (int | None): Results to skip
                    - sort_field (str | None): Field to sort by (e.g. "created_time")
                    - sort_order (str): "asc" or "desc" (default: "desc")
                    - response_format (ResponseFormat): Output format (default: "markdown")

            Returns:
                str: Markdown list of tickets (ID, subject, status, priority,
                assignee, requester) or JSON with "items", "count", "total",
                "offset", "limit", "has_more" and "next_offset".

            Examples:
                - Use when: "Show open high priority tickets" -> status="Open", priority="High"
                - Use when: "Tickets about VPN" -> subject_contains="VPN"
                - Don't use when: You have the ticket ID (use sdp_get_request)

            Error Handling:
                - Returns "No tickets found matching the criteria." if nothing matches
                - May be truncated if results exceed 25,000 characters (use limit/offset)
            """
            client = self.get_client()

            list_params = ListParams()
            if params.status:
                list_params = list_params.with_status(params.status)
            if params.priority:
                list_params = list_params.with_priority(params.priority)
            if params.technician:
                list_params = list_params.with_technician(params.technician)
            if params.requester:
                list_params = list_params.with_requester(params.requester)
            if params.subject_contains:
                list_params = list_params.with_subject_contains(params.subject_contains)
            if params.open_only:
                list_params = list_params.with_open_only(client.config.closed_statuses)
            if params.created_after:
                list_params = list_params.with_created_after(params.created_after)
            if params.created_before:
                list_params = list_params.with_created_before(params.created_before)
            if params.sort_field:
                list_params = list_params.with_sort(params.sort_field, params.sort_order)
            list_params = list_params.with_limit(params.limit).with_total_count()
            if params.offset is not None:
                list_params = list_params.with_offset(params.offset)

            try:
                page = client.list_requests_page(list_params)
            except ServiceDeskError as e:
                _raise_tool_error(client, "list requests", e)

            if params.response_format == ResponseFormat.JSON:
                result = _format_requests_json(page, params.limit, params.offset or 0)
            else:
                result = _format_requests_markdown(page, _describe_filters(params))
            return truncate_response(result)

        @self.mcp.tool(annotations=_read_only_annotations("Get Request Details"))
        def sdp_get_request(params: GetRequestParams) -> str:
            """Get full details of a single ticket.

            Args:
                params (GetRequestParams): Validated parameters containing:
                    - request_id (str): Numeric ticket ID (required)
                    - response_format (ResponseFormat): Output format (default: "markdown")

            Returns:
                str: Status, priority, category, people, timestamps, description,
                resolution and closure details, plus a link to the web UI.

            Error Handling:
                - Returns "validation error" if request_id is not numeric
                - Returns "request not found: <id>" if the ticket does not exist
            """
            client = self.get_client()
            try:
                request = client.get_request(params.request_id)
            except ServiceDeskError as e:
                _raise_tool_error(client, f"get request {params.request_id[:50]}", e)

            if params.response_format == ResponseFormat.JSON:
                result = json.dumps(request.model_dump(exclude_none=True), indent=2, default=str)
            else:
                result = _format_request_detail_markdown(request, client.request_web_url(request.id))
            return truncate_response(result)

        @self.mcp.tool(annotations=_read_only_annotations("List Request Notes"))
        def sdp_list_request_notes(params: RequestIdParams) -> str:
            """List the notes of a ticket, including their full content.

            Notes whose content is not part of the list response are fetched
            one by one; a note that cannot be fetched is shown without content.
            """
            client = self.get_client()
            try:
                notes = client.list_notes_with_content(params.request_id)
            except ServiceDeskError as e:
                _raise_tool_error(client, f"list notes for request {params.request_id[:50]}", e)
            return truncate_response(_format_notes_markdown(params.request_id, notes))

        @self.mcp.tool(annotations=_read_only_annotations("List Request Conversations"))
        def sdp_list_request_conversations(params: RequestIdParams) -> str:
            """List the email conversations of a ticket, including message bodies."""
            client = self.get_client()
            try:
                conversations = client.list_conversations_with_content(params.request_id)
            except ServiceDeskError as e:
                _raise_tool_error(client, f"list conversations for request {params.request_id[:50]}", e)
            return truncate_response(_format_conversations_markdown(params.request_id, conversations))

    def _setup_write_tools(self) -> None:
        """Register tools that modify tickets."""

        @self.mcp.tool(annotations=_write_annotations("Create Request"))
        def sdp_create_request(params: CreateRequestParams) -> str:
            """Create a new service desk ticket.

            Args:
                params (CreateRequestParams): Validated parameters containing:
                    - subject (str): Ticket subject, max 250 characters (required)
                    - description (str | None): Details, HTML allowed
                    - requester_email (str | None): Reporter's email
                    - priority, category, subcategory, item, group (str | None): Names
                    - technician_id (str | None): Technician to assign

            Returns:
                str: Confirmation with the new ticket ID and next steps.
            """
            client = self.get_client()
            try:
                request = client.create_request(params)
            except ServiceDeskError as e:
                _raise_tool_error(client, "create request", e)
            return _format_create_result(request)

        @self.mcp.tool(annotations=_idempotent_write_annotations("Update Request"))
        def sdp_update_request(params: UpdateRequestParams) -> str:
            """Update a ticket's subject, description, priority, status, category, group or technician.

            At least one field besides request_id must be provided.
            """
            if not params.has_updates():
                raise ToolError(
                    "At least one field must be provided for update (subject, description, priority, "
                    "status, category, subcategory, group, or technician_id)."
                )
            if params.subject is not None and len(params.subject) > MAX_SUBJECT_LENGTH:
                raise ToolError(
                    f"Subject exceeds maximum length of {MAX_SUBJECT_LENGTH} characters "
                    f"(got {len(params.subject)} characters)."
                )

            client = self.get_client()
            try:
                request = client.update_request(params.request_id, params)
            except ServiceDeskError as e:
                _raise_tool_error(client, f"update request {params.request_id[:50]}", e)
            return _format_update_result(request)

        @self.mcp.tool(annotations=_idempotent_write_annotations("Close Request"))
        def sdp_close_request(params: CloseRequestParams) -> str:
            """Close a ticket, optionally with a closure code and comments."""
            client = self.get_client()
            try:
                request = client.close_request(params.request_id, params.closure_code, params.closure_comments)
            except ServiceDeskError as e:
                _raise_tool_error(client, f"close request {params.request_id[:50]}", e)
            return _format_close_result(request)

        @self.mcp.tool(annotations=_write_annotations("Add Note"))
        def sdp_add_note(params: AddNoteParams) -> str:
            """Add a note to a ticket.

            Notes are internal (technicians only) unless show_to_requester is true.
            """
            client = self.get_client()
            try:
                note = client.add_note(
                    params.request_id, params.content, params.show_to_requester, params.notify_technician
                )
            except ServiceDeskError as e:
                _raise_tool_error(client, f"add note to request {params.request_id[:50]}", e)
            return _format_add_note_result(params.request_id, note)

        @self.mcp.tool(annotations=_idempotent_write_annotations("Assign Request"))
        def sdp_assign_request(params: AssignRequestParams) -> str:
            """Assign a ticket to a technician and/or a support group.

            At least one of technician_id or group must be provided.
            """
            if not params.has_assignment():
                raise ToolError("At least one of technician_id or group must be provided for assignment.")

            client = self.get_client()
            try:
                request = client.assign_request(params.request_id, params.technician_id, params.group)
            except ServiceDeskError as e:
                _raise_tool_error(client, f"assign request {params.request_id[:50]}", e)
            return _format_assign_result(request, params)


# Create the server instance with host/port from environment
# This allows HTTP transport to bind to the configured address
_host = os.getenv("MCP_HOST", "127.0.0.1")
_port = int(os.getenv("MCP_PORT", "8000"))
server = ServiceDeskMCPServer(host=_host, port=_port)

# Export the MCP server instance
mcp = server.mcp


# Health check endpoint for HTTP transport
@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:  # noqa: ARG001
    """Health check endpoint for HTTP transport.

    Args:
        request: The incoming HTTP request (required by FastMCP).

    Returns:
        JSONResponse with health status.
    """
    return JSONResponse({"status": "healthy", "transport": "http"})


def _configure_logging() -> None:
    """Configure logging from LOG_LEVEL environment variable.

    Reads LOG_LEVEL environment variable (default: INFO) and configures
    the root logger. Valid values: DEBUG, INFO, WARNING, ERROR, CRITICAL.
    Log output goes to stderr; stdout carries the stdio transport.
    """
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

    if log_level_str not in valid_levels:
        invalid_level = log_level_str
        log_level_str = "INFO"
        logger.warning(
            "Invalid LOG_LEVEL '%s', defaulting to INFO. Valid values: %s",
            invalid_level,
            ", ".join(sorted(valid_levels)),
        )

    log_level = getattr(logging, log_level_str)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Add handler if none exists
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root_logger.addHandler(handler)


def main() -> None:
    """Main entry point for the server."""
    _configure_logging()
    mcp.run()
