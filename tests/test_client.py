"""Tests for the ServiceDesk Plus client."""

import json
from unittest.mock import Mock, call, patch

import pytest
import requests

from mcp_servicedesk.client import (
    FORM_CONTENT_TYPE,
    SDP_ACCEPT_HEADER,
    ServiceDeskClient,
    normalize_base_url,
    validate_id,
    with_retry,
)
from mcp_servicedesk.errors import (
    AuthenticationError,
    ConnectionTestError,
    HTTPStatusError,
    InputValidationError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
    SdpApiError,
    SerializationError,
    ServiceUnavailableError,
    TransportError,
)
from mcp_servicedesk.models import CreateRequestParams, ListParams, SearchCriterion, UpdateRequestParams
from tests.helpers import API_KEY, BASE_URL, make_response, sdp_failure, sdp_ok

REQUEST_DATA = {
    "id": "101",
    "subject": "Printer on fire",
    "status": {"id": "2", "name": "Open"},
    "priority": {"id": "3", "name": "High"},
    "technician": {"id": "7", "name": "Bob"},
    "requester": {"id": "8", "name": "Alice"},
    "created_time": {"value": "1700000000000", "display_value": "Nov 14, 2023 10:13 PM"},
}


def _sent(session: Mock) -> dict:
    """Keyword arguments of the last session.request call."""
    return session.request.call_args.kwargs


def _input_data(kwargs: dict) -> dict:
    source = kwargs.get("params") or kwargs.get("data")
    return json.loads(source["input_data"])


# ==================== URL and id helpers ====================


@pytest.mark.parametrize(
    "url",
    [
        "https://sdp.example.com",
        "https://sdp.example.com/",
        "https://sdp.example.com/api",
        "https://sdp.example.com/api/v3",
        "https://sdp.example.com/api/v3/",
    ],
)
def test_normalize_base_url(url):
    normalized = normalize_base_url(url)
    assert normalized == "https://sdp.example.com/api/v3"
    assert normalize_base_url(normalized) == normalized


@pytest.mark.parametrize("value", ["1", "0042", "1234567890"])
def test_validate_id_accepts_digits(value):
    validate_id(value, "request_id")


@pytest.mark.parametrize("value", ["", "12a", "-1", "1 ", "../1", "١٢", "1.5"])
def test_validate_id_rejects(value):
    with pytest.raises(InputValidationError, match="request_id must be a numeric string"):
        validate_id(value, "request_id")


def test_validate_id_truncates_echo():
    with pytest.raises(InputValidationError) as exc_info:
        validate_id("x" * 200, "request_id")
    assert "x" * 51 not in str(exc_info.value)
    assert "x" * 50 in str(exc_info.value)


# ==================== Request encoding ====================


def test_get_sends_input_data_as_query_parameter(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(requests=[]))

    sdp_client.list_requests(ListParams().with_limit(5))

    method, url = session.request.call_args.args
    kwargs = _sent(session)
    assert method == "GET"
    assert url == f"{BASE_URL}/api/v3/requests"
    assert "data" not in kwargs
    assert _input_data(kwargs) == {"list_info": {"row_count": 5}}
    assert kwargs["headers"]["authtoken"] == API_KEY
    assert kwargs["headers"]["Accept"] == SDP_ACCEPT_HEADER
    assert kwargs["allow_redirects"] is False
    assert kwargs["timeout"] == 30.0


def test_post_sends_input_data_as_form_field(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(request=REQUEST_DATA))

    sdp_client.create_request(
        CreateRequestParams(subject="Printer on fire", priority="High", requester_email="a@example.com")
    )

    method, url = session.request.call_args.args
    kwargs = _sent(session)
    assert method == "POST"
    assert url == f"{BASE_URL}/api/v3/requests"
    assert "params" not in kwargs
    assert kwargs["headers"]["Content-Type"] == FORM_CONTENT_TYPE
    assert _input_data(kwargs) == {
        "request": {
            "subject": "Printer on fire",
            "priority": {"name": "High"},
            "requester": {"email_id": "a@example.com"},
        }
    }


# ==================== Status classification ====================


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (404, NotFoundError),
        (400, HTTPStatusError),
    ],
)
def test_http_status_classification(sdp_client, session, status, expected):
    session.request.return_value = make_response(status_code=status, text="nope")
    with pytest.raises(expected):
        sdp_client.list_requests()
    assert session.request.call_count == 1


def test_error_body_is_redacted_and_capped(sdp_client, session):
    session.request.return_value = make_response(status_code=400, text=f"bad key {API_KEY} " + "y" * 1000)

    with pytest.raises(HTTPStatusError) as exc_info:
        sdp_client.list_requests()

    assert API_KEY not in str(exc_info.value)
    assert exc_info.value.body.endswith("...[truncated]")
    assert len(exc_info.value.body) == 500 + len("...[truncated]")


def test_sdp_envelope_error(sdp_client, session):
    session.request.return_value = make_response(body=sdp_failure(4000, "Invalid input"))
    with pytest.raises(SdpApiError, match="Invalid input"):
        sdp_client.list_requests()


def test_envelope_not_found_carries_request_id(sdp_client, session):
    session.request.return_value = make_response(body=sdp_failure(4005))
    with pytest.raises(NotFoundError, match="request not found: 999"):
        sdp_client.get_request("999")


def test_invalid_json_is_serialization_error(sdp_client, session):
    session.request.return_value = make_response(text="<html>login</html>")
    with pytest.raises(SerializationError):
        sdp_client.list_requests()


def test_invalid_id_makes_no_network_call(sdp_client, session):
    with pytest.raises(InputValidationError):
        sdp_client.get_request("1/../../admin")
    session.request.assert_not_called()


# ==================== Retry ====================


def test_rate_limit_retries_with_doubling_backoff(sdp_client, session):
    session.request.return_value = make_response(status_code=429)

    with patch("mcp_servicedesk.client.time.sleep") as mock_sleep, pytest.raises(RateLimitedError):
        sdp_client.list_requests()

    assert session.request.call_count == 3
    assert mock_sleep.call_args_list == [call(0.1), call(0.2)]


def test_rate_limit_honors_retry_after(sdp_client, session):
    session.request.side_effect = [
        make_response(status_code=429, headers={"retry-after": "2"}),
        make_response(body=sdp_ok(requests=[])),
    ]

    with patch("mcp_servicedesk.client.time.sleep") as mock_sleep:
        assert sdp_client.list_requests() == []

    mock_sleep.assert_called_once_with(2.0)


def test_service_unavailable_uses_fixed_delay(sdp_client, session):
    session.request.return_value = make_response(status_code=503)

    with patch("mcp_servicedesk.client.time.sleep") as mock_sleep, pytest.raises(ServiceUnavailableError):
        sdp_client.list_requests()

    assert session.request.call_count == 3
    assert mock_sleep.call_args_list == [call(0.5), call(0.5)]


def test_timeout_is_retried_then_raised(sdp_client, session):
    session.request.side_effect = requests.exceptions.ReadTimeout("read timed out")

    with patch("mcp_servicedesk.client.time.sleep") as mock_sleep, pytest.raises(RequestTimeoutError):
        sdp_client.list_requests()

    assert session.request.call_count == 3
    assert mock_sleep.call_args_list == [call(0.1), call(0.1)]


def test_connection_error_recovers(sdp_client, session):
    session.request.side_effect = [
        requests.exceptions.ConnectionError("refused"),
        make_response(body=sdp_ok(requests=[REQUEST_DATA])),
    ]

    with patch("mcp_servicedesk.client.time.sleep"):
        result = sdp_client.list_requests()

    assert [r.id for r in result] == ["101"]
    assert session.request.call_count == 2


def test_non_retryable_error_is_not_retried(sdp_client, session):
    session.request.return_value = make_response(status_code=401)

    with patch("mcp_servicedesk.client.time.sleep") as mock_sleep, pytest.raises(AuthenticationError):
        sdp_client.list_requests()

    assert session.request.call_count == 1
    mock_sleep.assert_not_called()


def test_rate_limited_twice_then_success_on_last_attempt():
    func = Mock(side_effect=[RateLimitedError(), RateLimitedError(), "ok"])

    with patch("mcp_servicedesk.client.time.sleep") as mock_sleep:
        assert with_retry("GET /requests", func) == "ok"

    assert func.call_count == 3
    assert mock_sleep.call_args_list == [call(0.1), call(0.2)]


def test_validation_error_is_attempted_once():
    func = Mock(side_effect=InputValidationError("request_id must be a numeric string"))

    with patch("mcp_servicedesk.client.time.sleep") as mock_sleep, pytest.raises(InputValidationError):
        with_retry("GET /requests/x", func)

    assert func.call_count == 1
    mock_sleep.assert_not_called()


def test_with_retry_returns_first_success():
    func = Mock(side_effect=[ServiceUnavailableError(502), "ok"])
    with patch("mcp_servicedesk.client.time.sleep"):
        assert with_retry("op", func) == "ok"
    assert func.call_count == 2


# ==================== End to end ====================


def test_list_requests_filters_end_to_end(sdp_client, session):
    second = {**REQUEST_DATA, "id": 102, "subject": "Toner low"}
    session.request.return_value = make_response(body=sdp_ok(requests=[REQUEST_DATA, second]))

    result = sdp_client.list_requests(ListParams().with_status("Open").with_priority("High").with_limit(10))

    assert [r.id for r in result] == ["101", "102"]
    assert result[0].display_status == "Open"
    assert session.request.call_count == 1
    list_info = _input_data(_sent(session))["list_info"]
    assert list_info["row_count"] == 10
    assert list_info["search_criteria"][0]["logical_operator"] == "AND"
    assert "logical_operator" not in list_info["search_criteria"][1]


def test_list_requests_page_keeps_pagination_info(sdp_client, session):
    session.request.return_value = make_response(
        body=sdp_ok(requests=[REQUEST_DATA], list_info={"has_more_rows": True, "total_count": 57, "row_count": 1})
    )

    page = sdp_client.list_requests_page(
        ListParams().with_limit(1).with_sort("created_time", "asc").with_total_count()
    )

    assert [r.id for r in page.requests] == ["101"]
    assert page.list_info is not None
    assert page.list_info.has_more_rows is True
    assert page.list_info.total_count == 57
    assert _input_data(_sent(session)) == {
        "list_info": {"row_count": 1, "sort_field": "created_time", "sort_order": "asc", "get_total_count": True}
    }


def test_explicit_and_combinator_is_sent(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(requests=[]))

    sdp_client.list_requests(
        ListParams()
        .with_criterion(SearchCriterion.contains("subject", "VPN").and_())
        .with_criterion(SearchCriterion.equals("status.name", "Open").and_())
    )

    criteria = _input_data(_sent(session))["list_info"]["search_criteria"]
    assert criteria[0]["logical_operator"] == "AND"
    assert "logical_operator" not in criteria[1]


def test_missing_note_is_reported_as_note(sdp_client, session):
    session.request.return_value = make_response(body=sdp_failure(4005))

    with pytest.raises(NotFoundError) as exc_info:
        sdp_client.get_note("101", "3")

    assert str(exc_info.value) == "note not found: 3 on request 101"
    assert exc_info.value.resource == "note"


def test_get_request(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(request={**REQUEST_DATA, "description": "Smoke"}))

    request = sdp_client.get_request("101")

    assert request.description == "Smoke"
    assert session.request.call_args.args[1] == f"{BASE_URL}/api/v3/requests/101"
    assert "params" not in _sent(session)


def test_update_request_sends_only_set_fields(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(request=REQUEST_DATA))

    sdp_client.update_request("101", UpdateRequestParams(request_id="101", status="On Hold", technician_id="7"))

    assert session.request.call_args.args[0] == "PUT"
    assert _input_data(_sent(session)) == {"request": {"status": {"name": "On Hold"}, "technician": {"id": "7"}}}


def test_close_request_without_details(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(request=REQUEST_DATA))

    sdp_client.close_request("101")

    assert session.request.call_args.args[1] == f"{BASE_URL}/api/v3/requests/101/close"
    assert _input_data(_sent(session)) == {"request": {}}


def test_close_request_with_details(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(request=REQUEST_DATA))

    sdp_client.close_request("101", closure_code="Success", comments="Replaced toner")

    assert _input_data(_sent(session)) == {
        "request": {"closure_info": {"closure_code": {"name": "Success"}, "closure_comments": "Replaced toner"}}
    }


def test_add_note(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(note={"id": 5, "description": "Checked"}))

    note = sdp_client.add_note("101", "Checked", show_to_requester=True)

    assert note.id == "5"
    assert session.request.call_args.args[0] == "POST"
    assert _input_data(_sent(session)) == {"note": {"description": "Checked", "show_to_requester": True}}


def test_assign_request_validates_technician_id(sdp_client, session):
    with pytest.raises(InputValidationError, match="technician_id"):
        sdp_client.assign_request("101", technician_id="bob")
    session.request.assert_not_called()


def test_list_technicians_group_filter(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(technicians=[{"id": 7, "name": "Bob"}]))

    technicians = sdp_client.list_technicians(group="Network", limit=50)

    assert technicians[0].id == "7"
    assert _input_data(_sent(session)) == {
        "list_info": {"row_count": 50},
        "search_criteria": [{"field": "group.name", "condition": "is", "value": "Network"}],
    }


# ==================== Content URLs ====================


def test_content_url_other_host_is_rejected_without_network_call(sdp_client, session):
    with pytest.raises(InputValidationError, match="host mismatch"):
        sdp_client.get_content_from_url("@evil.example.net/steal")
    session.request.assert_not_called()


def test_content_url_extracts_description(sdp_client, session):
    session.request.return_value = make_response(body={"notification": {"description": "Hello there"}})

    content = sdp_client.get_content_from_url("/api/v3/requests/101/notifications/3")

    assert content == "Hello there"
    assert session.request.call_args.args[1] == f"{BASE_URL}/api/v3/requests/101/notifications/3"


def test_content_url_falls_back_to_raw_body(sdp_client, session):
    session.request.return_value = make_response(text="plain text body")
    assert sdp_client.get_content_from_url("/api/v3/requests/101/notes/1") == "plain text body"


def test_notes_with_content_degrades_on_failure(sdp_client, session):
    session.request.side_effect = [
        make_response(
            body=sdp_ok(
                notes=[
                    {"id": 1, "description": "inline"},
                    {"id": 2, "content_url": "/api/v3/requests/101/notes/2"},
                    {"id": 3},
                ]
            )
        ),
        make_response(status_code=400, text="broken"),
        make_response(body=sdp_ok(note={"id": 3, "description": "fetched"})),
    ]

    notes = sdp_client.list_notes_with_content("101")

    assert [n.id for n in notes] == ["1", "2", "3"]
    assert notes[0].description == "inline"
    assert notes[1].description is None
    assert notes[2].description == "fetched"


def test_conversations_with_content(sdp_client, session):
    session.request.side_effect = [
        make_response(
            body=sdp_ok(conversations=[{"id": 4, "content_url": "/api/v3/requests/101/notifications/4"}])
        ),
        make_response(body={"notification": {"content": "Reply body"}}),
    ]

    conversations = sdp_client.list_conversations_with_content("101")

    assert conversations[0].display_content == "Reply body"


# ==================== Connection test ====================


def test_connection_success(sdp_client, session):
    session.request.return_value = make_response(body=sdp_ok(requests=[]))
    sdp_client.test_connection()
    assert _input_data(_sent(session)) == {"list_info": {"row_count": 1}}


def test_connection_auth_failure(sdp_client, session):
    session.request.return_value = make_response(status_code=401)
    with pytest.raises(ConnectionTestError, match="Authentication failed"):
        sdp_client.test_connection()


def test_connection_timeout(sdp_client, session):
    session.request.side_effect = requests.exceptions.ConnectTimeout("timed out")
    with patch("mcp_servicedesk.client.time.sleep"), pytest.raises(ConnectionTestError, match="timed out after 30s"):
        sdp_client.test_connection()


def test_connection_transport_failure_is_redacted(sdp_client, session):
    session.request.side_effect = requests.exceptions.InvalidURL(f"bad url with {API_KEY}")
    with pytest.raises(ConnectionTestError) as exc_info:
        sdp_client.test_connection()
    assert API_KEY not in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, TransportError)


def test_request_web_url(sdp_client):
    assert sdp_client.request_web_url("101") == f"{BASE_URL}/WorkOrder.do?woMode=viewWO&woID=101"


def test_client_from_environment():
    env = {"SDP_BASE_URL": "https://sdp.example.com/api/v3", "SDP_API_KEY": "abc123"}
    with patch.dict("os.environ", env, clear=True):
        client = ServiceDeskClient()
    assert client.base_url == "https://sdp.example.com/api/v3"
    assert isinstance(client.session, requests.Session)
