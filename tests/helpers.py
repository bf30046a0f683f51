"""Fake SDP responses shared by the test modules."""

import json
from typing import Any
from unittest.mock import Mock

import requests

API_KEY = "test-secret-key-123"
BASE_URL = "https://sdp.example.com"


def make_response(
    status_code: int = 200, body: Any = None, text: str | None = None, headers: dict[str, str] | None = None
) -> Mock:
    """Build a fake ``requests.Response``."""
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.headers = headers or {}
    if text is None:
        text = json.dumps(body if body is not None else {})
    response.text = text
    return response


def sdp_ok(**payload: Any) -> dict[str, Any]:
    """Successful SDP envelope around ``payload``."""
    return {"response_status": {"status_code": 2000, "status": "success"}, **payload}


def sdp_failure(code: int, message: str = "") -> dict[str, Any]:
    messages = [{"status_code": code, "message": message, "type": "failed"}] if message else []
    return {"response_status": {"status_code": code, "status": "failed", "messages": messages}}
