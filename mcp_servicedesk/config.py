"""Configuration loading for the ServiceDesk Plus MCP server."""

import os

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .errors import ConfigurationError

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CLOSED_STATUSES = ("Closed", "Cancelled", "Resolved")

# Substrings that indicate an example key was copied verbatim
PLACEHOLDER_KEY_PATTERNS = ("your_api_key", "your_key", "placeholder", "xxx", "changeme")


class Config(BaseModel):
    """Connection settings for a ServiceDesk Plus instance.

    The API key is held as a ``SecretStr`` so it never shows up in reprs or
    logs. Use ``api_key.get_secret_value()`` only to build request headers
    and to redact error text.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(description="Base URL of the SDP instance, e.g. https://servicedesk.example.com")
    api_key: SecretStr = Field(description="Technician API key")
    timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0, description="Per-attempt timeout in seconds")
    closed_statuses: tuple[str, ...] = Field(
        default=DEFAULT_CLOSED_STATUSES, description="Status names excluded by open-only listings"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Strip whitespace and trailing slashes and require an http(s) scheme."""
        url = v.strip().rstrip("/")
        if not url.startswith(("http://", "https://")):
            raise ValueError("SDP_BASE_URL must start with http:// or https://")
        return url

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: SecretStr) -> SecretStr:
        """Strip surrounding whitespace and reject unusable or placeholder keys.

        A key with embedded whitespace or control characters is refused here:
        the HTTP layer would quote it in escaped form, which ``redact()``
        cannot match.
        """
        key = v.get_secret_value().strip()
        if not key:
            raise ValueError("SDP_API_KEY must not be empty")
        if any(ch.isspace() or not ch.isprintable() for ch in key):
            raise ValueError("SDP_API_KEY must not contain whitespace or control characters")
        if any(pattern in key.lower() for pattern in PLACEHOLDER_KEY_PATTERNS):
            raise ValueError("SDP_API_KEY appears to be a placeholder value")
        return SecretStr(key)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables.

        Required:
            SDP_BASE_URL: Base URL of the ServiceDesk Plus instance
            SDP_API_KEY: Technician API key

        Optional:
            SDP_TIMEOUT: Per-attempt request timeout in seconds (default: 30)
            SDP_CLOSED_STATUSES: Comma-separated status names treated as closed

        Raises:
            ConfigurationError: If a required variable is missing or a value is invalid
        """
        base_url = _get_required_env("SDP_BASE_URL")
        api_key = _get_required_env("SDP_API_KEY")

        values: dict[str, object] = {"base_url": base_url, "api_key": api_key}

        timeout = os.getenv("SDP_TIMEOUT", "").strip()
        if timeout:
            try:
                values["timeout"] = float(timeout)
            except ValueError as e:
                raise ConfigurationError(f"SDP_TIMEOUT must be a number of seconds, got {timeout!r}") from e

        closed = os.getenv("SDP_CLOSED_STATUSES", "").strip()
        if closed:
            values["closed_statuses"] = tuple(s.strip() for s in closed.split(",") if s.strip())

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            # Messages only, the full rendering echoes input values
            messages = "; ".join(str(err["msg"]).removeprefix("Value error, ") for err in e.errors())
            raise ConfigurationError(messages) from None


def _get_required_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        raise ConfigurationError.missing_env(name)
    return value
