"""
Utility module for Saviynt MCP server.
Contains the error taxonomy, value coercion helpers, response parsing and the
result shaper that keeps MCP payloads within safe size limits.
"""
from dataclasses import dataclass
from typing import Dict, Any, List, Optional
import json
import logging
import math

import requests

from saviynt_config import DEFAULT_MAX_RESULT_TEXT_CHARS, DEFAULT_MAX_STRUCTURED_CONTENT_CHARS, positive_int


logger = logging.getLogger(__name__)

UPSTREAM_EXCERPT_CHARS = 2000
MAX_SUMMARY_KEYS = 50

LOGIN_FORM_FIELDS = [
    {"name": "profile_id", "type": "text", "label": "Profile ID (optional)"},
    {"name": "username", "type": "text", "label": "Username"},
    {"name": "password", "type": "password", "label": "Password"},
    {"name": "url", "type": "url", "label": "Saviynt Base URL"},
]


#######################
## Errors

class SaviyntMCPError(Exception):
    """Base class for failures surfaced to MCP callers."""

    def extra(self) -> Dict[str, Any]:
        """Additional fields merged into the failure envelope."""
        return {}


class LoginRequired(SaviyntMCPError):
    """No profile or token could be resolved for the call."""


class ProfileNotFound(LoginRequired):
    """An explicitly requested profile does not exist."""

    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__(
            f"Profile '{profile_id}' was not found. "
            "Call saviynt_upsert_profile or saviynt_login first."
        )


class UnknownProfile(SaviyntMCPError):
    """A profile named in a profile management call does not exist."""

    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__(
            f"Profile '{profile_id}' does not exist. Call saviynt_upsert_profile or saviynt_login first."
        )


class AuthenticationFailed(SaviyntMCPError):
    """Every candidate login endpoint and payload was rejected."""

    def __init__(self, profile_id: str, attempts: List[str]):
        self.profile_id = profile_id
        self.attempts = list(attempts)
        super().__init__(
            f"Unable to authenticate profile '{profile_id}' with Saviynt. "
            f"Attempts: {' | '.join(self.attempts)}"
        )

    def extra(self) -> Dict[str, Any]:
        return {"attempts": self.attempts}


class MissingConfiguration(SaviyntMCPError):
    """A required setting (usually the base URL) is not available."""


class UpstreamError(SaviyntMCPError):
    """The Saviynt API answered with a non-success status."""

    def __init__(self, status: int, reason: str, excerpt: str):
        self.status = status
        self.reason = reason
        self.excerpt = excerpt
        super().__init__(f"Saviynt API error {status} {reason}: {excerpt}")

    def extra(self) -> Dict[str, Any]:
        return {"status": self.status}


class WriteDisabled(SaviyntMCPError):
    """A mutating operation was invoked while writes are disabled."""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        super().__init__(
            f"Write operations are disabled. Set SAVIYNT_ENABLE_WRITE=true to enable '{operation_name}'."
        )


class ValidationError(SaviyntMCPError):
    """Tool arguments are missing or malformed."""


#######################
## Value helpers

def as_string(value: Any) -> Optional[str]:
    """Return a stripped string, or None for non-strings and blank strings."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def as_number(value: Any) -> Optional[float]:
    # bool is an int subclass but never a valid number here
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def as_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def as_object(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in values.items() if v is not None}


def normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def normalize_api_path(path: str) -> str:
    return path.strip("/")


def truncate(text: str, max_length: int = UPSTREAM_EXCERPT_CHARS) -> str:
    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}... [truncated]"


def as_json_text(value: Any) -> str:
    """Render a value as pretty JSON text; strings are returned unchanged."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def parse_response_body(response: requests.Response) -> Any:
    """Decode a response body as JSON when it looks like JSON.

    Args:
        response: The HTTP response to decode

    Returns:
        Parsed JSON, the raw text, or an empty dict for an empty body
    """
    raw = response.text or ""
    stripped = raw.strip()
    if not stripped:
        return {}

    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type or stripped.startswith(("{", "[")):
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    return raw


def extract_array(value: Any) -> List[Any]:
    """Find the list payload in a response, whatever wrapper key it uses."""
    if isinstance(value, list):
        return value
    if not isinstance(value, dict):
        return []

    candidate_keys = ["requests", "items", "data", "pendingRequests", "pending_requests", "results"]
    for key in candidate_keys:
        candidate = value.get(key)
        if isinstance(candidate, list):
            return candidate
    return []


#######################
## Result shaping

@dataclass
class ShapedResult:
    """A bounded result envelope ready for the protocol layer."""

    text: str
    structured_content: Optional[Dict[str, Any]] = None


class ResultShaper:
    """Bounds outbound payload size for MCP clients.

    Text longer than ``max_text_chars`` is cut and the structured payload is
    replaced with a truncation summary. Keyed payloads whose JSON exceeds
    ``max_structured_chars`` keep the full text but only list their keys.
    """

    def __init__(self, max_text_chars: Any = DEFAULT_MAX_RESULT_TEXT_CHARS,
                 max_structured_chars: Any = DEFAULT_MAX_STRUCTURED_CONTENT_CHARS):
        self.max_text_chars = positive_int(max_text_chars, DEFAULT_MAX_RESULT_TEXT_CHARS)
        self.max_structured_chars = positive_int(max_structured_chars, DEFAULT_MAX_STRUCTURED_CONTENT_CHARS)

    def shape(self, value: Any) -> ShapedResult:
        full_text = as_json_text(value)

        if len(full_text) > self.max_text_chars:
            omitted = len(full_text) - self.max_text_chars
            logger.info("Truncating result from %d to %d chars", len(full_text), self.max_text_chars)
            truncated_text = (
                f"{full_text[:self.max_text_chars]}\n\n"
                f"... [truncated {omitted} chars due to MCP response size limit]"
            )
            return ShapedResult(
                text=truncated_text,
                structured_content={
                    "success": True,
                    "truncated": True,
                    "originalChars": len(full_text),
                    "returnedChars": self.max_text_chars,
                    "message": "Result was truncated to keep the MCP payload size safe for clients. "
                               "Add tighter filters/limits.",
                },
            )

        if not isinstance(value, dict):
            return ShapedResult(text=full_text)

        if len(full_text) > self.max_structured_chars:
            return ShapedResult(
                text=full_text,
                structured_content={
                    "success": True,
                    "truncated": True,
                    "originalChars": len(full_text),
                    "message": "structuredContent omitted for large payload. "
                               "Use text content preview or call with narrower filters.",
                    "keys": list(value.keys())[:MAX_SUMMARY_KEYS],
                },
            )

        return ShapedResult(text=full_text, structured_content=value)


def error_result(message: str, details: Any = None, **extra: Any) -> ShapedResult:
    """Build a failure envelope."""
    payload: Dict[str, Any] = {"success": False, "error": message}
    if details is not None:
        payload["details"] = details
    payload.update(extra)
    return ShapedResult(text=as_json_text(payload), structured_content=payload)


def login_required_result(message: str) -> ShapedResult:
    """Build the distinguished envelope asking the caller for credentials."""
    return ShapedResult(
        text=message,
        structured_content={
            "success": False,
            "error": "login required",
            "message": message,
            "action": "render_login_form",
            "form": {"fields": [dict(f) for f in LOGIN_FORM_FIELDS]},
        },
    )
