"""
Process configuration for the Saviynt MCP server.
Settings are read once from the environment when the server is constructed.
"""
from dataclasses import dataclass
from typing import Mapping, Optional
import os


DEFAULT_API_PATH = "api/v5"
DEFAULT_MAX_RESULT_TEXT_CHARS = 20000
DEFAULT_MAX_STRUCTURED_CONTENT_CHARS = 4000
DEFAULT_HTTP_TIMEOUT = 60.0
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000


def _env_string(environ: Mapping[str, str], *names: str) -> Optional[str]:
    """Return the first non-blank value among the given variable names."""
    for name in names:
        value = (environ.get(name) or "").strip()
        if value:
            return value
    return None


def positive_int(value: object, fallback: int) -> int:
    """Parse a strictly positive integer, falling back on anything else.

    Args:
        value: Raw configuration value (string, number or None)
        fallback: Value used when parsing fails or the result is not positive

    Returns:
        The parsed integer or the fallback
    """
    if isinstance(value, bool):
        return fallback
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def positive_float(value: object, fallback: float) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


@dataclass(frozen=True)
class ServerSettings:
    """Constructor-time configuration consumed by the server core."""

    default_base_url: Optional[str] = None
    default_api_path: str = DEFAULT_API_PATH
    enable_writes: bool = False
    service_username: Optional[str] = None
    service_password: Optional[str] = None
    max_result_text_chars: int = DEFAULT_MAX_RESULT_TEXT_CHARS
    max_structured_content_chars: int = DEFAULT_MAX_STRUCTURED_CONTENT_CHARS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    log_level: str = "INFO"
    transport: str = "stdio"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    def __post_init__(self):
        # Normalize values that may come straight from constructor arguments
        base_url = (self.default_base_url or "").strip().rstrip("/")
        object.__setattr__(self, "default_base_url", base_url or None)
        api_path = (self.default_api_path or "").strip().strip("/")
        object.__setattr__(self, "default_api_path", api_path or DEFAULT_API_PATH)
        object.__setattr__(
            self, "max_result_text_chars",
            positive_int(self.max_result_text_chars, DEFAULT_MAX_RESULT_TEXT_CHARS)
        )
        object.__setattr__(
            self, "max_structured_content_chars",
            positive_int(self.max_structured_content_chars, DEFAULT_MAX_STRUCTURED_CONTENT_CHARS)
        )

    @property
    def has_service_credentials(self) -> bool:
        return bool(self.service_username and self.service_password)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 default_base_url: Optional[str] = None,
                 enable_writes: Optional[bool] = None) -> "ServerSettings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            default_base_url: Overrides SAVIYNT_BASE_URL when given
            enable_writes: Overrides SAVIYNT_ENABLE_WRITE when given

        Returns:
            A populated ServerSettings instance
        """
        env = os.environ if environ is None else environ

        if enable_writes is None:
            enable_writes = (env.get("SAVIYNT_ENABLE_WRITE") or "").strip().lower() == "true"

        transport = (_env_string(env, "MCP_TRANSPORT") or "stdio").lower()

        return cls(
            default_base_url=default_base_url or _env_string(env, "SAVIYNT_BASE_URL"),
            default_api_path=_env_string(env, "SAVIYNT_API_PATH") or DEFAULT_API_PATH,
            enable_writes=enable_writes,
            service_username=_env_string(env, "SAVIYNT_SERVICE_USERNAME", "SAVIYNT_USERNAME"),
            service_password=_env_string(env, "SAVIYNT_SERVICE_PASSWORD", "SAVIYNT_PASSWORD"),
            max_result_text_chars=positive_int(
                env.get("SAVIYNT_MAX_RESULT_TEXT_CHARS"), DEFAULT_MAX_RESULT_TEXT_CHARS
            ),
            max_structured_content_chars=positive_int(
                env.get("SAVIYNT_MAX_STRUCTURED_CONTENT_CHARS"), DEFAULT_MAX_STRUCTURED_CONTENT_CHARS
            ),
            http_timeout=positive_float(env.get("SAVIYNT_HTTP_TIMEOUT"), DEFAULT_HTTP_TIMEOUT),
            log_level=(_env_string(env, "SAVIYNT_LOG_LEVEL") or "INFO").upper(),
            transport="http" if transport == "http" else "stdio",
            host=_env_string(env, "HOST") or DEFAULT_HOST,
            port=positive_int(_env_string(env, "PORT", "MCP_PORT"), DEFAULT_PORT),
        )
