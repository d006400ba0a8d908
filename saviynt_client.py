"""
API gateway for the Saviynt REST API.
Builds outbound calls for a resolved profile, attaches bearer tokens and
retries once after re-authenticating when the API answers 401.
"""
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Any, Iterator, List, Optional, Tuple
from urllib.parse import urljoin
import asyncio
import logging

import requests

from saviynt_auth import Authenticator, ProfileStore, TokenCache
from saviynt_utils import (
    ProfileNotFound,
    UpstreamError,
    WriteDisabled,
    as_json_text,
    as_string,
    parse_response_body,
    truncate,
)


logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Profile id for the tool invocation currently running in this task
current_profile_id: ContextVar[Optional[str]] = ContextVar("saviynt_current_profile_id", default=None)


@contextmanager
def profile_context(profile_id: Optional[str]) -> Iterator[None]:
    """Make ``profile_id`` the ambient profile for nested gateway calls."""
    token = current_profile_id.set(as_string(profile_id))
    try:
        yield
    finally:
        current_profile_id.reset(token)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query(query: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
    """Flatten query parameters, repeating a key once per list element."""
    params: List[Tuple[str, str]] = []
    if not query:
        return params

    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for item in value:
                params.append((key, _query_value(item)))
            continue
        params.append((key, _query_value(value)))
    return params


class SaviyntAPIClient:
    """Encapsulated API client for Saviynt API calls."""

    def __init__(self, profiles: ProfileStore, token_cache: TokenCache, authenticator: Authenticator,
                 session: Optional[requests.Session] = None,
                 timeout: Optional[float] = None,
                 enable_writes: bool = False):
        self._profiles = profiles
        self._token_cache = token_cache
        self._authenticator = authenticator
        self._session = session or requests.Session()
        self._timeout = timeout
        self.enable_writes = enable_writes

    def ensure_writes_enabled(self, operation_name: str) -> None:
        """Fail unless the process-wide write flag is on."""
        if not self.enable_writes:
            logger.info("Rejected write operation '%s' (writes disabled)", operation_name)
            raise WriteDisabled(operation_name)

    async def call(self, endpoint: str, method: str = "GET",
                   query: Optional[Dict[str, Any]] = None,
                   body: Optional[Any] = None,
                   base_url: Optional[str] = None,
                   profile_id: Optional[str] = None,
                   requires_auth: bool = True,
                   retry_on_unauthorized: bool = True) -> Any:
        """Make an API call to the Saviynt API.

        Args:
            endpoint: Path of the API endpoint, e.g. /ECM/api/getUser
            method: HTTP method
            query: Optional query parameters; list values repeat the key
            body: Optional JSON body
            base_url: Base URL override
            profile_id: Profile override; defaults to the ambient profile
            requires_auth: Attach a bearer token to the request
            retry_on_unauthorized: Re-authenticate and retry once on 401

        Returns:
            The parsed response body

        Raises:
            LoginRequired: No profile could be resolved for an authenticated call
            MissingConfiguration: No base URL is available
            UpstreamError: The API answered with a non-success status
        """
        requested_profile_id = as_string(profile_id) or current_profile_id.get()
        method = method.upper()

        if requires_auth:
            profile = self._profiles.resolve(requested_profile_id, base_url)
        else:
            profile = self._profiles.find(requested_profile_id, base_url)
            if requested_profile_id and profile is None:
                raise ProfileNotFound(requested_profile_id)

        resolved_base_url = self._profiles.resolve_base_url(base_url, profile)
        url = urljoin(resolved_base_url, endpoint)

        headers = {"Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = "application/json"

        if requires_auth:
            token = await self._authenticator.get_token(profile, resolved_base_url)
            headers["Authorization"] = f"Bearer {token}"

        logger.debug("%s %s (profile=%s)", method, url, profile.profile_id if profile else None)
        response = await asyncio.to_thread(
            self._session.request,
            method,
            url,
            params=build_query(query),
            json=body,
            headers=headers,
            timeout=self._timeout,
        )

        if response.status_code == 401 and retry_on_unauthorized and requires_auth:
            logger.info("Got 401 from %s, refreshing token for profile '%s'", endpoint, profile.profile_id)
            self._token_cache.invalidate(profile.profile_id, resolved_base_url)
            await self._authenticator.get_token(profile, resolved_base_url, force_refresh=True)
            return await self.call(
                endpoint,
                method=method,
                query=query,
                body=body,
                base_url=resolved_base_url,
                profile_id=profile.profile_id,
                requires_auth=requires_auth,
                retry_on_unauthorized=False,
            )

        parsed_body = parse_response_body(response)
        if not response.ok:
            detail = parsed_body if isinstance(parsed_body, str) else as_json_text(parsed_body)
            logger.warning("Saviynt API error %s %s for %s %s", response.status_code, response.reason, method, endpoint)
            raise UpstreamError(response.status_code, response.reason or "", truncate(detail))

        return parsed_body
