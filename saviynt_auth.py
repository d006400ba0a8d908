"""
Authentication layer for the Saviynt MCP server.
Holds the named credential profiles, the bearer token cache and the
authenticator that exchanges profile credentials for bearer tokens.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, Callable, List, Optional, Tuple
from urllib.parse import urljoin
import asyncio
import logging
import math
import time

import requests

from saviynt_utils import (
    AuthenticationFailed,
    LoginRequired,
    MissingConfiguration,
    ProfileNotFound,
    UnknownProfile,
    as_number,
    as_object,
    as_string,
    normalize_base_url,
    parse_response_body,
)


logger = logging.getLogger(__name__)

DEFAULT_PROFILE_ID = "default"
ENV_PROFILE_ID = "env-default"

SOURCE_SESSION = "session"
SOURCE_ENV = "env"

LOGIN_ENDPOINTS = ["/ECM/api/login", "/ECM/api/v1/token"]
TOKEN_FIELDS = ["access_token", "accessToken", "token", "bearerToken", "jwt", "jwtToken"]
EXPIRY_FIELDS = ["expiresIn", "expires_in", "expires"]

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
MIN_REFRESH_SECONDS = 30
REFRESH_RATIO = 0.92

Clock = Callable[[], float]


def format_timestamp(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class Profile:
    """One tenant credential set."""

    profile_id: str
    username: str
    secret: str
    base_url: str
    source: str = SOURCE_SESSION
    updated_at: float = 0.0

    def same_credentials(self, other: "Profile") -> bool:
        return (
            self.username == other.username
            and self.secret == other.secret
            and self.base_url == other.base_url
        )


@dataclass(frozen=True)
class TokenEntry:
    """A cached bearer credential with an absolute expiry (epoch seconds)."""

    bearer_token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class TokenCache:
    """Bearer tokens keyed by (profile id, normalized base URL)."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._entries: Dict[Tuple[str, str], TokenEntry] = {}

    @staticmethod
    def _key(profile_id: str, base_url: str) -> Tuple[str, str]:
        return profile_id, normalize_base_url(base_url)

    def get(self, profile_id: str, base_url: str) -> Optional[TokenEntry]:
        """Return the entry for the pair, expired or not."""
        return self._entries.get(self._key(profile_id, base_url))

    def get_valid(self, profile_id: str, base_url: str) -> Optional[TokenEntry]:
        """Return a usable entry, dropping it if it has expired."""
        key = self._key(profile_id, base_url)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_valid(self._clock()):
            return entry
        del self._entries[key]
        return None

    def store(self, profile_id: str, base_url: str, bearer_token: str, lifetime_seconds: float) -> TokenEntry:
        """Cache a token, renewing early: max(30s, 92% of the reported lifetime).

        Args:
            profile_id: Owning profile
            base_url: Endpoint the token was issued for
            bearer_token: The bearer value
            lifetime_seconds: Lifetime reported by the login response

        Returns:
            The stored entry
        """
        refresh_seconds = max(MIN_REFRESH_SECONDS, math.floor(lifetime_seconds * REFRESH_RATIO))
        entry = TokenEntry(bearer_token=bearer_token, expires_at=self._clock() + refresh_seconds)
        self._entries[self._key(profile_id, base_url)] = entry
        return entry

    def invalidate(self, profile_id: str, base_url: str) -> None:
        self._entries.pop(self._key(profile_id, base_url), None)

    def invalidate_profile(self, profile_id: str) -> None:
        for key in [k for k in self._entries if k[0] == profile_id]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class ProfileStore:
    """In-memory registry of credential profiles and the active-profile pointer.

    The store also knows how to materialize the environment-default profile from
    service-account credentials, and invalidates cached tokens whenever a
    profile's credentials or base URL change.
    """

    def __init__(self, token_cache: TokenCache,
                 service_username: Optional[str] = None,
                 service_password: Optional[str] = None,
                 default_base_url: Optional[str] = None,
                 clock: Clock = time.time):
        self._token_cache = token_cache
        self._service_username = as_string(service_username)
        self._service_password = as_string(service_password)
        default_base_url = as_string(default_base_url)
        self.default_base_url = normalize_base_url(default_base_url) if default_base_url else None
        self._clock = clock
        self._profiles: Dict[str, Profile] = {}
        self._active_profile_id: Optional[str] = None

    @property
    def active_profile_id(self) -> Optional[str]:
        return self._active_profile_id

    def get(self, profile_id: str) -> Optional[Profile]:
        return self._profiles.get(profile_id)

    def __contains__(self, profile_id: str) -> bool:
        return profile_id in self._profiles

    def __len__(self) -> int:
        # Read-only; never materializes the environment profile
        return len(self._profiles)

    def upsert(self, profile_id: str, username: str, secret: str, base_url: str,
               make_active: bool = True, source: str = SOURCE_SESSION) -> Profile:
        """Create or replace a profile.

        Cached tokens for the id are dropped when the username, secret or base
        URL differ from the stored profile.

        Returns:
            The stored profile snapshot
        """
        profile = Profile(
            profile_id=profile_id,
            username=username,
            secret=secret,
            base_url=normalize_base_url(base_url),
            source=source,
            updated_at=self._clock(),
        )
        existing = self._profiles.get(profile_id)
        if existing is not None and not existing.same_credentials(profile):
            logger.info("Credentials changed for profile '%s', dropping cached tokens", profile_id)
            self._token_cache.invalidate_profile(profile_id)

        self._profiles[profile_id] = profile
        if make_active:
            self._active_profile_id = profile_id
        return profile

    def materialize_from_environment(self, preferred_base_url: Optional[str] = None) -> Optional[Profile]:
        """Build the environment-default profile from service-account settings.

        The profile only becomes active when no other profile is active.
        """
        if not self._service_username or not self._service_password:
            return None

        base_url = as_string(preferred_base_url) or self.default_base_url
        if not base_url:
            return None

        return self.upsert(
            ENV_PROFILE_ID,
            self._service_username,
            self._service_password,
            base_url,
            make_active=self._active_profile_id is None,
            source=SOURCE_ENV,
        )

    def _active_profile(self) -> Optional[Profile]:
        if self._active_profile_id is None:
            return None
        profile = self._profiles.get(self._active_profile_id)
        if profile is None:
            # Pointer outlived its profile
            self._active_profile_id = None
        return profile

    def find(self, explicit_id: Optional[str] = None,
             preferred_base_url: Optional[str] = None) -> Optional[Profile]:
        """Resolve a profile without failing; None when nothing matches."""
        explicit_id = as_string(explicit_id)
        if explicit_id:
            profile = self._profiles.get(explicit_id)
            if profile is not None:
                return profile
            if explicit_id == ENV_PROFILE_ID:
                return self.materialize_from_environment(preferred_base_url)
            return None

        return self._active_profile() or self.materialize_from_environment(preferred_base_url)

    def resolve(self, explicit_id: Optional[str] = None,
                preferred_base_url: Optional[str] = None) -> Profile:
        """Resolve the profile a call should use.

        Args:
            explicit_id: Profile requested by the caller, if any
            preferred_base_url: Base URL used when materializing the environment profile

        Returns:
            The resolved profile

        Raises:
            ProfileNotFound: The explicit id is unknown and not materializable
            LoginRequired: No explicit id was given and nothing resolves
        """
        explicit_id = as_string(explicit_id)
        profile = self.find(explicit_id, preferred_base_url)
        if profile is not None:
            return profile
        if explicit_id:
            raise ProfileNotFound(explicit_id)
        raise LoginRequired(
            "Login required before calling Saviynt tools. Use saviynt_upsert_profile/saviynt_login, "
            "or set SAVIYNT_SERVICE_USERNAME and SAVIYNT_SERVICE_PASSWORD."
        )

    def resolve_base_url(self, value: Optional[str] = None, profile: Optional[Profile] = None) -> str:
        """Pick the explicit URL, else the profile's, else the process default."""
        from_arg = as_string(value)
        if from_arg:
            return normalize_base_url(from_arg)
        if profile is not None and profile.base_url:
            return profile.base_url
        if self.default_base_url:
            return self.default_base_url
        raise MissingConfiguration(
            "Missing Saviynt base URL. Provide `url` in the tool call or set SAVIYNT_BASE_URL."
        )

    def set_active(self, profile_id: str) -> Profile:
        profile = self._profiles.get(profile_id)
        if profile is None and profile_id == ENV_PROFILE_ID:
            profile = self.materialize_from_environment()
        if profile is None:
            raise UnknownProfile(profile_id)
        self._active_profile_id = profile.profile_id
        logger.info("Active profile set to '%s'", profile.profile_id)
        return profile

    def mark_active(self, profile_id: str) -> None:
        self._active_profile_id = profile_id

    def delete(self, profile_id: str) -> Optional[str]:
        """Remove a profile and its tokens.

        Returns:
            The active profile id after deletion
        """
        if profile_id not in self._profiles:
            raise UnknownProfile(profile_id)

        del self._profiles[profile_id]
        self._token_cache.invalidate_profile(profile_id)
        logger.info("Deleted profile '%s'", profile_id)

        if self._active_profile_id == profile_id:
            self._active_profile_id = None
            self.materialize_from_environment()
        return self._active_profile_id

    def summary(self, profile: Profile) -> Dict[str, Any]:
        entry = self._token_cache.get(profile.profile_id, profile.base_url)
        return {
            "profileId": profile.profile_id,
            "source": profile.source,
            "username": profile.username,
            "baseUrl": profile.base_url,
            "active": profile.profile_id == self._active_profile_id,
            "hasToken": entry is not None,
            "tokenValid": entry is not None and entry.is_valid(self._clock()),
            "tokenExpiresAt": format_timestamp(entry.expires_at) if entry else None,
            "updatedAt": format_timestamp(profile.updated_at),
        }

    def list(self) -> List[Dict[str, Any]]:
        return [self.summary(self._profiles[pid]) for pid in sorted(self._profiles)]

    def status(self) -> Dict[str, Any]:
        """Report every profile and its token state."""
        self.materialize_from_environment()

        profiles = self.list()
        if not profiles:
            return {
                "authenticated": False,
                "profileCount": 0,
                "activeProfileId": None,
                "message": "No profiles configured. Call saviynt_upsert_profile/saviynt_login "
                           "or set SAVIYNT_SERVICE_USERNAME and SAVIYNT_SERVICE_PASSWORD.",
            }

        active = self._active_profile() or self._profiles.get(ENV_PROFILE_ID)
        if active is not None and active.profile_id != self._active_profile_id:
            self._active_profile_id = active.profile_id
            # Summaries were built before the pointer moved
            profiles = self.list()

        return {
            "authenticated": True,
            "profileCount": len(profiles),
            "activeProfileId": self._active_profile_id,
            "profiles": profiles,
        }


#######################
## Login exchange

def _plain_credentials(profile: Profile) -> Dict[str, Any]:
    return {"username": profile.username, "password": profile.secret}


def _password_grant(profile: Profile) -> Dict[str, Any]:
    return {"username": profile.username, "password": profile.secret, "grant_type": "password"}


# Compatibility fallback chain; order matters
LOGIN_ATTEMPTS: List[Tuple[str, Callable[[Profile], Dict[str, Any]]]] = [
    (path, builder)
    for path in LOGIN_ENDPOINTS
    for builder in (_plain_credentials, _password_grant)
]


def _candidate_containers(payload: Any) -> List[Dict[str, Any]]:
    """The payload itself, then its "data" wrapper if it has one."""
    if not isinstance(payload, dict):
        return []
    containers = [payload]
    nested = as_object(payload.get("data"))
    if nested is not None:
        containers.append(nested)
    return containers


def extract_token(payload: Any) -> Optional[str]:
    for container in _candidate_containers(payload):
        for key in TOKEN_FIELDS:
            value = as_string(container.get(key))
            if value:
                return value
    return None


def extract_lifetime(payload: Any) -> float:
    """Token lifetime in seconds, defaulting to one hour."""
    for container in _candidate_containers(payload):
        for key in EXPIRY_FIELDS:
            value = as_number(container.get(key))
            if value and value > 0:
                return value
    return DEFAULT_TOKEN_LIFETIME_SECONDS


class Authenticator:
    """Exchanges profile credentials for bearer tokens and caches them."""

    _HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}

    def __init__(self, profiles: ProfileStore, token_cache: TokenCache,
                 session: Optional[requests.Session] = None,
                 timeout: Optional[float] = None):
        self._profiles = profiles
        self._token_cache = token_cache
        self._session = session or requests.Session()
        self._timeout = timeout

    async def get_token(self, profile: Profile, base_url: Optional[str] = None,
                        force_refresh: bool = False) -> str:
        """Return a usable bearer token for the profile.

        Args:
            profile: The profile to authenticate
            base_url: Endpoint to authenticate against (defaults to the profile's)
            force_refresh: Skip the cache and log in again

        Returns:
            The bearer token value
        """
        base_url = self._profiles.resolve_base_url(base_url, profile)

        if not force_refresh:
            cached = self._token_cache.get_valid(profile.profile_id, base_url)
            if cached is not None:
                return cached.bearer_token

        return await self._login(profile, base_url)

    async def ensure_token(self, profile_id: Optional[str] = None, base_url: Optional[str] = None,
                           force_refresh: bool = False) -> str:
        """Resolve a profile, then return a usable token for it."""
        profile = self._profiles.resolve(profile_id, base_url)
        return await self.get_token(profile, base_url, force_refresh)

    async def _login(self, profile: Profile, base_url: str) -> str:
        attempts: List[str] = []

        for path, build_payload in LOGIN_ATTEMPTS:
            url = urljoin(base_url, path)
            logger.debug("Login attempt for profile '%s' at %s", profile.profile_id, url)
            response = await asyncio.to_thread(
                self._session.post,
                url,
                json=build_payload(profile),
                headers=self._HEADERS,
                timeout=self._timeout,
            )

            body = parse_response_body(response)
            if not response.ok:
                attempts.append(f"{path} -> {response.status_code} {response.reason}")
                continue

            token = extract_token(body)
            if not token:
                attempts.append(f"{path} -> success response but no token field")
                continue

            entry = self._token_cache.store(profile.profile_id, base_url, token, extract_lifetime(body))
            self._profiles.mark_active(profile.profile_id)
            logger.info("Authenticated profile '%s' against %s (refresh at %s)",
                        profile.profile_id, base_url, format_timestamp(entry.expires_at))
            return token

        logger.warning("Authentication failed for profile '%s': %s", profile.profile_id, attempts)
        raise AuthenticationFailed(profile.profile_id, attempts)
