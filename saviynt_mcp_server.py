from typing import Annotated, Dict, Any, Awaitable, Callable, List, Literal, Optional
import argparse
import logging
import sys
import time
from urllib.parse import quote

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent
from pydantic import Field
import requests
from starlette.requests import Request
from starlette.responses import JSONResponse

from saviynt_auth import Authenticator, ProfileStore, TokenCache, DEFAULT_PROFILE_ID, format_timestamp
from saviynt_client import SaviyntAPIClient, WRITE_METHODS, profile_context
from saviynt_config import ServerSettings
from saviynt_utils import (
    LoginRequired,
    MissingConfiguration,
    ResultShaper,
    SaviyntMCPError,
    ShapedResult,
    ValidationError,
    as_object,
    as_string,
    compact,
    error_result,
    extract_array,
    login_required_result,
    normalize_api_path,
)


logger = logging.getLogger(__name__)

SERVER_NAME = "saviynt-api-mcp"

# Argument types shared by the tool signatures
NonEmptyStr = Annotated[str, Field(min_length=1)]
ProfileIdArg = Annotated[
    Optional[Annotated[str, Field(min_length=1)]],
    Field(description="Optional auth profile ID. If omitted, the active profile is used."),
]
UrlArg = Annotated[str, Field(pattern=r"^https?://", description="Saviynt base URL")]
OptionalUrlArg = Annotated[
    Optional[Annotated[str, Field(pattern=r"^https?://")]],
    Field(description="Optional base URL override"),
]
Limit500 = Optional[Annotated[int, Field(gt=0, le=500)]]
Limit1000 = Optional[Annotated[int, Field(gt=0, le=1000)]]
Limit5000 = Optional[Annotated[int, Field(gt=0, le=5000)]]
Offset = Optional[Annotated[int, Field(ge=0)]]
JsonObject = Optional[Dict[str, Any]]

# Typed v5 write wrappers: (tool name, description, method, operation path)
V5_WRITE_OPERATIONS = [
    ("saviynt_create_user", "Create user via /createUser.", "POST", "createUser"),
    ("saviynt_update_user", "Update user via /updateUser.", "POST", "updateUser"),
    ("saviynt_create_account", "Create account via /createAccount.", "POST", "createAccount"),
    ("saviynt_update_account", "Update account via /updateAccount.", "POST", "updateAccount"),
    ("saviynt_add_role", "Add role via /addrole.", "POST", "addrole"),
    ("saviynt_remove_role", "Remove role via /removerole.", "POST", "removerole"),
    ("saviynt_create_endpoint", "Create endpoint via /createEndpoint.", "POST", "createEndpoint"),
    ("saviynt_update_endpoint", "Update endpoint via /updateEndpoint.", "PUT", "updateEndpoint"),
    ("saviynt_create_security_system", "Create security system via /createSecuritySystem.",
     "POST", "createSecuritySystem"),
    ("saviynt_update_security_system", "Update security system via /updateSecuritySystem.",
     "PUT", "updateSecuritySystem"),
    ("saviynt_create_organization", "Create organization via /createOrganization.", "POST", "createOrganization"),
    ("saviynt_update_organization", "Update organization via /updateOrganization.", "PUT", "updateOrganization"),
    ("saviynt_delete_organization", "Delete organization via /deleteOrganization.", "POST", "deleteOrganization"),
    ("saviynt_create_update_entitlement", "Create or update entitlement via /createUpdateEntitlement.",
     "POST", "createUpdateEntitlement"),
    ("saviynt_create_entitlement_type", "Create entitlement type via /createEntitlementType.",
     "POST", "createEntitlementType"),
    ("saviynt_update_entitlement_type", "Update entitlement type via /updateEntitlementType.",
     "PUT", "updateEntitlementType"),
    ("saviynt_create_update_user_group", "Create or update user group via /createUpdateUserGroup.",
     "POST", "createUpdateUserGroup"),
    ("saviynt_delete_user_group", "Delete user group via /deleteUserGroup.", "POST", "deleteUserGroup"),
    ("saviynt_create_dataset", "Create dataset via /createDataset.", "POST", "createDataset"),
    ("saviynt_update_dataset", "Update dataset via /updateDataset.", "POST", "updateDataset"),
    ("saviynt_delete_dataset", "Delete dataset via /deleteDataset.", "POST", "deleteDataset"),
]


def _require(value: Any, name: str) -> str:
    """Return a non-blank string argument or fail validation."""
    text = as_string(value)
    if not text:
        raise ValidationError(f"Missing required argument: {name}")
    return text


class SaviyntMCPServer:
    """Encapsulated MCP server for Saviynt identity governance operations."""
    def __init__(self, settings: Optional[ServerSettings] = None,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        name = SERVER_NAME
        desc = """
            This server exposes the Saviynt identity governance REST API as MCP tools.

            Authenticate first with saviynt_login or saviynt_upsert_profile, unless the server
            was started with service-account credentials. Every tool accepts an optional
            profile_id; when omitted the active profile is used.

            Tools that change data (requests, approvals, create/update/delete) only work when
            the server runs with SAVIYNT_ENABLE_WRITE=true.

            Large results are truncated. Prefer narrow filters and small limits.
            """
        self.mcp = FastMCP(
                    name = name,
                    instructions = desc
                    )
        self.settings = settings or ServerSettings.from_env()
        self._session = session or requests.Session()
        self._token_cache = TokenCache(clock)
        self._profiles = ProfileStore(
            self._token_cache,
            service_username=self.settings.service_username,
            service_password=self.settings.service_password,
            default_base_url=self.settings.default_base_url,
            clock=clock,
        )
        self._authenticator = Authenticator(
            self._profiles, self._token_cache, session=self._session, timeout=self.settings.http_timeout
        )
        self._api_client = SaviyntAPIClient(
            self._profiles,
            self._token_cache,
            self._authenticator,
            session=self._session,
            timeout=self.settings.http_timeout,
            enable_writes=self.settings.enable_writes,
        )
        self._shaper = ResultShaper(
            self.settings.max_result_text_chars, self.settings.max_structured_content_chars
        )
        # Transport actually served; set by run()
        self.transport = "streamable-http" if self.settings.transport == "http" else "stdio"
        self._register_tools()
        self._register_routes()

    @property
    def profiles(self) -> ProfileStore:
        return self._profiles

    @property
    def token_cache(self) -> TokenCache:
        return self._token_cache

    @property
    def authenticator(self) -> Authenticator:
        return self._authenticator

    @property
    def api_client(self) -> SaviyntAPIClient:
        return self._api_client

    @property
    def shaper(self) -> ResultShaper:
        return self._shaper

    #######################
    ## Invocation boundary

    async def execute(self, tool_name: str, handler: Callable[[], Awaitable[Any]],
                      profile_id: Optional[str] = None) -> ShapedResult:
        """Run one tool invocation and convert its outcome into an envelope.

        Args:
            tool_name: Name of the tool being invoked
            handler: Zero-argument coroutine factory doing the work
            profile_id: Ambient profile for every gateway call made by the handler

        Returns:
            The shaped result, or a failure envelope. Never raises for handler errors.
        """
        with profile_context(profile_id):
            try:
                value = await handler()
            except LoginRequired as e:
                logger.info("Tool '%s' needs login: %s", tool_name, e)
                return login_required_result(str(e))
            except SaviyntMCPError as e:
                logger.warning("Tool '%s' failed: %s", tool_name, e)
                return error_result(f"Tool '{tool_name}' failed", str(e),
                                    errorType=type(e).__name__, **e.extra())
            except Exception as e:
                logger.exception("Tool '%s' failed unexpectedly", tool_name)
                return error_result(f"Tool '{tool_name}' failed", str(e), errorType=type(e).__name__)
        return self._shaper.shape(value)

    async def _run(self, tool_name: str, handler: Callable[[], Awaitable[Any]],
                   profile_id: Optional[str] = None) -> ToolResult:
        shaped = await self.execute(tool_name, handler, profile_id)
        return ToolResult(
            content=[TextContent(type="text", text=shaped.text)],
            structured_content=shaped.structured_content,
        )

    def _tool(self, name: str, description: Optional[str] = None):
        """Register the decorated coroutine as an MCP tool and return it unchanged."""
        def decorator(fn):
            self.mcp.tool(fn, name=name, description=description, output_schema=None)
            return fn
        return decorator

    def _post(self, endpoint: str, body: Dict[str, Any]) -> Awaitable[Any]:
        return self._api_client.call(endpoint, "POST", body=compact(body))

    def _resolve_api_path(self, value: Optional[str] = None) -> str:
        return normalize_api_path(as_string(value) or self.settings.default_api_path)

    #######################
    ## Profile handlers

    async def upsert_profile(self, username: str, password: str, url: str,
                             profile_id: Optional[str] = None,
                             set_active: bool = True,
                             authenticate: bool = True) -> Dict[str, Any]:
        profile_id = as_string(profile_id) or self._profiles.active_profile_id or DEFAULT_PROFILE_ID
        username = as_string(username)
        password = as_string(password)
        url = as_string(url)
        if not username or not password or not url:
            raise ValidationError("Arguments 'username', 'password', and 'url' are required.")

        profile = self._profiles.upsert(profile_id, username, password, url, make_active=set_active)
        if authenticate:
            await self._authenticator.get_token(profile, force_refresh=True)
        else:
            self._token_cache.invalidate(profile.profile_id, profile.base_url)

        return {
            "success": True,
            "profile": self._profiles.summary(profile),
            "authenticatedNow": authenticate,
        }

    async def login(self, username: str, password: str, url: Optional[str] = None,
                    profile_id: Optional[str] = None, set_active: bool = True) -> Dict[str, Any]:
        """Create or update a profile, then authenticate it immediately."""
        requested_profile_id = as_string(profile_id) or self._profiles.active_profile_id or DEFAULT_PROFILE_ID
        username = as_string(username)
        password = as_string(password)
        if not username or not password:
            raise ValidationError("Both 'username' and 'password' are required.")

        existing = self._profiles.get(requested_profile_id)
        base_url = as_string(url) or (existing.base_url if existing else None) or self._profiles.default_base_url
        if not base_url:
            raise MissingConfiguration(
                "Missing Saviynt base URL. Provide 'url' or set SAVIYNT_BASE_URL in the environment."
            )

        profile = self._profiles.upsert(requested_profile_id, username, password, base_url, make_active=set_active)
        token = await self._authenticator.get_token(profile, force_refresh=True)
        entry = self._token_cache.get(profile.profile_id, profile.base_url)
        return {
            "success": True,
            "authenticated": True,
            "profileId": profile.profile_id,
            "username": username,
            "baseUrl": profile.base_url,
            "activeProfileId": self._profiles.active_profile_id,
            "setActive": set_active,
            "hasToken": bool(token),
            "tokenExpiresAt": format_timestamp(entry.expires_at) if entry else None,
        }

    async def set_active_profile(self, profile_id: str) -> Dict[str, Any]:
        profile = self._profiles.set_active(_require(profile_id, "profile_id"))
        return {
            "success": True,
            "activeProfileId": self._profiles.active_profile_id,
            "profile": self._profiles.summary(profile),
        }

    async def delete_profile(self, profile_id: str) -> Dict[str, Any]:
        profile_id = _require(profile_id, "profile_id")
        active_profile_id = self._profiles.delete(profile_id)
        return {
            "success": True,
            "deletedProfileId": profile_id,
            "activeProfileId": active_profile_id,
        }

    async def profile_status(self) -> Dict[str, Any]:
        return self._profiles.status()

    #######################
    ## Tool registration

    def _register_tools(self) -> None:
        """Register all MCP tools."""
        # Register session and profile tools
        self._register_profile_tools()
        # Register read-only API tools
        self._register_read_tools()
        # Register compatibility helpers
        self._register_compatibility_tools()
        # Register write tools
        self._register_write_tools()
        self._register_v5_write_tools()
        self._register_generic_tools()

    def _register_profile_tools(self) -> None:
        """Register profile and session management tools."""

        @self._tool("saviynt_upsert_profile")
        async def saviynt_upsert_profile(
            username: Annotated[NonEmptyStr, Field(description="Saviynt username")],
            password: Annotated[NonEmptyStr, Field(description="Saviynt password")],
            url: UrlArg,
            profile_id: Annotated[Optional[str], Field(description=f"Default: {DEFAULT_PROFILE_ID}")] = None,
            set_active: bool = True,
            authenticate: bool = True
        ) -> ToolResult:
            """
            **Role**: Create or update a Saviynt auth profile and optionally authenticate it now
            **Inputs**:
            - username, password: Saviynt credentials for this profile
            - url: Saviynt base URL, e.g. https://tenant.saviyntcloud.com
            - profile_id: Profile name. Defaults to the active profile, else "default"
            - set_active: Make this the profile used when calls omit profile_id (default true)
            - authenticate: Log in immediately (default true)
            **Outputs**:
            - profile: profile summary with token state
            - authenticatedNow: whether a login was performed
            """
            return await self._run(
                "saviynt_upsert_profile",
                lambda: self.upsert_profile(username, password, url, profile_id, set_active, authenticate),
            )

        async def login_tool(
            username: Annotated[NonEmptyStr, Field(description="Saviynt username")],
            password: Annotated[NonEmptyStr, Field(description="Saviynt password")],
            url: OptionalUrlArg = None,
            profile_id: Annotated[Optional[str], Field(description=f"Default: {DEFAULT_PROFILE_ID}")] = None,
            set_active: bool = True
        ) -> ToolResult:
            return await self._run(
                "saviynt_login",
                lambda: self.login(username, password, url, profile_id, set_active),
            )

        self._tool("saviynt_login",
                   "Compatibility auth helper that creates/updates a profile and authenticates it.")(login_tool)
        self._tool("login", "Compatibility alias for saviynt_login.")(login_tool)

        @self._tool("saviynt_set_active_profile")
        async def saviynt_set_active_profile(profile_id: NonEmptyStr) -> ToolResult:
            """Set the active profile for calls that omit profile_id."""
            return await self._run(
                "saviynt_set_active_profile", lambda: self.set_active_profile(profile_id)
            )

        @self._tool("saviynt_delete_profile")
        async def saviynt_delete_profile(profile_id: NonEmptyStr) -> ToolResult:
            """Delete a profile and all cached tokens for that profile."""
            return await self._run("saviynt_delete_profile", lambda: self.delete_profile(profile_id))

        async def profile_status_tool() -> ToolResult:
            return await self._run("saviynt_get_token_status", self.profile_status)

        self._tool("saviynt_list_profiles", "List configured auth profiles and token state.")(profile_status_tool)
        self._tool("saviynt_get_token_status",
                   "Return profile and token state for this MCP session.")(profile_status_tool)
        self._tool("get_token_status",
                   "Compatibility alias for saviynt_get_token_status.")(profile_status_tool)

    def _register_read_tools(self) -> None:
        """Register read-only Saviynt API tools."""

        #######################
        ## Identities and users

        @self._tool("saviynt_query_identities")
        async def saviynt_query_identities(
            query: Optional[str] = None,
            limit: Limit1000 = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """
            **Role**: Query identities/users from Saviynt
            **Inputs**:
            - query: Free-text identity query (default: empty, matches everything)
            - limit: Maximum number of identities to return (default 50)
            **Outputs**:
            - The getIdentities response from Saviynt
            """
            return await self._run("saviynt_query_identities", lambda: self._post(
                "/ECM/api/getIdentities", {"query": as_string(query) or "", "limit": limit or 50}
            ), profile_id)

        @self._tool("saviynt_get_user_profile")
        async def saviynt_get_user_profile(user_id: NonEmptyStr, profile_id: ProfileIdArg = None) -> ToolResult:
            """Fetch a single user profile."""
            return await self._run("saviynt_get_user_profile", lambda: self._post(
                "/ECM/api/getUser", {"userId": _require(user_id, "user_id")}
            ), profile_id)

        @self._tool("saviynt_search_users")
        async def saviynt_search_users(
            query: Optional[str] = None,
            department: Optional[str] = None,
            status: Optional[str] = None,
            role: Optional[str] = None,
            limit: Limit1000 = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """
            **Role**: Search users with optional filters
            **Inputs**:
            - query: Free-text search
            - department, status, role: Exact-match filters applied by Saviynt
            - limit: Maximum number of users to return
            **Outputs**:
            - The searchUsers response from Saviynt
            """
            return await self._run("saviynt_search_users", lambda: self._post("/ECM/api/searchUsers", {
                "query": as_string(query),
                "department": as_string(department),
                "status": as_string(status),
                "role": as_string(role),
                "limit": limit,
            }), profile_id)

        @self._tool("saviynt_get_accounts")
        async def saviynt_get_accounts(
            identity_id: NonEmptyStr,
            application_id: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Get accounts by identity/user."""
            return await self._run("saviynt_get_accounts", lambda: self._post("/ECM/api/getAccounts", {
                "identityId": _require(identity_id, "identity_id"),
                "applicationId": as_string(application_id),
            }), profile_id)

        @self._tool("saviynt_get_entitlements")
        async def saviynt_get_entitlements(
            identity_id: NonEmptyStr,
            application_id: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Get entitlements by identity/user."""
            return await self._run("saviynt_get_entitlements", lambda: self._post("/ECM/api/getEntitlements", {
                "identityId": _require(identity_id, "identity_id"),
                "applicationId": as_string(application_id),
            }), profile_id)

        #######################
        ## Access requests

        @self._tool("saviynt_search_access_requests")
        async def saviynt_search_access_requests(
            status: Optional[str] = None,
            requestor: Optional[str] = None,
            limit: Limit1000 = None,
            offset: Offset = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """List/search access requests."""
            return await self._run("saviynt_search_access_requests", lambda: self._post(
                "/ECM/api/listAccessRequests", {
                    "status": as_string(status),
                    "requestor": as_string(requestor),
                    "limit": limit,
                    "offset": offset,
                }
            ), profile_id)

        #######################
        ## Applications, endpoints and imports

        @self._tool("saviynt_list_applications")
        async def saviynt_list_applications(
            search_text: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """List applications configured in Saviynt."""
            return await self._run("saviynt_list_applications", lambda: self._post(
                "/ECM/api/listApplications", {"searchText": as_string(search_text)}
            ), profile_id)

        @self._tool("saviynt_list_endpoints")
        async def saviynt_list_endpoints(
            search_text: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """List security systems/endpoints."""
            return await self._run("saviynt_list_endpoints", lambda: self._post(
                "/ECM/api/listEndpoints", {"searchText": as_string(search_text)}
            ), profile_id)

        @self._tool("saviynt_search_security_systems")
        async def saviynt_search_security_systems(
            search_text: Optional[str] = None,
            type: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Search security systems/endpoints."""
            return await self._run("saviynt_search_security_systems", lambda: self._post(
                "/ECM/api/searchSecuritySystems", {"searchText": as_string(search_text), "type": as_string(type)}
            ), profile_id)

        def import_jobs(endpoint_id: str, application_id: Optional[str], import_type: str) -> Awaitable[Any]:
            return self._post("/ECM/api/getEndpointImportJobs", {
                "endpointId": _require(endpoint_id, "endpoint_id"),
                "applicationId": as_string(application_id),
                "importType": import_type,
            })

        @self._tool("saviynt_get_accounts_import_details")
        async def saviynt_get_accounts_import_details(
            endpoint_id: NonEmptyStr,
            application_id: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Get account import details/jobs for an endpoint."""
            return await self._run("saviynt_get_accounts_import_details",
                                   lambda: import_jobs(endpoint_id, application_id, "accounts"), profile_id)

        @self._tool("saviynt_get_access_import_details")
        async def saviynt_get_access_import_details(
            endpoint_id: NonEmptyStr,
            application_id: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Get access import details/jobs for an endpoint."""
            return await self._run("saviynt_get_access_import_details",
                                   lambda: import_jobs(endpoint_id, application_id, "access"), profile_id)

        @self._tool("saviynt_get_import_job_status")
        async def saviynt_get_import_job_status(job_id: NonEmptyStr, profile_id: ProfileIdArg = None) -> ToolResult:
            """Get import job status by job ID."""
            async def handler():
                job = quote(_require(job_id, "job_id"), safe="")
                return await self._api_client.call(f"/ECM/api/jobs/{job}", "GET")
            return await self._run("saviynt_get_import_job_status", handler, profile_id)

        #######################
        ## Audit and configuration

        @self._tool("saviynt_get_audit_log")
        async def saviynt_get_audit_log(
            entity_type: Optional[str] = None,
            entity_id: Optional[str] = None,
            action: Optional[str] = None,
            start_date: Optional[str] = None,
            end_date: Optional[str] = None,
            limit: Limit5000 = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """
            **Role**: Query audit log entries
            **Inputs**:
            - entity_type, entity_id: Restrict entries to one kind of object or one object
            - action: Restrict entries to one audited action
            - start_date, end_date: Date window, in the format your Saviynt tenant expects
            - limit: Maximum number of entries (up to 5000)
            **Outputs**:
            - The auditLog response from Saviynt
            """
            return await self._run("saviynt_get_audit_log", lambda: self._post("/ECM/api/auditLog", {
                "entityType": as_string(entity_type),
                "entityId": as_string(entity_id),
                "action": as_string(action),
                "startDate": as_string(start_date),
                "endDate": as_string(end_date),
                "limit": limit,
            }), profile_id)

        @self._tool("saviynt_get_system_config")
        async def saviynt_get_system_config(
            config_key: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Get Saviynt configuration values."""
            return await self._run("saviynt_get_system_config", lambda: self._api_client.call(
                "/ECM/api/config", "GET", query={"configKey": as_string(config_key)}
            ), profile_id)

        @self._tool("saviynt_list_roles")
        async def saviynt_list_roles(
            search_text: Optional[str] = None,
            limit: Limit5000 = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """List roles."""
            return await self._run("saviynt_list_roles", lambda: self._api_client.call(
                "/ECM/api/roles", "GET", query={"searchText": as_string(search_text), "limit": limit}
            ), profile_id)

        @self._tool("saviynt_list_campaigns")
        async def saviynt_list_campaigns(
            status: Optional[str] = None,
            limit: Limit5000 = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """List campaigns."""
            return await self._run("saviynt_list_campaigns", lambda: self._post(
                "/ECM/api/listCampaigns", {"status": as_string(status), "limit": limit}
            ), profile_id)

    def _register_compatibility_tools(self) -> None:
        """Register helpers kept for older clients."""

        @self._tool("get_users")
        async def get_users(
            query: Optional[str] = None,
            limit: Limit1000 = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Compatibility alias for listing/querying users."""
            return await self._run("get_users", lambda: self._post(
                "/ECM/api/getIdentities", {"query": as_string(query) or "", "limit": limit or 50}
            ), profile_id)

        @self._tool("get_user_accounts")
        async def get_user_accounts(
            user_id: NonEmptyStr,
            application_id: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Compatibility alias for user account lookup."""
            return await self._run("get_user_accounts", lambda: self._post("/ECM/api/getAccounts", {
                "identityId": _require(user_id, "user_id"),
                "applicationId": as_string(application_id),
            }), profile_id)

        @self._tool("get_user_entitlements")
        async def get_user_entitlements(
            user_id: NonEmptyStr,
            application_id: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Compatibility alias for user entitlement lookup."""
            return await self._run("get_user_entitlements", lambda: self._post("/ECM/api/getEntitlements", {
                "identityId": _require(user_id, "user_id"),
                "applicationId": as_string(application_id),
            }), profile_id)

        @self._tool("get_user_roles")
        async def get_user_roles(user_id: NonEmptyStr, profile_id: ProfileIdArg = None) -> ToolResult:
            """Compatibility helper that extracts role info from user profile response."""
            async def handler():
                user = _require(user_id, "user_id")
                profile = await self._post("/ECM/api/getUser", {"userId": user})
                return {"userId": user, "roles": extract_array(profile), "raw": profile}
            return await self._run("get_user_roles", handler, profile_id)

        @self._tool("get_user_endpoints")
        async def get_user_endpoints(
            user_id: NonEmptyStr,
            search_text: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Compatibility helper for endpoint lookup."""
            async def handler():
                user = _require(user_id, "user_id")
                return await self._post("/ECM/api/listEndpoints", {"searchText": as_string(search_text) or user})
            return await self._run("get_user_endpoints", handler, profile_id)

        @self._tool("get_complete_access_path")
        async def get_complete_access_path(
            user_id: NonEmptyStr,
            application_id: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """
            **Role**: Compatibility helper returning user, account and entitlement data together
            **Inputs**:
            - user_id: The user/identity to inspect
            - application_id: Optional application to restrict accounts and entitlements to
            **Outputs**:
            - profile: the user profile
            - accounts: the user's accounts
            - entitlements: the user's entitlements
            """
            async def handler():
                user = _require(user_id, "user_id")
                app = as_string(application_id)
                # Sub-calls share the invocation's profile through the ambient context
                profile = await self._post("/ECM/api/getUser", {"userId": user})
                accounts = await self._post("/ECM/api/getAccounts", {"identityId": user, "applicationId": app})
                entitlements = await self._post(
                    "/ECM/api/getEntitlements", {"identityId": user, "applicationId": app}
                )
                return {"userId": user, "profile": profile, "accounts": accounts, "entitlements": entitlements}
            return await self._run("get_complete_access_path", handler, profile_id)

        @self._tool("get_list_of_pending_requests_for_approver")
        async def get_list_of_pending_requests_for_approver(
            max: Limit500 = None,
            limit: Limit500 = None,
            offset: Offset = None,
            status: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Compatibility tool for pending request workflows."""
            async def handler():
                result = await self._post("/ECM/api/listAccessRequests", {
                    "status": as_string(status) or "PENDING",
                    "limit": max or limit or 10,
                    "offset": offset or 0,
                })
                requests_found = extract_array(result)
                return {"success": True, "requests": requests_found, "count": len(requests_found), "raw": result}
            return await self._run("get_list_of_pending_requests_for_approver", handler, profile_id)

    def _register_write_tools(self) -> None:
        """Register access request workflow tools that change data."""

        @self._tool("saviynt_create_access_request")
        async def saviynt_create_access_request(
            identity_id: NonEmptyStr,
            application_id: NonEmptyStr,
            entitlement_ids: Annotated[List[str], Field(min_length=1)],
            justification: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Create a new access request."""
            async def handler():
                self._api_client.ensure_writes_enabled("saviynt_create_access_request")
                return await self._post("/ECM/api/createAccessRequest", {
                    "identityId": _require(identity_id, "identity_id"),
                    "applicationId": _require(application_id, "application_id"),
                    "entitlementIds": list(entitlement_ids or []),
                    "justification": as_string(justification),
                })
            return await self._run("saviynt_create_access_request", handler, profile_id)

        @self._tool("saviynt_approve_request")
        async def saviynt_approve_request(
            request_id: NonEmptyStr,
            approver_comments: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Approve an access request."""
            async def handler():
                self._api_client.ensure_writes_enabled("saviynt_approve_request")
                return await self._post("/ECM/api/approveAccessRequest", {
                    "requestId": _require(request_id, "request_id"),
                    "approverComments": as_string(approver_comments),
                })
            return await self._run("saviynt_approve_request", handler, profile_id)

        @self._tool("saviynt_reject_request")
        async def saviynt_reject_request(
            request_id: NonEmptyStr,
            rejection_reason: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Reject an access request."""
            async def handler():
                self._api_client.ensure_writes_enabled("saviynt_reject_request")
                return await self._post("/ECM/api/rejectAccessRequest", {
                    "requestId": _require(request_id, "request_id"),
                    "rejectionReason": as_string(rejection_reason),
                })
            return await self._run("saviynt_reject_request", handler, profile_id)

        @self._tool("saviynt_revoke_access")
        async def saviynt_revoke_access(
            account_id: NonEmptyStr,
            entitlement_ids: Optional[List[str]] = None,
            reason: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """Revoke previously granted access."""
            async def handler():
                self._api_client.ensure_writes_enabled("saviynt_revoke_access")
                return await self._post("/ECM/api/revokeAccessRequest", {
                    "accountId": _require(account_id, "account_id"),
                    "entitlementIds": list(entitlement_ids or []),
                    "reason": as_string(reason),
                })
            return await self._run("saviynt_revoke_access", handler, profile_id)

        @self._tool("approve_reject_entire_request")
        async def approve_reject_entire_request(
            request_id: Optional[str] = None,
            request_key: Optional[str] = None,
            action: Optional[str] = None,
            decision: Optional[str] = None,
            status: Optional[str] = None,
            comments: Optional[str] = None,
            approver_comments: Optional[str] = None,
            rejection_reason: Optional[str] = None,
            reason: Optional[str] = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            """
            **Role**: Compatibility write tool used by access review UIs to approve or reject a whole request
            **Inputs**:
            - request_id or request_key: The request to decide on
            - action / decision / status: Decision text; anything containing "reject" rejects, otherwise approves
            - comments / approver_comments / rejection_reason / reason: Comment sent with the decision
            **Outputs**:
            - decision: "approve" or "reject"
            - requestId: the request acted on
            - result: the Saviynt response
            """
            async def handler():
                self._api_client.ensure_writes_enabled("approve_reject_entire_request")
                request = as_string(request_id) or as_string(request_key)
                if not request:
                    raise ValidationError("Missing request ID/key. Provide request_id or request_key.")

                raw_decision = as_string(action) or as_string(decision) or as_string(status) or "approve"
                verdict = "reject" if "reject" in raw_decision.lower() else "approve"
                comment = (as_string(comments) or as_string(approver_comments)
                           or as_string(rejection_reason) or as_string(reason))

                endpoint = "/ECM/api/approveAccessRequest" if verdict == "approve" else "/ECM/api/rejectAccessRequest"
                result = await self._post(endpoint, {
                    "requestId": request,
                    "requestKey": request,
                    "action": verdict,
                    "approverComments": comment if verdict == "approve" else None,
                    "rejectionReason": comment if verdict == "reject" else None,
                    "comments": comment,
                })
                return {"decision": verdict, "requestId": request, "result": result}
            return await self._run("approve_reject_entire_request", handler, profile_id)

    def _register_v5_write_tools(self) -> None:
        """Register the typed v5 write wrappers."""
        for name, description, method, operation_path in V5_WRITE_OPERATIONS:
            self._register_v5_write_tool(name, description, method, operation_path)

    def _register_v5_write_tool(self, name: str, description: str, method: str, operation_path: str) -> None:

        async def v5_write_tool(
            payload: Annotated[JsonObject, Field(
                description="JSON request body exactly as required by your Saviynt endpoint")] = None,
            params: Annotated[JsonObject, Field(description="Optional query parameters")] = None,
            api_path: Annotated[Optional[str], Field(
                description="Optional API path override. Default: api/v5")] = None,
            url: OptionalUrlArg = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            async def handler():
                self._api_client.ensure_writes_enabled(name)
                endpoint = f"/ECM/{self._resolve_api_path(api_path)}/{operation_path}"
                result = await self._api_client.call(
                    endpoint, method, query=as_object(params), body=as_object(payload), base_url=as_string(url)
                )
                return {"success": True, "tool": name, "method": method, "endpoint": endpoint, "result": result}
            return await self._run(name, handler, profile_id)

        self._tool(name, description)(v5_write_tool)

    def _register_generic_tools(self) -> None:
        """Register generic resource tools and the raw request escape hatch."""

        async def create_resource(
            endpoint: Annotated[NonEmptyStr, Field(
                description="Saviynt endpoint path, e.g. /ECM/api/yourCreateEndpoint")],
            body: Annotated[JsonObject, Field(description="Request payload")] = None,
            params: Annotated[JsonObject, Field(description="Optional query parameters")] = None,
            url: OptionalUrlArg = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            async def handler():
                self._api_client.ensure_writes_enabled("saviynt_create_resource")
                path = _require(endpoint, "endpoint")
                result = await self._api_client.call(
                    path, "POST", query=as_object(params), body=as_object(body), base_url=as_string(url)
                )
                return {"success": True, "operation": "create", "endpoint": path, "result": result}
            return await self._run("saviynt_create_resource", handler, profile_id)

        async def modify_resource(
            endpoint: Annotated[NonEmptyStr, Field(description="Saviynt endpoint path")],
            method: Annotated[Optional[Literal["PATCH", "PUT", "POST"]], Field(description="Default: PATCH")] = None,
            body: Annotated[JsonObject, Field(description="Request payload")] = None,
            params: Annotated[JsonObject, Field(description="Optional query parameters")] = None,
            url: OptionalUrlArg = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            async def handler():
                self._api_client.ensure_writes_enabled("saviynt_modify_resource")
                path = _require(endpoint, "endpoint")
                verb = method if method in ("PUT", "PATCH", "POST") else "PATCH"
                result = await self._api_client.call(
                    path, verb, query=as_object(params), body=as_object(body), base_url=as_string(url)
                )
                return {"success": True, "operation": "modify", "method": verb, "endpoint": path, "result": result}
            return await self._run("saviynt_modify_resource", handler, profile_id)

        async def delete_resource(
            endpoint: Annotated[NonEmptyStr, Field(description="Saviynt endpoint path")],
            method: Annotated[Optional[Literal["DELETE", "POST"]], Field(description="Default: DELETE")] = None,
            params: Annotated[JsonObject, Field(description="Optional query parameters")] = None,
            body: Annotated[JsonObject, Field(description="Optional request payload")] = None,
            url: OptionalUrlArg = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            async def handler():
                self._api_client.ensure_writes_enabled("saviynt_delete_resource")
                path = _require(endpoint, "endpoint")
                verb = "POST" if method == "POST" else "DELETE"
                result = await self._api_client.call(
                    path, verb, query=as_object(params), body=as_object(body), base_url=as_string(url)
                )
                return {"success": True, "operation": "delete", "method": verb, "endpoint": path, "result": result}
            return await self._run("saviynt_delete_resource", handler, profile_id)

        async def raw_request(
            endpoint: NonEmptyStr,
            method: Optional[Literal["GET", "POST", "PUT", "PATCH", "DELETE"]] = None,
            params: JsonObject = None,
            body: JsonObject = None,
            url: OptionalUrlArg = None,
            profile_id: ProfileIdArg = None
        ) -> ToolResult:
            async def handler():
                path = _require(endpoint, "endpoint")
                verb = (method or "GET").upper()
                if verb in WRITE_METHODS:
                    self._api_client.ensure_writes_enabled("raw_request")

                # Login and token endpoints are called without a bearer token
                lowered = path.lower()
                requires_auth = "/login" not in lowered and "/token" not in lowered

                return await self._api_client.call(
                    path,
                    verb,
                    query=as_object(params),
                    body=as_object(body),
                    base_url=as_string(url),
                    profile_id=as_string(profile_id),
                    requires_auth=requires_auth,
                )
            return await self._run("saviynt_raw_request", handler, profile_id)

        self._tool("saviynt_create_resource",
                   "Generic create operation using POST to a Saviynt endpoint.")(create_resource)
        self._tool("create_resource", "Compatibility alias for saviynt_create_resource.")(create_resource)
        self._tool("saviynt_modify_resource",
                   "Generic modify operation using PATCH/PUT/POST to a Saviynt endpoint.")(modify_resource)
        self._tool("modify_resource", "Compatibility alias for saviynt_modify_resource.")(modify_resource)
        self._tool("saviynt_delete_resource",
                   "Generic delete operation using DELETE (or POST if required by target endpoint).")(delete_resource)
        self._tool("delete_resource", "Compatibility alias for saviynt_delete_resource.")(delete_resource)
        self._tool("saviynt_raw_request", "Raw Saviynt API request for custom endpoints.")(raw_request)
        self._tool("raw_request", "Compatibility alias for saviynt_raw_request.")(raw_request)

    def _register_routes(self) -> None:
        """Register plain HTTP routes served next to the MCP endpoint."""

        @self.mcp.custom_route("/health", methods=["GET"])
        async def health(request: Request) -> JSONResponse:
            return JSONResponse({
                "ok": True,
                "name": SERVER_NAME,
                "transport": self.transport,
                "profiles": len(self._profiles),
            })

    def run(self, transport: str = 'stdio', host: str = '127.0.0.1', port: int = 3000, path: str = '/mcp') -> None:
        """Run the MCP server.

        Args:
            transport: 'stdio' (default), 'http' for streamable HTTP, or 'sse' for legacy SSE
            host: Host to bind HTTP transports to (default: '127.0.0.1')
            port: Port to bind HTTP transports to (default: 3000)
            path: URL path for the streamable HTTP endpoint (default: '/mcp')
        """
        if transport == 'stdio':
            self.transport = 'stdio'
            logger.info("Saviynt MCP server starting on stdio transport")
            self.mcp.run(transport='stdio')
        elif transport == 'sse':
            self.transport = 'sse'
            logger.info("Saviynt MCP server listening on http://%s:%s (legacy SSE)", host, port)
            self.mcp.run(transport='sse', host=host, port=port)
        else:
            self.transport = 'streamable-http'
            logger.info("Saviynt MCP server listening on http://%s:%s%s", host, port, path)
            self.mcp.run(transport='streamable-http', host=host, port=port, path=path)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Saviynt MCP Server")
    parser.add_argument("-transport", type=str, choices=["stdio", "http", "sse"], default=None,
                        help="Transport to use (default: MCP_TRANSPORT or stdio)")
    parser.add_argument("--http", action="store_true", help="Shortcut for -transport http")
    parser.add_argument("-saviynt_url", type=str, default=None, help="Override SAVIYNT_BASE_URL")
    parser.add_argument("-enable_write", action="store_true", help="Enable write tools (SAVIYNT_ENABLE_WRITE=true)")
    parser.add_argument("-host", type=str, default=None, help="Host to bind HTTP transports to (default: HOST or 127.0.0.1)")
    parser.add_argument("-port", type=int, default=None, help="Port to bind HTTP transports to (default: PORT or 3000)")
    parser.add_argument("-path", type=str, default="/mcp", help="URL path for the MCP endpoint (default: /mcp)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv(override=True)
    args = _parse_args(argv)

    settings = ServerSettings.from_env(
        default_base_url=args.saviynt_url,
        enable_writes=True if args.enable_write else None,
    )
    # stdout carries the stdio protocol stream
    logging.basicConfig(
        stream=sys.stderr,
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    transport = args.transport or ("http" if args.http else settings.transport)
    server = SaviyntMCPServer(settings=settings)
    server.run(
        transport=transport,
        host=args.host or settings.host,
        port=args.port or settings.port,
        path=args.path,
    )


if __name__ == "__main__":
    main()
