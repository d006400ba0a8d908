import pytest

from conftest import BASE_URL, login_ok, make_response
from saviynt_auth import Authenticator, ProfileStore, TokenCache
from saviynt_client import SaviyntAPIClient, build_query, current_profile_id, profile_context
from saviynt_utils import LoginRequired, MissingConfiguration, ProfileNotFound, UpstreamError, WriteDisabled


@pytest.fixture
def cache(clock):
    return TokenCache(clock)


@pytest.fixture
def store(cache, clock):
    return ProfileStore(cache, clock=clock)


@pytest.fixture
def client(store, cache, session):
    authenticator = Authenticator(store, cache, session=session)
    return SaviyntAPIClient(store, cache, authenticator, session=session)


def test_build_query_repeats_list_values():
    params = build_query({"ids": ["a", "b"], "active": True, "limit": 5, "skip": None})
    assert params == [("ids", "a"), ("ids", "b"), ("active", "true"), ("limit", "5")]


def test_profile_context_resets():
    with profile_context("p1"):
        assert current_profile_id.get() == "p1"
        with profile_context("p2"):
            assert current_profile_id.get() == "p2"
        assert current_profile_id.get() == "p1"
    assert current_profile_id.get() is None


def test_writes_disabled_by_default(client):
    with pytest.raises(WriteDisabled):
        client.ensure_writes_enabled("saviynt_create_user")


async def test_authenticated_call(client, store, session):
    session.route("/ECM/api/login", login_ok("tok-1"))
    session.route("/ECM/api/getUser", make_response(200, {"user": "alice"}))
    store.upsert("p1", "alice", "pw", BASE_URL)

    result = await client.call("/ECM/api/getUser", "POST", body={"userId": "alice"})

    assert result == {"user": "alice"}
    call = session.calls_to("/ECM/api/getUser")[0]
    assert call["url"] == f"{BASE_URL}/ECM/api/getUser"
    assert call["headers"]["Authorization"] == "Bearer tok-1"
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["json"] == {"userId": "alice"}


async def test_single_retry_after_unauthorized(client, store, session):
    session.route("/ECM/api/login", [login_ok("old"), login_ok("new")])
    session.route("/ECM/api/roles", [
        make_response(401, {}, reason="Unauthorized"),
        make_response(200, {"roles": []}),
    ])
    store.upsert("p1", "alice", "pw", BASE_URL)

    result = await client.call("/ECM/api/roles")

    assert result == {"roles": []}
    assert len(session.calls_to("/ECM/api/login")) == 2
    role_calls = session.calls_to("/ECM/api/roles")
    assert [c["headers"]["Authorization"] for c in role_calls] == ["Bearer old", "Bearer new"]


async def test_persistent_unauthorized_fails_after_one_retry(client, store, session):
    session.route("/ECM/api/login", login_ok())
    session.route("/ECM/api/roles", make_response(401, {"error": "denied"}, reason="Unauthorized"))
    store.upsert("p1", "alice", "pw", BASE_URL)

    with pytest.raises(UpstreamError) as excinfo:
        await client.call("/ECM/api/roles")

    assert excinfo.value.status == 401
    assert len(session.calls_to("/ECM/api/roles")) == 2


async def test_upstream_error_excerpt_is_truncated(client, store, session):
    session.route("/ECM/api/login", login_ok())
    session.route("/ECM/api/boom", make_response(500, "e" * 3000, content_type="text/plain", reason="Server Error"))
    store.upsert("p1", "alice", "pw", BASE_URL)

    with pytest.raises(UpstreamError) as excinfo:
        await client.call("/ECM/api/boom")

    assert excinfo.value.status == 500
    assert excinfo.value.excerpt == "e" * 2000 + "... [truncated]"


async def test_query_parameters_are_sent(client, store, session):
    session.route("/ECM/api/login", login_ok())
    session.route("/ECM/api/config", make_response(200, {}))
    store.upsert("p1", "alice", "pw", BASE_URL)

    await client.call("/ECM/api/config", query={"key": ["a", "b"]})

    assert session.calls_to("/ECM/api/config")[0]["params"] == [("key", "a"), ("key", "b")]


async def test_base_url_override(client, store, session):
    session.route("/ECM/api/login", login_ok())
    session.route("/ECM/api/roles", make_response(200, {}))
    store.upsert("p1", "alice", "pw", BASE_URL)

    await client.call("/ECM/api/roles", base_url="https://other.example.com/")

    assert all(c["url"].startswith("https://other.example.com/") for c in session.calls)


async def test_ambient_profile_is_used(client, store, session):
    session.route("/ECM/api/login", lambda call: login_ok(f"tok-{call['json']['username']}"))
    session.route("/ECM/api/roles", make_response(200, {}))
    store.upsert("p1", "alice", "pw", BASE_URL)
    store.upsert("p2", "bob", "pw", BASE_URL, make_active=False)

    with profile_context("p2"):
        await client.call("/ECM/api/roles")

    assert session.calls_to("/ECM/api/roles")[0]["headers"]["Authorization"] == "Bearer tok-bob"


async def test_no_profile_requires_login(client, session):
    with pytest.raises(LoginRequired):
        await client.call("/ECM/api/roles")
    assert session.calls == []


async def test_unknown_profile(client, store):
    store.upsert("p1", "alice", "pw", BASE_URL)
    with pytest.raises(ProfileNotFound):
        await client.call("/ECM/api/roles", profile_id="ghost")


async def test_unauthenticated_call_without_profile(client, session):
    session.route("/ECM/api/login", make_response(200, {"token": "t"}))

    result = await client.call("/ECM/api/login", "POST", body={"username": "u"},
                               base_url=BASE_URL, requires_auth=False)

    assert result == {"token": "t"}
    assert "Authorization" not in session.calls[0]["headers"]


async def test_unauthenticated_call_without_base_url(client):
    with pytest.raises(MissingConfiguration):
        await client.call("/ECM/api/login", requires_auth=False)
