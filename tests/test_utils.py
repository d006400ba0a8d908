import json

import pytest

from conftest import make_response
from saviynt_utils import (
    AuthenticationFailed,
    ResultShaper,
    UpstreamError,
    as_number,
    as_string,
    compact,
    error_result,
    extract_array,
    login_required_result,
    parse_response_body,
    truncate,
)


class TestResultShaper:

    def test_small_dict_passes_through(self):
        value = {"success": True, "items": [1, 2, 3]}
        shaped = ResultShaper().shape(value)

        assert json.loads(shaped.text) == value
        assert shaped.structured_content == value

    def test_long_text_is_truncated_with_marker(self):
        value = {"blob": "x" * 25000}
        full_text = json.dumps(value, indent=2)

        shaped = ResultShaper(20000, 4000).shape(value)

        omitted = len(full_text) - 20000
        assert shaped.text.startswith(full_text[:20000])
        assert shaped.text.endswith(f"... [truncated {omitted} chars due to MCP response size limit]")
        assert shaped.structured_content["truncated"] is True
        assert shaped.structured_content["originalChars"] == len(full_text)
        assert shaped.structured_content["returnedChars"] == 20000

    def test_medium_dict_keeps_text_and_summarizes_structure(self):
        value = {"alpha": "a" * 5000, "beta": 1}

        shaped = ResultShaper(20000, 4000).shape(value)

        assert json.loads(shaped.text) == value
        assert shaped.structured_content["truncated"] is True
        assert shaped.structured_content["keys"] == ["alpha", "beta"]
        assert "returnedChars" not in shaped.structured_content

    def test_summary_lists_at_most_fifty_keys(self):
        value = {f"key{i:03d}": "v" * 100 for i in range(80)}

        shaped = ResultShaper(100000, 4000).shape(value)

        assert len(shaped.structured_content["keys"]) == 50

    def test_list_value_has_no_structured_content(self):
        shaped = ResultShaper().shape([1, 2])
        assert shaped.structured_content is None

    def test_string_value_is_used_as_text(self):
        shaped = ResultShaper().shape("plain text")
        assert shaped.text == "plain text"
        assert shaped.structured_content is None

    def test_invalid_limits_fall_back_to_defaults(self):
        shaper = ResultShaper("bogus", -1)
        assert shaper.max_text_chars == 20000
        assert shaper.max_structured_chars == 4000


class TestParseResponseBody:

    def test_empty_body_is_empty_object(self):
        assert parse_response_body(make_response(200, "   ", content_type="text/plain")) == {}

    def test_json_content_type(self):
        assert parse_response_body(make_response(200, {"a": 1})) == {"a": 1}

    def test_json_looking_text_is_parsed(self):
        assert parse_response_body(make_response(200, "[1, 2]", content_type="text/plain")) == [1, 2]

    def test_malformed_json_returns_raw_text(self):
        assert parse_response_body(make_response(200, "{not json")) == "{not json"

    def test_plain_text(self):
        assert parse_response_body(make_response(200, "hello", content_type="text/plain")) == "hello"


@pytest.mark.parametrize("payload, expected", [
    ([1, 2], [1, 2]),
    ({"requests": [1]}, [1]),
    ({"items": [2]}, [2]),
    ({"pendingRequests": [3]}, [3]),
    ({"results": [4]}, [4]),
    ({"requests": "nope", "data": [5]}, [5]),
    ({"other": [6]}, []),
    ("text", []),
])
def test_extract_array(payload, expected):
    assert extract_array(payload) == expected


def test_value_helpers():
    assert as_string("  a  ") == "a"
    assert as_string("   ") is None
    assert as_string(3) is None
    assert as_number(True) is None
    assert as_number(float("inf")) is None
    assert as_number(12) == 12
    assert compact({"a": None, "b": 0, "c": ""}) == {"b": 0, "c": ""}


def test_truncate_appends_marker():
    assert truncate("abc", 5) == "abc"
    assert truncate("abcdefgh", 5) == "abcde... [truncated]"


def test_error_result_envelope():
    error = AuthenticationFailed("p1", ["/ECM/api/login -> 401 Unauthorized"])
    shaped = error_result("Tool 'x' failed", str(error), **error.extra())

    assert shaped.structured_content["success"] is False
    assert shaped.structured_content["error"] == "Tool 'x' failed"
    assert shaped.structured_content["attempts"] == ["/ECM/api/login -> 401 Unauthorized"]
    assert "/ECM/api/login -> 401 Unauthorized" in shaped.structured_content["details"]


def test_upstream_error_carries_status():
    error = UpstreamError(500, "Server Error", "boom")
    assert error.extra() == {"status": 500}
    assert "500" in str(error)


def test_login_required_envelope():
    shaped = login_required_result("please log in")

    assert shaped.text == "please log in"
    assert shaped.structured_content["action"] == "render_login_form"
    names = [f["name"] for f in shaped.structured_content["form"]["fields"]]
    assert names == ["profile_id", "username", "password", "url"]
