"""
Tests for success-match rule evaluation.
"""

import pytest

from msgbridge.success import evaluate


class TestNoRule:
    @pytest.mark.parametrize("rule", [None, "", "   "])
    def test_always_success(self, rule):
        assert evaluate({"any": 1}, rule) is True


class TestEqualityRule:
    """path==value rules."""

    def test_match(self):
        assert evaluate({"status": "ok"}, "status==ok") is True

    def test_mismatch(self):
        assert evaluate({"status": "ok"}, "status==fail") is False

    def test_missing_path(self):
        assert evaluate({}, "status==ok") is False

    def test_whitespace_around_operator(self):
        assert evaluate({"status": "ok"}, " status == ok ") is True

    def test_nested_path(self):
        assert evaluate({"data": {"code": "0"}}, "data.code==0") is True

    def test_number_compared_as_string(self):
        assert evaluate({"code": 200}, "code==200") is True
        assert evaluate({"code": 200.0}, "code==200") is True

    def test_boolean_compared_as_lowercase(self):
        assert evaluate({"success": True}, "success==true") is True
        assert evaluate({"success": False}, "success==true") is False

    def test_text_response(self):
        assert evaluate("OK: queued", "status==ok") is False


class TestJsonPathRule:
    """Rules starting with $ are JSON-path queries."""

    def test_match(self):
        assert evaluate({"messages": [{"id": "wamid.1"}]}, "$.messages[0].id") is True

    def test_no_match(self):
        assert evaluate({}, "$.messages[0].id") is False

    def test_filter_expression(self):
        response = {"results": [{"status": "queued"}, {"status": "failed"}]}
        assert evaluate(response, "$.results[?(@.status == 'queued')]") is True
        assert evaluate(response, "$.results[?(@.status == 'sent')]") is False

    def test_invalid_expression_is_not_matched(self):
        assert evaluate({"a": 1}, "$.[[[") is False

    def test_text_response(self):
        assert evaluate("OK", "$.status") is False


class TestExistenceRule:
    """Bare paths check for a non-null value."""

    def test_present(self):
        assert evaluate({"data": {"id": "x"}}, "data.id") is True

    def test_absent(self):
        assert evaluate({"data": {}}, "data.id") is False

    def test_null(self):
        assert evaluate({"data": {"id": None}}, "data.id") is False

    def test_falsy_value_still_present(self):
        assert evaluate({"count": 0}, "count") is True

    def test_text_response_substring(self):
        assert evaluate("1701 | message accepted", "accepted") is True
        assert evaluate("1702 | invalid number", "accepted") is False
