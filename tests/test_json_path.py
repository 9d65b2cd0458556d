"""
Tests for dotted-path extraction from provider JSON.
"""

import pytest

from msgbridge.json_path import extract, matches


PAYLOAD = {
    "a": {"b": [{"c": 5}]},
    "messages": [{"id": "wamid.1"}, {"id": "wamid.2"}],
    "grid": [[1, 2], [3, 4]],
    "flag": False,
    "zero": 0,
    "nothing": None,
}


class TestExtract:
    """Test path walking."""

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("a.b[0].c", 5),
            ("messages[1].id", "wamid.2"),
            ("messages.0.id", "wamid.1"),
            ("grid[1][0]", 3),
            ("flag", False),
            ("zero", 0),
        ],
    )
    def test_found(self, path, expected):
        assert extract(PAYLOAD, path) == expected

    @pytest.mark.parametrize(
        "path",
        [
            "x.y.z",
            "a.b[3].c",
            "messages[0].id.deeper",
            "flag.value",
            "nothing.value",
            "messages.first",
            "a..b",
            "a.b[x]",
        ],
    )
    def test_missing_is_none(self, path):
        assert extract(PAYLOAD, path) is None

    def test_empty_object(self):
        assert extract({}, "x.y.z") is None

    def test_non_container_root(self):
        assert extract("plain text", "a.b") is None
        assert extract(None, "a") is None

    def test_empty_path_returns_object(self):
        assert extract(PAYLOAD, "") is PAYLOAD

    def test_root_list(self):
        assert extract([{"id": 7}], "0.id") == 7


class TestMatches:
    """Test equality helper."""

    def test_equal(self):
        assert matches(PAYLOAD, "a.b[0].c", 5)

    def test_not_equal(self):
        assert not matches(PAYLOAD, "a.b[0].c", "5")

    def test_missing(self):
        assert not matches(PAYLOAD, "missing", None)
