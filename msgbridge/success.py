"""
Decide whether a provider response means the message was accepted.

Match rules are stored per route:

- empty               -> always success
- "status==ok"        -> dotted path equals the literal (compared as strings)
- "$.messages[0].id"  -> JSON-path query returns at least one match
- "data.id"           -> dotted path resolves to a non-null value; for plain
                         text responses the rule is a substring to look for
"""

import json
import logging
from typing import Any, Optional

from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError
from jsonpath_ng.ext import parse as parse_jsonpath

from msgbridge.json_path import extract

logger = logging.getLogger(__name__)


def _as_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _jsonpath_has_match(response: Any, rule: str) -> bool:
    try:
        expression = parse_jsonpath(rule)
    except (JsonPathLexerError, JsonPathParserError) as e:
        logger.warning(f"Invalid JSON-path success rule {rule!r}: {e}")
        return False
    if not isinstance(response, (dict, list)):
        return False
    return len(expression.find(response)) > 0


def evaluate(response: Any, match_rule: Optional[str]) -> bool:
    """
    Evaluate a success-match rule against a provider response.

    Args:
        response: Parsed JSON response, or the raw text for non-JSON providers
        match_rule: Rule as stored on the route

    Returns:
        True if the response indicates success. Missing paths are "not
        matched", never an error.
    """
    if not match_rule or not match_rule.strip():
        return True

    rule = match_rule.strip()

    if "==" in rule:
        path, expected = (part.strip() for part in rule.split("==", 1))
        actual = extract(response, path)
        if actual is None:
            return False
        return _as_string(actual) == expected

    if rule.startswith("$"):
        return _jsonpath_has_match(response, rule)

    if isinstance(response, str):
        return rule in response

    return extract(response, rule) is not None
