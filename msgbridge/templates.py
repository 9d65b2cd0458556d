"""
Template rendering for provider request templates.

Route templates are stored as Mustache-style strings:

    https://api.example.com/send?to={{to}}&text={{#urlEncode}}{{text}}{{/urlEncode}}

They are translated into a sandboxed Jinja2 template and checked against a
closed grammar before rendering: variable interpolation (including dotted
lookups) and the helper sections in HELPERS. Loops, conditionals, calls and
any other construct are rejected. Variable names follow Mustache rather than
Python, so `{{api-key}}` and `{{not}}` are plain context keys. Output is
never escaped; templates pick a helper when a value must be encoded.
"""

import base64
import json
import logging
import re
from functools import lru_cache
from typing import Any, Callable, Optional
from urllib.parse import quote

import jinja2
from jinja2 import nodes
from jinja2.sandbox import SandboxedEnvironment

from msgbridge.errors import TemplateError
from msgbridge.json_path import extract

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    """Stringify a context value the way provider templates expect."""
    if value is None or isinstance(value, jinja2.Undefined):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def url_encode(value: Any) -> str:
    # Same reserved set as JavaScript's encodeURIComponent
    return quote(_text(value), safe="-_.!~*'()")


def base64_encode(value: Any) -> str:
    return base64.b64encode(_text(value).encode("utf-8")).decode("ascii")


def json_stringify(value: Any) -> str:
    return json.dumps(_text(value), ensure_ascii=False)


HELPERS: dict[str, Callable[[Any], str]] = {
    "urlEncode": url_encode,
    "base64Encode": base64_encode,
    "jsonStringify": json_stringify,
}

_ALLOWED_NODES = (
    nodes.Output,
    nodes.TemplateData,
    nodes.Name,
    nodes.Getitem,
    nodes.Const,
    nodes.FilterBlock,
    nodes.Filter,
)

_COMMENT = re.compile(r"\{\{!.*?\}\}", re.DOTALL)
_TAG = re.compile(r"\{\{\{\s*([^{}]*?)\s*\}\}\}|\{\{\s*([#^/&]?)\s*([^{}]*?)\s*\}\}")
# Mustache key names: anything a JSON credential key plausibly uses, no operators
_NAME = re.compile(r"^[\w\-$@:]+(?:\.[\w\-$@:]+)*$")


def _translate_section(sigil: str, name: str) -> str:
    if name not in HELPERS:
        raise TemplateError(f"Unsupported template section '{sigil}{name}'")
    if sigil == "#":
        return "{% filter " + name + " %}"
    if sigil == "/":
        return "{% endfilter %}"
    raise TemplateError(f"Inverted sections are not supported: '^{name}'")


def _translate_variable(name: str, names: list[str]) -> str:
    if not _NAME.match(name):
        raise TemplateError(f"Invalid template variable '{name}'")
    if any(segment.startswith("__") for segment in name.split(".")):
        raise TemplateError(f"Private attribute lookup not allowed: '{name}'")
    names.append(name)
    return "{{ slots[%d] }}" % (len(names) - 1)


def _to_jinja(template: str) -> tuple[str, tuple[str, ...]]:
    """
    Rewrite Mustache tags into Jinja.

    Variables become positional slots resolved in Python at render time, so
    names that are not Jinja identifiers (`api-key`, `not`) still work.
    """
    names: list[str] = []

    def translate(match: "re.Match[str]") -> str:
        triple, sigil, name = match.groups()
        if triple is not None:
            return _translate_variable(triple, names)
        if sigil and sigil != "&":
            return _translate_section(sigil, name)
        return _translate_variable(name, names)

    source = _TAG.sub(translate, _COMMENT.sub("", template))
    return source, tuple(names)


def _check_grammar(tree: nodes.Template) -> None:
    for node in tree.find_all(nodes.Node):
        if not isinstance(node, _ALLOWED_NODES):
            raise TemplateError(f"Template construct not allowed: {type(node).__name__}")
        if isinstance(node, nodes.Name) and node.name != "slots":
            raise TemplateError(f"Template construct not allowed: bare name '{node.name}'")
        if isinstance(node, nodes.Filter):
            if node.name not in HELPERS:
                raise TemplateError(f"Unknown template helper '{node.name}'")
            if node.args or node.kwargs or node.dyn_args or node.dyn_kwargs:
                raise TemplateError(f"Helper '{node.name}' takes no arguments")


def _build_environment() -> SandboxedEnvironment:
    env = SandboxedEnvironment(
        autoescape=False,
        undefined=jinja2.ChainableUndefined,
        finalize=_text,
        keep_trailing_newline=True,
    )
    env.globals.clear()
    env.filters = dict(HELPERS)
    env.tests = {}
    return env


_env = _build_environment()


@lru_cache(maxsize=512)
def _compile(template: str) -> tuple[jinja2.Template, tuple[str, ...]]:
    try:
        source, names = _to_jinja(template)
        _check_grammar(_env.parse(source))
        return _env.from_string(source), names
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"Template syntax error on line {e.lineno}: {e.message}") from e


def render(template: Optional[str], context: dict[str, Any]) -> str:
    """Render `template` against `context`. A missing template renders empty."""
    if not template:
        return ""
    compiled, names = _compile(template)
    try:
        return compiled.render(slots=[extract(context, name) for name in names])
    except jinja2.TemplateError as e:
        raise TemplateError(f"Template rendering failed: {e}") from e


def render_json(template: str, context: dict[str, Any]) -> Any:
    """Render `template` and parse the result as JSON."""
    rendered = render(template, context)
    try:
        return json.loads(rendered)
    except json.JSONDecodeError as e:
        logger.debug(f"Rendered template is not JSON: {rendered[:200]!r}")
        raise TemplateError(f"Rendered template is not valid JSON: {e.msg} at position {e.pos}") from e


class TemplateRenderer:
    """
    Renders several templates against one context, e.g. the URL, headers
    and body of a single provider request.
    """

    def __init__(self, context: Optional[dict[str, Any]] = None):
        self.context: dict[str, Any] = dict(context or {})

    def add(self, key: str, value: Any) -> "TemplateRenderer":
        self.context[key] = value
        return self

    def render(self, template: Optional[str]) -> str:
        return render(template, self.context)

    def render_json(self, template: str) -> Any:
        return render_json(template, self.context)
