"""
Template-driven HTTP gateway.

Turns a route's stored request templates plus a context into an outbound
provider call and returns the provider's response body.
"""

import logging
from typing import Any, Optional

import httpx

from msgbridge.errors import GatewayError, TemplateError
from msgbridge.metrics import record_gateway_outcome
from msgbridge.templates import TemplateRenderer

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0

BODYLESS_METHODS = ("GET", "HEAD")


def _is_json(content_type: Optional[str]) -> bool:
    return bool(content_type) and "json" in content_type.lower()


def _loggable_url(url: str) -> str:
    # Query strings often carry API keys
    return url.split("?")[0]


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return ""
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpGateway:
    """
    Executes outbound provider requests.

    One instance is shared by the queue processor, the WhatsApp sender and
    the test-send endpoints. A custom httpx transport can be injected (tests
    use httpx.MockTransport).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._transport = transport

    async def send(
        self,
        url_template: str,
        method: str = "POST",
        headers_template: Optional[str] = None,
        body_template: Optional[str] = None,
        content_type: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Render a route's templates and execute the request.

        Args:
            url_template: Mustache template for the URL
            method: HTTP method
            headers_template: Template rendering to a JSON object of headers
            body_template: Template for the body; parsed as JSON before
                sending when content_type is JSON, sent as text otherwise
            content_type: Content-Type for the request
            context: Values available to the templates
            timeout: Per-call override of the gateway timeout, in seconds

        Returns:
            The response body, parsed as JSON when possible.

        Raises:
            TemplateError: a template is invalid or headers/body are not JSON
            GatewayError: non-2xx response or transport failure
        """
        renderer = TemplateRenderer(context)
        method = (method or "POST").upper()

        url = renderer.render(url_template).strip()

        headers: dict[str, str] = {}
        if headers_template:
            rendered_headers = renderer.render_json(headers_template)
            if not isinstance(rendered_headers, dict):
                raise TemplateError("Headers template must render to a JSON object")
            headers.update({str(k): "" if v is None else str(v) for k, v in rendered_headers.items()})

        if content_type:
            headers["Content-Type"] = content_type

        json_body: Any = None
        content: Optional[str] = None
        if body_template and method not in BODYLESS_METHODS:
            if _is_json(content_type):
                json_body = renderer.render_json(body_template)
            else:
                content = renderer.render(body_template)

        return await self.execute(
            method,
            url,
            headers=headers,
            json_body=json_body,
            content=content,
            timeout=timeout,
        )

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json_body: Any = None,
        content: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send an already-built request and return the parsed response body."""
        method = method.upper()
        if method in BODYLESS_METHODS:
            json_body, content = None, None

        logger.info(f"Outbound request: {method} {_loggable_url(url)}")

        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    json=json_body,
                    content=content,
                )
        except httpx.TimeoutException as e:
            record_gateway_outcome("error")
            logger.error(f"Provider request timed out: {method} {_loggable_url(url)}")
            raise GatewayError(f"Provider request timed out: {e}") from e
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeError, ValueError) as e:
            # UnicodeError/ValueError: rendered header values httpx cannot encode
            record_gateway_outcome("error")
            logger.error(f"Provider request failed: {method} {_loggable_url(url)}: {e}")
            raise GatewayError(f"Provider request failed: {e}") from e

        body = _response_body(response)

        if not response.is_success:
            record_gateway_outcome("rejected")
            logger.error(
                f"Provider returned {response.status_code}",
                extra={"url": _loggable_url(url), "provider_response": str(body)[:500]},
            )
            raise GatewayError(
                f"Provider returned HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=body,
            )

        record_gateway_outcome("success")
        logger.debug(f"Provider response: {str(body)[:200]}")
        return body
