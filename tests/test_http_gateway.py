"""
Tests for the template-driven HTTP gateway.

The provider is an httpx.MockTransport that records every request.
"""

import json

import httpx
import pytest

from msgbridge.errors import GatewayError, TemplateError
from msgbridge.http_gateway import HttpGateway


class RecordingProvider:
    """MockTransport handler returning a fixed response."""

    def __init__(self, status_code=200, json_body=None, text=None):
        self.status_code = status_code
        self.json_body = json_body
        self.text = text
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.json_body if self.json_body is not None else {})

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_gateway(provider) -> HttpGateway:
    return HttpGateway(transport=httpx.MockTransport(provider))


class TestRequestBuilding:
    """Test how templates become requests."""

    @pytest.mark.asyncio
    async def test_get_with_query_template(self):
        provider = RecordingProvider(json_body={"status": "ok"})
        gateway = make_gateway(provider)

        response = await gateway.send(
            url_template="https://api.example.com/send?to={{to}}&text={{text}}",
            method="GET",
            body_template='{"ignored": true}',
            context={"to": "2348012345678", "text": "Hi"},
        )

        assert response == {"status": "ok"}
        assert provider.last.method == "GET"
        assert str(provider.last.url) == "https://api.example.com/send?to=2348012345678&text=Hi"
        assert provider.last.content == b""

    @pytest.mark.asyncio
    async def test_json_body_and_headers(self):
        provider = RecordingProvider(json_body={"id": "abc"})
        gateway = make_gateway(provider)

        await gateway.send(
            url_template="https://api.example.com/messages",
            headers_template='{"Authorization": "Bearer {{apiKey}}", "X-Retry": 1}',
            body_template='{"to": "{{to}}", "text": {{#jsonStringify}}{{text}}{{/jsonStringify}}}',
            content_type="application/json",
            context={"apiKey": "key-1", "to": "123", "text": 'say "hi"'},
        )

        request = provider.last
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer key-1"
        assert request.headers["X-Retry"] == "1"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"to": "123", "text": 'say "hi"'}

    @pytest.mark.asyncio
    async def test_form_body_sent_as_rendered_text(self):
        provider = RecordingProvider(json_body={})
        gateway = make_gateway(provider)

        await gateway.send(
            url_template="https://api.example.com/messages",
            body_template="To={{to}}&Body={{#urlEncode}}{{text}}{{/urlEncode}}",
            content_type="application/x-www-form-urlencoded",
            context={"to": "123", "text": "a b"},
        )

        assert provider.last.content == b"To=123&Body=a%20b"
        assert provider.last.headers["Content-Type"] == "application/x-www-form-urlencoded"

    @pytest.mark.asyncio
    async def test_text_response(self):
        provider = RecordingProvider(text="OK 1701")
        gateway = make_gateway(provider)

        response = await gateway.send(url_template="https://api.example.com/send", method="GET")
        assert response == "OK 1701"

    @pytest.mark.asyncio
    async def test_invalid_json_body_template(self):
        gateway = make_gateway(RecordingProvider())
        with pytest.raises(TemplateError):
            await gateway.send(
                url_template="https://api.example.com/send",
                body_template='{"text": "{{text}}"',
                content_type="application/json",
                context={"text": "x"},
            )

    @pytest.mark.asyncio
    async def test_headers_must_be_object(self):
        gateway = make_gateway(RecordingProvider())
        with pytest.raises(TemplateError):
            await gateway.send(url_template="https://api.example.com/send", headers_template='["a"]')


class TestFailures:
    """Test error mapping."""

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_body(self):
        provider = RecordingProvider(status_code=400, json_body={"error": "invalid number"})
        gateway = make_gateway(provider)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.send(url_template="https://api.example.com/send")

        assert exc_info.value.status_code == 400
        assert exc_info.value.response_body == {"error": "invalid number"}
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = HttpGateway(transport=httpx.MockTransport(refuse))
        with pytest.raises(GatewayError) as exc_info:
            await gateway.send(url_template="https://api.example.com/send")
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = HttpGateway(transport=httpx.MockTransport(slow))
        with pytest.raises(GatewayError):
            await gateway.send(url_template="https://api.example.com/send")

    @pytest.mark.asyncio
    async def test_unencodable_header_value_raises(self):
        provider = RecordingProvider(json_body={"status": "ok"})
        gateway = make_gateway(provider)

        with pytest.raises(GatewayError):
            await gateway.send(
                url_template="https://api.example.com/send",
                headers_template='{"X-Sender": "{{sender}}"}',
                context={"sender": "Café ✓"},
            )
        assert provider.requests == []
