"""
Tests for route registration, webhook paths, credentials and SMS sending.
"""

import base64
import json
import os

import httpx
import pytest

from msgbridge.errors import GatewayError, RouteNotFoundError
from msgbridge.http_gateway import HttpGateway
from msgbridge.models import SmsRoute
from msgbridge.route_service import (
    WebhookPathConflictError,
    create_sms_route,
    create_whatsapp_route,
    deactivate_route,
    issue_webhook_path,
    prepare_sms_context,
    rotate_credentials,
    send_sms,
    send_test_sms,
    update_webhook_config,
    webhook_url,
)
from msgbridge.vault import load_route_config


KEY = os.environ["ENCRYPTION_KEY"]


def make_sms_route(db, **overrides) -> SmsRoute:
    fields = dict(
        provider="Termii",
        name="Main SMS",
        request_url_template="https://api.example.com/send?to={{to}}&text={{#urlEncode}}{{text}}{{/urlEncode}}&key={{apiKey}}",
        request_method="GET",
        success_match="status==ok",
        message_id_path="data.id",
        sender_id="ACME",
    )
    credentials = overrides.pop("credentials", {"apiKey": "key-1"})
    webhook = overrides.pop("webhook", None)
    fields.update(overrides)
    return create_sms_route(db, 1, KEY, credentials=credentials, webhook=webhook, **fields)


def gateway_returning(status_code=200, json_body=None, requests=None) -> HttpGateway:
    def handler(request):
        if requests is not None:
            requests.append(request)
        return httpx.Response(status_code, json=json_body if json_body is not None else {})

    return HttpGateway(transport=httpx.MockTransport(handler))


class TestRegistration:
    """Test route creation and mutations."""

    def test_config_is_encrypted(self, db):
        route = make_sms_route(db)

        assert "key-1" not in route.encrypted_config
        config = load_route_config(route.encrypted_config, KEY)
        assert config.credentials == {"apiKey": "key-1"}
        assert route.webhook_path is None
        assert route.status == "active"

    def test_sms_route_requires_url_template(self, db):
        with pytest.raises(ValueError):
            make_sms_route(db, request_url_template=None)

    def test_webhook_enabled_issues_path(self, db):
        route = make_sms_route(db, webhook={"enabled": True})

        assert route.webhook_enabled is True
        kind, provider, token = route.webhook_path.split("/")
        assert (kind, provider) == ("sms", "termii")
        assert len(token) >= 16
        assert webhook_url(route, "https://hooks.example.com/") == f"https://hooks.example.com/webhooks/{route.webhook_path}"

    def test_custom_path(self, db):
        route = make_sms_route(db, webhook={"enabled": True, "customPath": "/acme/inbound/"})
        assert route.webhook_path == "acme/inbound"

    def test_paths_unique_across_route_tables(self, db):
        make_sms_route(db, webhook={"enabled": True, "customPath": "shared"})
        with pytest.raises(WebhookPathConflictError):
            create_whatsapp_route(
                db, 1, KEY, webhook={"enabled": True, "customPath": "shared"}, provider="Meta", name="WA"
            )

    def test_conflict_leaves_no_row(self, db):
        make_sms_route(db, webhook={"enabled": True, "customPath": "shared"})

        with pytest.raises(WebhookPathConflictError):
            make_sms_route(db, name="second", is_default=True, webhook={"enabled": True, "customPath": "shared"})
        db.rollback()

        rows = db.query(SmsRoute.name, SmsRoute.webhook_path).all()
        assert rows == [("Main SMS", "shared")]

    def test_conflict_keeps_existing_default(self, db):
        first = make_sms_route(db, is_default=True, webhook={"enabled": True, "customPath": "taken"})

        with pytest.raises(WebhookPathConflictError):
            make_sms_route(db, is_default=True, webhook={"enabled": True, "customPath": "taken"})
        db.rollback()

        db.refresh(first)
        assert first.is_default is True

    def test_generated_paths_differ(self, db):
        first = make_sms_route(db)
        second = make_sms_route(db)
        assert issue_webhook_path(db, first) != issue_webhook_path(db, second)

    def test_webhook_url_without_path(self, db):
        assert webhook_url(make_sms_route(db)) is None

    def test_single_default_per_client(self, db):
        first = make_sms_route(db, is_default=True)
        second = make_sms_route(db, is_default=True)
        db.refresh(first)
        assert first.is_default is False
        assert second.is_default is True

    def test_rotate_credentials_keeps_webhook(self, db):
        route = make_sms_route(db, webhook={"enabled": True, "verifyToken": "vt"})
        rotate_credentials(db, route, {"apiKey": "key-2"}, KEY)

        config = load_route_config(route.encrypted_config, KEY)
        assert config.credentials == {"apiKey": "key-2"}
        assert config.webhook.verify_token == "vt"

    def test_update_webhook_config_enables_path(self, db):
        route = make_sms_route(db)
        update_webhook_config(db, route, {"enabled": True, "responseStatus": 202}, KEY)

        assert route.webhook_path is not None
        assert load_route_config(route.encrypted_config, KEY).webhook.response_status == 202

    def test_deactivate(self, db):
        route = make_sms_route(db)
        deactivate_route(db, route)
        assert db.get(SmsRoute, route.id).status == "inactive"


class TestPrepareContext:
    def test_adds_message_fields(self):
        context = prepare_sms_context({"apiKey": "k"}, {"to": "1", "text": "Hi", "from": "ACME"})
        assert context == {"apiKey": "k", "to": "1", "text": "Hi", "from": "ACME"}

    def test_basic_auth_for_twilio_style_credentials(self):
        context = prepare_sms_context({"accountSid": "AC1", "authToken": "tok"}, {"to": "1", "text": "Hi"})
        assert context["basicAuthBase64"] == base64.b64encode(b"AC1:tok").decode()


class TestSendSms:
    """Test sending through a route."""

    @pytest.mark.asyncio
    async def test_success_updates_counters(self, db):
        route = make_sms_route(db)
        requests = []
        gateway = gateway_returning(json_body={"status": "ok", "data": {"id": 991}}, requests=requests)

        result = await send_sms(db, route, {"to": "2348012345678", "text": "Hi there", "from": "ACME"}, gateway, KEY)

        assert result.success is True
        assert result.provider_message_id == "991"
        assert str(requests[0].url) == "https://api.example.com/send?to=2348012345678&text=Hi%20there&key=key-1"
        assert (route.usage_count, route.success_count, route.failure_count) == (1, 1, 0)
        assert route.last_used_at is not None

    @pytest.mark.asyncio
    async def test_unmatched_response_counts_failure(self, db):
        route = make_sms_route(db)
        gateway = gateway_returning(json_body={"status": "error"})

        result = await send_sms(db, route, {"to": "1", "text": "Hi"}, gateway, KEY)

        assert result.success is False
        assert (route.usage_count, route.failure_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_gateway_error_counts_failure_and_propagates(self, db):
        route = make_sms_route(db)
        gateway = gateway_returning(status_code=500, json_body={"error": "down"})

        with pytest.raises(GatewayError):
            await send_sms(db, route, {"to": "1", "text": "Hi"}, gateway, KEY)
        assert (route.usage_count, route.failure_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_json_body_route(self, db):
        route = make_sms_route(
            db,
            request_url_template="https://api.twilio.example/Accounts/{{accountSid}}/Messages",
            request_method="POST",
            headers_template='{"Authorization": "Basic {{basicAuthBase64}}"}',
            body_template='{"To": "{{to}}", "From": "{{from}}", "Body": {{#jsonStringify}}{{text}}{{/jsonStringify}}}',
            content_type="application/json",
            success_match="sid",
            credentials={"accountSid": "AC1", "authToken": "tok"},
        )
        requests = []
        gateway = gateway_returning(json_body={"sid": "SM1"}, requests=requests)

        result = await send_sms(db, route, {"to": "1", "text": "Hi", "from": "ACME"}, gateway, KEY)

        assert result.success is True
        assert requests[0].headers["Authorization"] == "Basic " + base64.b64encode(b"AC1:tok").decode()
        assert json.loads(requests[0].content) == {"To": "1", "From": "ACME", "Body": "Hi"}

    @pytest.mark.asyncio
    async def test_send_test_sms_defaults_sender(self, db):
        route = make_sms_route(db, request_url_template="https://api.example.com/send?from={{from}}")
        requests = []
        gateway = gateway_returning(json_body={"status": "ok"}, requests=requests)

        await send_test_sms(db, route.id, {"to": "1", "text": "Hi"}, gateway, KEY)
        assert str(requests[0].url) == "https://api.example.com/send?from=ACME"

    @pytest.mark.asyncio
    async def test_send_test_sms_unknown_route(self, db):
        with pytest.raises(RouteNotFoundError):
            await send_test_sms(db, 999, {"to": "1", "text": "Hi"}, gateway_returning(), KEY)
