import json

import httpx
import pytest

from mailflow.config import Settings
from mailflow.core.errors import DeliveryError
from mailflow.delivery.sendgrid import SendGridDelivery


def _delivery(handler, api_key="sg-key"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SendGridDelivery(Settings(sendgrid_api_key=api_key), client=client)


def test_send_posts_v3_payload():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, headers={"X-Message-Id": "abc123"})

    message_id = _delivery(handler).send(
        to="ana@example.com",
        from_email="news@shop.example",
        from_name="Shop",
        subject="Hello",
        html="<p>Hi</p>",
        to_name="Ana",
        custom_args={"workflow_step_id": "s1", "contact_id": "c1"},
    )

    assert message_id == "abc123"
    assert seen["url"] == "https://api.sendgrid.com/v3/mail/send"
    assert seen["auth"] == "Bearer sg-key"
    body = seen["body"]
    assert body["personalizations"] == [
        {
            "to": [{"email": "ana@example.com", "name": "Ana"}],
            "custom_args": {"workflow_step_id": "s1", "contact_id": "c1"},
        }
    ]
    assert body["from"] == {"email": "news@shop.example", "name": "Shop"}
    assert body["content"] == [{"type": "text/html", "value": "<p>Hi</p>"}]
    assert body["tracking_settings"]["open_tracking"] == {"enable": True}


def test_error_status_raises():
    def handler(request):
        return httpx.Response(400, text='{"errors": [{"message": "bad from"}]}')

    with pytest.raises(DeliveryError, match="SendGrid error"):
        _delivery(handler).send("a@x.io", "b@x.io", "B", "s", "<p/>")


def test_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DeliveryError, match="request failed"):
        _delivery(handler).send("a@x.io", "b@x.io", "B", "s", "<p/>")


def test_missing_api_key():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(DeliveryError, match="not configured"):
        _delivery(handler, api_key=None).send("a@x.io", "b@x.io", "B", "s", "<p/>")
