import logging

import httpx

from mailflow.config import Settings
from mailflow.core.errors import DeliveryError
from mailflow.delivery.base import EmailDelivery

logger = logging.getLogger(__name__)


class SendGridDelivery(EmailDelivery):
    """Send mail through the SendGrid v3 HTTP API with open/click tracking."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.api_key = settings.sendgrid_api_key
        self.base_url = settings.sendgrid_base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=10.0)

    def send(
        self,
        to: str,
        from_email: str,
        from_name: str,
        subject: str,
        html: str,
        to_name: str | None = None,
        custom_args: dict | None = None,
    ) -> str:
        if not self.api_key:
            raise DeliveryError("SendGrid API key not configured")

        recipient = {"email": to}
        if to_name:
            recipient["name"] = to_name
        personalization = {"to": [recipient]}
        if custom_args:
            personalization["custom_args"] = {k: str(v) for k, v in custom_args.items()}

        payload = {
            "personalizations": [personalization],
            "from": {"email": from_email, "name": from_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }

        try:
            resp = self._client.post(
                f"{self.base_url}/v3/mail/send",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"SendGrid request failed: {e}") from e

        if resp.status_code not in (200, 202):
            raise DeliveryError(f"SendGrid error: {resp.text[:200]}")

        message_id = resp.headers.get("X-Message-Id", "")
        logger.info("Sent email to %s (message %s)", to, message_id or "?")
        return message_id

    def close(self):
        self._client.close()
