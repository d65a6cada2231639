import logging
import httpx
from slotbook.platform.ports.notifier import NotifierPort
from slotbook.core.config import settings

log = logging.getLogger("notify.webhook")

class WebhookNotifier(NotifierPort):
    """POSTs ``{event, recipient_phone, template_fields}`` to the messaging gateway."""

    def __init__(self, url: str | None = None, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url or settings.NOTIFY_WEBHOOK_URL
        if not self.url:
            raise RuntimeError("NOTIFY_WEBHOOK_URL not configured")
        self.timeout = timeout or settings.NOTIFY_TIMEOUT_SECONDS
        self.transport = transport

    async def send(self, event: str, recipient_phone: str, template_fields: dict) -> None:
        body = {"event": event, "recipient_phone": recipient_phone, "template_fields": template_fields}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            r = await client.post(self.url, json=body)
            r.raise_for_status()
        log.debug("Delivered %s to %s (status=%s)", event, recipient_phone, r.status_code)
