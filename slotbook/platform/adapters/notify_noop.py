import logging
from slotbook.platform.ports.notifier import NotifierPort

log = logging.getLogger("notify.noop")

class NoopNotifier(NotifierPort):
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, event: str, recipient_phone: str, template_fields: dict) -> None:
        self.sent.append({"event": event, "recipient_phone": recipient_phone, "template_fields": template_fields})
        log.info(f"[NOOP NOTIFY] event={event} to={recipient_phone} fields={template_fields}")
