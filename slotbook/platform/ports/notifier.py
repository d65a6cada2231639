from typing import Protocol, runtime_checkable

@runtime_checkable
class NotifierPort(Protocol):
    """Outbound patient messaging (WhatsApp, SMS, ...). Delivery is best effort."""

    async def send(self, event: str, recipient_phone: str, template_fields: dict) -> None: ...
