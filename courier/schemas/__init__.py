from courier.schemas.delivery import BatchDeliveryPayload, BatchMessage, SingleDeliveryPayload
from courier.schemas.message import InboundEvent, MessageType, UnsupportedMessageType, parse_message_type
from courier.schemas.send import SendRequest, SendResponse
from courier.schemas.webhook import IncomingWebhookRequest, IncomingWebhookResponse

__all__ = [
    "BatchDeliveryPayload",
    "BatchMessage",
    "SingleDeliveryPayload",
    "InboundEvent",
    "MessageType",
    "UnsupportedMessageType",
    "parse_message_type",
    "SendRequest",
    "SendResponse",
    "IncomingWebhookRequest",
    "IncomingWebhookResponse",
]
