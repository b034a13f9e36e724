from courier.services.conversation_service import (
    is_handled_by_human,
    normalize_participant_id,
    resolve_conversation,
)
from courier.services.message_service import (
    mark_messages_forwarded,
    persist_inbound_message,
    save_outbound_message,
)
from courier.services.webhook_poster import (
    DeliveryResult,
    DeliveryStatus,
    WebhookPoster,
)
