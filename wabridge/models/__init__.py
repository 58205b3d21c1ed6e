from wabridge.models.chat import Chat
from wabridge.models.jid_mapping import JidMapping
from wabridge.models.message import Message
from wabridge.models.whatsapp_session import WhatsAppSession

__all__ = [
    "Chat",
    "Message",
    "JidMapping",
    "WhatsAppSession",
]
