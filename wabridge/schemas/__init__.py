from wabridge.schemas.message import OutboundSendRequest, OutboundSendResponse
from wabridge.schemas.transport import TransportEvent, TransportMessage

__all__ = ["OutboundSendRequest", "OutboundSendResponse", "TransportEvent", "TransportMessage"]
