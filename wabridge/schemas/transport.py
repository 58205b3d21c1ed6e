"""Event payloads posted by the connection bridge.

Field names follow the WhatsApp library's own JSON (camelCase) so the bridge can
forward events untouched.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _TransportModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MessageKey(_TransportModel):
    remoteJid: Optional[str] = None
    remoteJidAlt: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("remoteJidAlt", "senderPn", "senderLid"),
    )
    id: Optional[str] = None
    fromMe: bool = False
    participant: Optional[str] = None


class TextContent(_TransportModel):
    text: Optional[str] = None


class MediaContent(_TransportModel):
    caption: Optional[str] = None
    mimetype: Optional[str] = None
    url: Optional[str] = None
    fileName: Optional[str] = None
    ptt: Optional[bool] = None


class MessageContent(_TransportModel):
    conversation: Optional[str] = None
    extendedTextMessage: Optional[TextContent] = None
    imageMessage: Optional[MediaContent] = None
    videoMessage: Optional[MediaContent] = None
    audioMessage: Optional[MediaContent] = None
    stickerMessage: Optional[MediaContent] = None
    documentMessage: Optional[MediaContent] = None


class TransportMessage(_TransportModel):
    key: MessageKey
    message: Optional[MessageContent] = None
    messageTimestamp: Optional[int] = None
    pushName: Optional[str] = None


class ChatSnapshot(_TransportModel):
    id: Optional[str] = None
    name: Optional[str] = None
    subject: Optional[str] = None
    lastMessageText: Optional[str] = None
    conversationTimestamp: Optional[int] = None


class ContactSnapshot(_TransportModel):
    id: Optional[str] = None
    lid: Optional[str] = None
    phoneNumber: Optional[str] = None
    name: Optional[str] = None
    notify: Optional[str] = None
    verifiedName: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.notify or self.verifiedName


class ConnectionUpdate(_TransportModel):
    connection: Optional[Literal["open", "connecting", "close"]] = None
    qr: Optional[str] = None
    loggedOut: bool = False


class MessagesUpsert(_TransportModel):
    type: Literal["notify", "append", "history"] = "notify"
    messages: list[TransportMessage] = Field(default_factory=list)


class HistorySet(_TransportModel):
    chats: list[ChatSnapshot] = Field(default_factory=list)
    contacts: list[ContactSnapshot] = Field(default_factory=list)
    messages: list[TransportMessage] = Field(default_factory=list)
    isLatest: Optional[bool] = None


class ConnectionEvent(_TransportModel):
    event: Literal["connection.update"]
    data: ConnectionUpdate


class ChatsEvent(_TransportModel):
    event: Literal["chats.set", "chats.upsert"]
    data: list[ChatSnapshot] = Field(default_factory=list)


class ContactsEvent(_TransportModel):
    event: Literal["contacts.set", "contacts.upsert"]
    data: list[ContactSnapshot] = Field(default_factory=list)


class MessagesEvent(_TransportModel):
    event: Literal["messages.upsert"]
    data: MessagesUpsert


class HistoryEvent(_TransportModel):
    event: Literal["messaging-history.set"]
    data: HistorySet


TransportEvent = Annotated[
    Union[ConnectionEvent, ChatsEvent, ContactsEvent, MessagesEvent, HistoryEvent],
    Field(discriminator="event"),
]


class EventAcceptedResponse(BaseModel):
    accepted: bool
    event: str
