"""AI responder: conversation history + latest message -> reply text + handoff flag."""

import json
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wabridge.config import settings
from wabridge.logging_config import get_logger
from wabridge.models import Message
from wabridge.services.llm import LLMProvider, OpenAIProvider

logger = get_logger("ai_service")

SYSTEM_PROMPT = """You are a customer-service assistant for a digital marketing and CRM company on WhatsApp.

Rules:
- Keep replies short, clear and polite (two sentences at most). Reply in the customer's language.
- If the question is out of scope, apologise and ask the customer what they need.
- If the customer clearly asks for customer service, a human or an employee, reply with a single short
  message saying you are transferring them, and set "handoff" to true.

Respond with JSON only:
{"reply": "...", "handoff": true or false, "handoff_reason": "optional reason"}"""

FALLBACK_NOT_CONFIGURED = "عذراً، النظام الآلي غير متاح حالياً. سيتم تحويلك إلى خدمة العملاء."
FALLBACK_ERROR = "عذراً، حدث خطأ في النظام. سيتم تحويلك إلى خدمة العملاء للمساعدة."


@dataclass
class AIReply:
    reply: str
    handoff: bool = False
    handoff_reason: Optional[str] = None


def parse_ai_reply(content: str) -> AIReply:
    """Parse the model's JSON answer. Raises ValueError when unusable."""
    data = json.loads(content or "{}")
    if not isinstance(data, dict):
        raise ValueError("AI response is not a JSON object")
    reply = (data.get("reply") or "").strip()
    if not reply:
        raise ValueError("Invalid AI response: missing reply field")
    return AIReply(
        reply=reply,
        handoff=bool(data.get("handoff")),
        handoff_reason=data.get("handoff_reason") or None,
    )


class AIResponder:
    """Stateless wrapper around an LLM provider. Never raises: errors become a handoff reply."""

    def __init__(self, provider: Optional[LLMProvider] = None, model: Optional[str] = None):
        self.provider = provider
        self.model = model

    @classmethod
    def from_settings(cls) -> "AIResponder":
        if not settings.openai_api_key:
            return cls(provider=None)
        return cls(provider=OpenAIProvider(settings.openai_api_key, default_model=settings.openai_model))

    def respond(self, history: list[dict], latest_message: str, chat_context: Optional[dict] = None) -> AIReply:
        if self.provider is None:
            logger.error("No AI provider configured")
            return AIReply(reply=FALLBACK_NOT_CONFIGURED, handoff=True, handoff_reason="AI not configured")

        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend({"role": item["role"], "content": item["content"]} for item in history)
        messages.append({"role": "user", "content": latest_message})

        try:
            response = self.provider.generate(messages, model=self.model, json_mode=True)
            ai_reply = parse_ai_reply(response.content)
        except Exception as e:
            logger.error(
                f"AI responder failed: {e}",
                extra={"context": {"chat_id": (chat_context or {}).get("chat_id")}},
            )
            return AIReply(reply=FALLBACK_ERROR, handoff=True, handoff_reason=f"AI error: {e}")

        logger.info(
            "AI reply generated",
            extra={
                "context": {
                    "chat_id": (chat_context or {}).get("chat_id"),
                    "reply_length": len(ai_reply.reply),
                    "handoff": ai_reply.handoff,
                }
            },
        )
        return ai_reply


def build_conversation_history(
    db: Session,
    chat_id: UUID,
    *,
    limit: int,
    exclude_message_id: Optional[UUID] = None,
) -> list[dict]:
    """Last `limit` messages of the chat, oldest first, as {role, content}."""
    query = db.query(Message).filter(Message.chat_id == chat_id)
    if exclude_message_id is not None:
        query = query.filter(Message.id != exclude_message_id)
    rows = query.order_by(Message.timestamp.desc()).limit(limit).all()

    history = []
    for row in reversed(rows):
        content = (row.body or "").strip()
        if not content:
            continue
        history.append({"role": "assistant" if row.sender == "agent" else "user", "content": content})
    return history
