from __future__ import annotations

import logging
from typing import Optional

from common.gemini import GeminiClient, GeminiError
from state.models import IncomingMessage


logger = logging.getLogger(__name__)

HELP_COMMAND = "!help"

HELP_TEXT = (
    "Hi! I'm the online store's assistant bot.\n"
    "Just type your question and I'll try to answer it with AI.\n"
    "Send !help to see this message again."
)

AI_FAILURE_TEXT = (
    "Sorry, something went wrong while processing your question with AI. "
    "Please try again later."
)

PROMPT_TEMPLATE = (
    "You are an AI assistant for an online store. Answer the customer's question "
    "in a friendly and informative way. If the question is not about the store's "
    "products, answer from general knowledge.\n"
    'Customer: "{question}"'
)


def build_prompt(question: str) -> str:
    return PROMPT_TEMPLATE.format(question=question.strip())


def reply_for(message: IncomingMessage, ai: Optional[GeminiClient]) -> Optional[str]:
    """Return the reply text for an inbound chat message, or None for no reply."""
    if message.from_me:
        return None
    body = message.body.strip()
    if not body:
        return None
    if body.lower() == HELP_COMMAND:
        return HELP_TEXT
    if ai is None:
        logger.warning("No AI client configured; cannot answer message from %s", message.chat_id)
        return AI_FAILURE_TEXT
    try:
        answer = ai.generate(build_prompt(body))
    except GeminiError as e:
        logger.error("Gemini request failed: %s", e)
        return AI_FAILURE_TEXT
    logger.info("Answered message from %s with AI (%d chars)", message.chat_id, len(answer))
    return answer
