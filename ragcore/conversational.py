"""Conversational short-circuit for small talk.

Messages that are only a greeting, thanks, farewell or similar get a canned
reply without touching retrieval or generation.
"""
import re
from types import MappingProxyType
from typing import Optional

THANKS = "thanks"
GREETING = "greeting"
FAREWELL = "farewell"
HOW_ARE_YOU = "how_are_you"
ACKNOWLEDGEMENT = "acknowledgement"

CONVERSATIONAL_PHRASES = MappingProxyType({
    "thanks": THANKS,
    "thank you": THANKS,
    "ty": THANKS,
    "thx": THANKS,
    "ok": ACKNOWLEDGEMENT,
    "okay": ACKNOWLEDGEMENT,
    "nice": ACKNOWLEDGEMENT,
    "great": ACKNOWLEDGEMENT,
    "awesome": ACKNOWLEDGEMENT,
    "cool": ACKNOWLEDGEMENT,
    "bye": FAREWELL,
    "goodbye": FAREWELL,
    "hi": GREETING,
    "hello": GREETING,
    "hey": GREETING,
    "good morning": GREETING,
    "good afternoon": GREETING,
    "good evening": GREETING,
    "how are you": HOW_ARE_YOU,
    "what's up": HOW_ARE_YOU,
    "شكرا": THANKS,  # shukran
    "مرحبا": GREETING,  # marhaban
    "السلام عليكم": GREETING,  # as-salamu alaykum
    "مع السلامة": FAREWELL,  # ma'a as-salama
    "كيف حالك": HOW_ARE_YOU,  # kayf halak
})

CANNED_RESPONSES = MappingProxyType({
    "en": MappingProxyType({
        THANKS: "You're welcome! Feel free to ask me anything.",
        GREETING: "Hello! How can I help you today?",
        FAREWELL: "Goodbye! Come back anytime you need help.",
        HOW_ARE_YOU: "I'm doing great, thanks for asking! I'm here to help you.",
        ACKNOWLEDGEMENT: "I'm here to help! How can I assist you?",
    }),
    "ar": MappingProxyType({
        THANKS: "على الرحب والسعة! لا تتردد في سؤالي عن أي شيء.",
        GREETING: "مرحباً! كيف يمكنني مساعدتك اليوم؟",
        FAREWELL: "وداعاً! عد في أي وقت تحتاج فيه للمساعدة.",
        HOW_ARE_YOU: "أنا بخير، شكراً على السؤال! أنا هنا لمساعدتك.",
        ACKNOWLEDGEMENT: "أنا هنا للمساعدة! كيف يمكنني مساعدتك؟",
    }),
})

_TRAILING_PUNCTUATION_RE = re.compile(r"[.!]$")
_WS_RE = re.compile(r"\s+")


def match_conversational(message: str) -> Optional[str]:
    """Return the small-talk category of a message, or None.

    The whole trimmed, lower-cased message must equal a known phrase,
    optionally followed by a single ``.`` or ``!``.
    """
    normalized = _WS_RE.sub(" ", message.strip().lower())
    normalized = _TRAILING_PUNCTUATION_RE.sub("", normalized).strip()
    return CONVERSATIONAL_PHRASES.get(normalized)


def canned_response(category: str, language: str = "en") -> str:
    responses = CANNED_RESPONSES.get(language, CANNED_RESPONSES["en"])
    return responses.get(category, responses[ACKNOWLEDGEMENT])
