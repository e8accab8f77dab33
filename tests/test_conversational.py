"""Tests for the small-talk short-circuit."""
import pytest

from ragcore.conversational import (
    CONVERSATIONAL_PHRASES,
    FAREWELL,
    GREETING,
    HOW_ARE_YOU,
    THANKS,
    canned_response,
    match_conversational,
)


@pytest.mark.parametrize(
    "message,category",
    [
        ("thanks!", THANKS),
        ("Thank you.", THANKS),
        ("  HELLO  ", GREETING),
        ("good   morning", GREETING),
        ("How are you", HOW_ARE_YOU),
        ("bye!", FAREWELL),
        ("مرحبا", GREETING),
        ("شكرا!", THANKS),
    ],
)
def test_whole_message_phrases_match(message, category):
    assert match_conversational(message) == category


@pytest.mark.parametrize(
    "message",
    [
        "thanks for the explanation",
        "hello, what is the warranty period?",
        "thanks?",
        "thanks!!",
        "okay so how do refunds work",
    ],
)
def test_messages_with_content_do_not_match(message):
    assert match_conversational(message) is None


def test_canned_responses_by_language():
    assert canned_response(THANKS, "en") == "You're welcome! Feel free to ask me anything."
    assert canned_response(GREETING, "ar").startswith("مرحباً")


def test_unknown_language_falls_back_to_english():
    assert canned_response(FAREWELL, "fr") == canned_response(FAREWELL, "en")


def test_phrase_table_is_read_only():
    with pytest.raises(TypeError):
        CONVERSATIONAL_PHRASES["sup"] = GREETING
