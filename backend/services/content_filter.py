# backend/services/content_filter.py

from __future__ import annotations

import html
import re
import logging

from better_profanity import Profanity

from core.errors import InvalidArgument

logger = logging.getLogger(__name__)

# Usernames: 3-30 chars, start with a letter, letters/numbers, optional single
# hyphen/underscore between alphanumerics.
#   ok:     "alice", "john_doe", "foo-bar"
#   not ok: "_joe", "joe_", "a--b", "a__b", "a b", "a@b"
USERNAME_REGEX = re.compile(r"^[a-z](?:[a-z0-9]|[-_](?=[a-z0-9])){2,29}\Z", re.IGNORECASE)

# Generated room ids are hex, but anything alphanumeric is accepted from clients
ROOM_ID_REGEX = re.compile(r"^[a-z0-9]+\Z", re.IGNORECASE)

URL_REGEX = re.compile(r"https?://\S+")

CENSOR_CHAR = "█"
EXTRA_CENSOR_WORDS = ["badword1", "badword2", "inappropriate"]

_filter = Profanity()
_filter.load_censor_words()
_filter.add_censor_words(EXTRA_CENSOR_WORDS)


def is_profane(text: str) -> bool:
    return bool(text) and _filter.contains_profanity(text)


def _clean(segment: str) -> str:
    if not segment or not _filter.contains_profanity(segment):
        return segment
    return _filter.censor(segment, CENSOR_CHAR)


def filter_profanity_preserving_urls(content: str) -> str:
    """
    Censor profanity everywhere except inside http(s) URLs.

    URLs routinely contain fragments the word list would flag (underscores,
    slugs), so the text is split on URL spans, only the prose between them is
    filtered, and the pieces are joined back in order.
    """
    parts = []
    last = 0
    for match in URL_REGEX.finditer(content):
        parts.append(_clean(content[last:match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(_clean(content[last:]))
    return "".join(parts)


def escape_html(text: str) -> str:
    """Escape & < > " ' so stored content can never inject markup."""
    return html.escape(text, quote=True)


def sanitize_message(content: str) -> str:
    # Order matters: filtering after escaping would see "&lt;" instead of words
    return escape_html(filter_profanity_preserving_urls(content))


def assert_valid_username(username: str | None) -> str:
    """Normalize and validate a username; returns the lowercased form."""
    if not username or not USERNAME_REGEX.match(username):
        logger.info("Invalid username format: %r", username)
        raise InvalidArgument(
            "Invalid username: use 3-30 letters/numbers; '-' or '_' allowed between characters; no spaces or symbols"
        )
    return username.lower()


def assert_valid_room_id(room_id: str | None) -> str:
    if not room_id or not ROOM_ID_REGEX.match(room_id):
        logger.info("Invalid roomId format: %r", room_id)
        raise InvalidArgument("Invalid room ID format")
    return room_id
