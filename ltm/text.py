"""
Pure text transforms used around the memory pipeline.

Nothing here touches I/O; every function maps a string to a string.
"""

import re

# Pictographs, dingbats, flags, variation selectors and joiners
EMOJI_PATTERN = re.compile(
    "["
    "\U0001F300-\U0001F5FF"
    "\U0001F600-\U0001F64F"
    "\U0001F680-\U0001F6FF"
    "\U0001F900-\U0001F9FF"
    "\U0001FA70-\U0001FAFF"
    "\U0001F1E0-\U0001F1FF"
    "\U00002600-\U000026FF"
    "\U00002700-\U000027BF"
    "\U00002300-\U000023FF"
    "\U00002B50\U00002705\U0000274C\U0000274E\U00002139\U00002122\U000000A9\U000000AE"
    "\U0000FE00-\U0000FE0F"
    "\U0000200D"
    "]"
)

WHITESPACE_RUN_PATTERN = re.compile(r"\s{2,}")
SENTENCE_BOUNDARY_PATTERN = re.compile(r"[.!?\n]")
DATA_URL_PREFIX_PATTERN = re.compile(r"^data:image/[\w.+-]+;base64,")


def strip_emoji(text: str) -> str:
    """Remove emoji code points."""
    return EMOJI_PATTERN.sub("", text)


def collapse_whitespace(text: str) -> str:
    """Replace runs of two or more whitespace characters with one space."""
    return WHITESPACE_RUN_PATTERN.sub(" ", text)


def sanitize_response(text: str) -> str:
    """Emoji-free, whitespace-collapsed, trimmed copy of a model reply."""
    return collapse_whitespace(strip_emoji(text)).strip()


def first_sentence(text: str) -> str:
    """
    First non-empty sentence of a text.

    Sentences end at `.`, `!`, `?` or a newline. Returns "" when the text
    holds no sentence content at all.
    """
    for segment in SENTENCE_BOUNDARY_PATTERN.split(text):
        segment = segment.strip()
        if segment:
            return segment
    return ""


def strip_data_url(image: str) -> str:
    """Strip a `data:image/...;base64,` envelope, leaving raw base64."""
    return DATA_URL_PREFIX_PATTERN.sub("", image.strip())


def build_exchange_record(user_text: str, reply: str) -> str | None:
    """
    Compact memory record for one chat exchange.

    Returns None when the reply has no usable first sentence.
    """
    sentence = first_sentence(sanitize_response(reply))
    if not sentence:
        return None
    return f'Log - Human stated: "{user_text}" | AI replied: "{sentence}"'
