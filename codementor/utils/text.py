"""Text utilities for chat messages."""
import re

SUBSTANTIAL_MESSAGE_MIN_CHARS = 20


def sanitize_text(text: str) -> str:
    """Clean and normalize chat text before it enters a transcript.

    Preserves UTF-8 characters and newlines while removing control
    characters that could break JSON serialization.

    Args:
        text: Input text to sanitize

    Returns:
        Cleaned text

    Examples:
        >>> sanitize_text("  for (int i = 0;\\x00 i < n; i++)  ")
        'for (int i = 0; i < n; i++)'
        >>> sanitize_text(None)
        ''
    """
    if text is None:
        return ""

    text = str(text)

    # Keep \t, \n and \r
    text = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F-\x9F]', '', text)

    # Collapse runs of spaces and tabs (not newlines)
    text = re.sub(r'[ \t]+', ' ', text)

    text = re.sub(r'\n{3,}', '\n\n', text)

    lines = [line.strip() for line in text.split('\n')]
    return '\n'.join(lines).strip()


def is_substantial_message(text: str, min_chars: int = SUBSTANTIAL_MESSAGE_MIN_CHARS) -> bool:
    """Whether a chat message should count toward engagement.

    Greetings and one-word replies ("ok", "thanks") do not score.

    >>> is_substantial_message("ok")
    False
    >>> is_substantial_message("How does a for-each loop work over a List?")
    True
    """
    return len(sanitize_text(text)) > min_chars
