"""Text cleaning and normalization utilities."""
import re
from typing import Any


def clean_text(text: str) -> str:
    """
    Normalize extracted page text while keeping its line structure.

    Line-oriented chunking relies on newlines, so only runs of spaces and tabs
    are collapsed.

    Args:
        text: Raw text to clean

    Returns:
        Cleaned text
    """
    # Normalize line breaks
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    # Remove control characters but keep newlines and tabs
    text = re.sub(r"[\x00-\x08\x0b-\x0c\x0e-\x1f\x7f]", "", text)

    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)

    # Remove excessive newlines (more than 2 consecutive)
    text = re.sub(r"\n{3,}", "\n\n", text)

    return text.strip()


def normalize_content(content: Any) -> str:
    """
    Collapse a message content value into a single string.

    Chat backends return content either as a string or as a list of parts
    (dicts with a "text" key, or plain strings).
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                parts.append(str(part.get("text") or ""))
            else:
                text = getattr(part, "text", None)
                if text:
                    parts.append(str(text))
        return "".join(parts)
    return str(content)
