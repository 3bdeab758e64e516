from typing import Any, Dict, List, Optional


def truncate_for_log(text: Any, limit: int = 400) -> str:
    """Safe truncation for logging."""
    try:
        s = str(text)
    except Exception:
        return "<unprintable>"
    return s if len(s) <= limit else s[:limit] + "...[truncated]"


def to_text(value: Any) -> str:
    """Coerce bytes or arbitrary objects to str"""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", "replace")
    return str(value)


def message_text(message: Dict[str, Any]) -> str:
    """Return the text of a chat message, flattening multi-part content"""
    content = message.get("content", "")
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)
    return to_text(content)


def last_user_message(messages: List[Dict[str, Any]]) -> Optional[str]:
    """Get the latest user message in a conversation, if any"""
    for message in reversed(messages or []):
        if isinstance(message, dict) and message.get("role") == "user":
            return message_text(message).strip()
    return None
