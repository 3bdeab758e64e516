import json
from typing import Any, Dict, Iterable, List, Optional

from pipekit.utils.text import to_text


def iter_sse_payloads(lines: Iterable[str]) -> Iterable[Dict[str, Any]]:
    """Yield decoded JSON objects from server-sent-event `data:` lines.

    Non-data lines, the `[DONE]` marker and undecodable payloads are skipped.
    """
    for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:") :].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            obj = json.loads(payload)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            yield obj


def delta_content(obj: Dict[str, Any]) -> Optional[str]:
    """Extract visible content from an OpenAI-style chunk or completion.

    Falls back to `reasoning_content` only when the chunk carries no content.
    """
    choices = obj.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta") or choices[0].get("message") or {}
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if content:
        return str(content)
    reasoning = delta.get("reasoning_content")
    if reasoning:
        return str(reasoning)
    return None


def chunk_to_text(chunk: Any) -> str:
    """Reduce one streamed chunk to the text it contributes.

    Handles plain text, bytes, raw SSE lines (possibly several per chunk)
    and chunk dicts. Returns an empty string for chunks that carry nothing
    visible, such as role-only deltas or keep-alive lines.
    """
    if chunk is None:
        return ""
    if isinstance(chunk, dict):
        content = delta_content(chunk)
        if content is not None:
            return content
        if "choices" in chunk:
            return ""
        return json.dumps(chunk)

    text = to_text(chunk)
    if text.lstrip().startswith("data:"):
        pieces: List[str] = []
        for obj in iter_sse_payloads(text.splitlines()):
            content = delta_content(obj)
            if content:
                pieces.append(content)
        return "".join(pieces)
    return text
