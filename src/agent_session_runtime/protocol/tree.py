"""Session tree mapping for `get_session_tree`."""

from __future__ import annotations

from typing import Any

PREVIEW_LENGTH = 140


def _joined_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    parts = [
        part["text"]
        for part in content
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
    ]
    return " ".join(parts)


def extract_preview_text(entry: Any) -> str | None:
    """Build a short preview for a session tree entry.

    Message entries preview their text; structural entries render as a
    bracketed tag such as ``[compaction]`` or ``[model:provider/id]``.
    """
    if not isinstance(entry, dict):
        return None

    entry_type = entry.get("type")

    if entry_type == "message":
        message = entry.get("message")
        if not isinstance(message, dict):
            return None
        role = message.get("role")
        content = message.get("content")

        if role == "user":
            if isinstance(content, str):
                return content[:PREVIEW_LENGTH]
            return _joined_text(content)[:PREVIEW_LENGTH] or None
        if role == "assistant":
            return _joined_text(content)[:PREVIEW_LENGTH] or None
        if role == "toolResult":
            return f"[toolResult:{message.get('toolName')}]"
        return None

    match entry_type:
        case "compaction" | "branch_summary" | "custom_message" | "custom":
            return f"[{entry_type}]"
        case "model_change":
            return f"[model:{entry.get('provider')}/{entry.get('modelId')}]"
        case "thinking_level_change":
            return f"[thinking:{entry.get('thinkingLevel')}]"
        case "label":
            return f"[label:{entry.get('label') or ''}]"
        case "session_info":
            return f"[session_info:{entry.get('name') or ''}]"
    return None


def map_tree_node(node: dict[str, Any]) -> dict[str, Any]:
    """Map a session tree node into the wire shape, recursively."""
    source = node.get("entry") or {}
    entry: dict[str, Any] = {
        "id": source.get("id"),
        "parentId": source.get("parentId"),
        "type": source.get("type"),
        "timestamp": source.get("timestamp"),
    }
    label = node.get("label")
    if label is not None:
        entry["label"] = label
    preview = extract_preview_text(source)
    if preview is not None:
        entry["preview"] = preview

    return {
        "entry": entry,
        "children": [map_tree_node(child) for child in node.get("children") or []],
    }
