"""响应归一化

不同方法的返回值形状各异（单个对象、数组、null、CompletionList、MarkupContent 等），
这里把它们统一转换为 protocol 中的值类型。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, List, Optional

from .protocol import CompletionItem, Hover, Location, LocationLink, Range, TextEdit

logger = logging.getLogger(__name__)


# =============================================================================
# Location / LocationLink
# =============================================================================


def flatten_locations(results: Iterable[Any]) -> List[dict]:
    """把多个服务器的回复（单个对象、数组或 null）展平成一个列表"""
    flat: List[dict] = []
    for result in results:
        if isinstance(result, list):
            flat.extend(item for item in result if isinstance(item, dict))
        elif isinstance(result, dict):
            flat.append(result)
    return flat


def location_key(location: dict) -> tuple:
    """去重键：(uri, range)，LocationLink 取 targetSelectionRange"""
    uri = location.get("uri") or location.get("targetUri")
    range_ = (
        location.get("range")
        or location.get("targetSelectionRange")
        or location.get("targetRange")
    )
    return (uri, json.dumps(range_, sort_keys=True))


def merge_locations(results: Iterable[Any]) -> List[dict]:
    """展平并按 (uri, range) 去重，保留首次出现的顺序"""
    seen = set()
    merged: List[dict] = []
    for location in flatten_locations(results):
        key = location_key(location)
        if key in seen:
            continue
        seen.add(key)
        merged.append(location)
    return merged


def parse_location(data: Any) -> Optional[Location]:
    """解析 Location 或 LocationLink，无法解析时返回 None"""
    if not isinstance(data, dict):
        return None
    try:
        if "targetUri" in data:
            return LocationLink.from_dict(data).to_location()
        if "uri" in data:
            return Location.from_dict(data)
    except (KeyError, TypeError, AttributeError) as e:
        logger.debug(f"忽略无法解析的位置: {data!r} ({e})")
    return None


def normalize_locations(result: Any) -> List[Location]:
    """归一化为 Location 列表，并去掉归一化后重复的条目"""
    if isinstance(result, dict):
        result = [result]
    if not isinstance(result, list):
        return []

    locations: List[Location] = []
    for item in result:
        location = parse_location(item)
        if location is not None and location not in locations:
            locations.append(location)
    return locations


# =============================================================================
# Hover
# =============================================================================

_FENCE = re.compile(r"```\w*\n?")
_INLINE_CODE = re.compile(r"`([^`]+)`")
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC = re.compile(r"\*([^*]+)\*")
_HEADING = re.compile(r"^\s*#+\s*", re.MULTILINE)


def strip_markdown(text: Optional[str]) -> Optional[str]:
    """去掉基础的 markdown 标记"""
    if text is None:
        return None
    text = _FENCE.sub("", text)
    text = _INLINE_CODE.sub(r"\1", text)
    text = _BOLD.sub(r"\1", text)
    text = _ITALIC.sub(r"\1", text)
    text = _HEADING.sub("", text)
    return text.strip()


def markup_to_text(content: Any) -> Optional[str]:
    """MarkupContent / MarkedString / 字符串 / 数组 转纯文本"""
    if content is None:
        return None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [markup_to_text(item) for item in content]
        joined = "\n\n".join(part for part in parts if part)
        return joined or None
    if isinstance(content, dict):
        value = content.get("value")
        if content.get("kind") == "markdown":
            return strip_markdown(value)
        # MarkedString {language, value} 或 plaintext
        return value
    return None


def parse_hover(result: Any) -> Optional[Hover]:
    if not isinstance(result, dict):
        return None
    text = markup_to_text(result.get("contents"))
    if not text:
        return None
    range_ = result.get("range")
    return Hover(contents=text, range=Range.from_dict(range_) if range_ else None)


# =============================================================================
# Completion
# =============================================================================


def parse_completion(result: Any) -> List[CompletionItem]:
    """解析 CompletionItem[] 或 CompletionList，按 sortText（缺省为 label）排序"""
    if isinstance(result, dict):
        raw_items = result.get("items") or []
    elif isinstance(result, list):
        raw_items = result
    else:
        return []

    items: List[CompletionItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict) or "label" not in raw:
            continue
        text_edit = raw.get("textEdit")
        edit = None
        # InsertReplaceEdit 使用 insert 范围
        if isinstance(text_edit, dict) and "newText" in text_edit:
            range_ = text_edit.get("range") or text_edit.get("insert")
            if range_:
                edit = TextEdit(range=Range.from_dict(range_), new_text=text_edit["newText"])
        items.append(
            CompletionItem(
                label=raw["label"],
                kind=raw.get("kind"),
                detail=raw.get("detail"),
                documentation=markup_to_text(raw.get("documentation")),
                insert_text=raw.get("insertText") or raw["label"],
                sort_text=raw.get("sortText"),
                text_edit=edit,
            )
        )

    items.sort(key=lambda item: item.sort_text or item.label)
    return items


# =============================================================================
# Formatting
# =============================================================================


def parse_text_edits(result: Any) -> List[TextEdit]:
    if not isinstance(result, list):
        return []
    edits: List[TextEdit] = []
    for raw in result:
        try:
            edits.append(TextEdit.from_dict(raw))
        except (KeyError, TypeError, AttributeError):
            logger.debug(f"忽略无法解析的编辑: {raw!r}")
    return edits
