"""Repair of findings whose key names more than one SKU-channel.

Models sometimes return one finding for a group ("SKU 1 - Amazon, SKU 2 -
Walmart" or "several SKUs on Amazon"). ``repair_report`` splits such items
into per-entity items when individual labels can be recovered from the
key and explanation text, or replaces them with one flagged placeholder
when they cannot.

This is best-effort pattern matching over third-party model output. A
repaired report is more likely to hold single-entity keys; it is not
guaranteed to.
"""

import re
from typing import Dict, List, Tuple

from llm_synthesis.schema import REPORT_COLLECTIONS, InsightItem, InsightReport

MAX_SPLIT_ITEMS = 3

_LIST_SEPARATOR_RE = re.compile(r"\s*[,;|]\s*")
_CONJUNCTION_RE = re.compile(r"\s+(?:and|&)\s+", re.IGNORECASE)
_DIGIT_RE = re.compile(r"\d")
_MULTI_WORD_RE = re.compile(r"\b(?:multiple|several|various|numerous|many)\b", re.IGNORECASE)
_SKU_LABEL_RE = re.compile(
    r"\bSKU(?:\s*#\s*|[\s:\-]+)(?=[A-Za-z0-9_.\-]*\d)[A-Za-z0-9][A-Za-z0-9_.\-]*"
    r"(?:\s*[-–—]\s*[A-Za-z0-9][A-Za-z0-9_.&']*(?:\s+[A-Z][A-Za-z0-9_.&']*)*)?"
)
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")
_TRAILING_PUNCTUATION = ".,;:!?"


def split_key(key: str) -> List[str]:
    """Split ``key`` into the entity names it lists.

    Commas, semicolons and pipes always separate entities. "and" or "&"
    separates them only when every side carries an identifier with a digit,
    so channel names such as "Bed Bath & Beyond" stay whole.
    """
    fragments: List[str] = []
    for part in _LIST_SEPARATOR_RE.split(key):
        pieces = _CONJUNCTION_RE.split(part)
        if len(pieces) > 1 and not all(_DIGIT_RE.search(piece) for piece in pieces):
            pieces = [part]
        fragments.extend(piece.strip().rstrip(_TRAILING_PUNCTUATION) for piece in pieces)
    return [fragment for fragment in fragments if fragment]


def is_multi_entity(key: str) -> bool:
    """Return True when ``key`` looks like it names more than one entity."""
    return len(split_key(key)) > 1 or bool(_MULTI_WORD_RE.search(key))


def recover_entity_labels(item: InsightItem) -> List[str]:
    """Recover up to ``MAX_SPLIT_ITEMS`` single-entity labels for ``item``.

    Key fragments count only when the explanation mentions them; explicit
    ``SKU <id> - <channel>`` mentions in the explanation are added after.
    """
    candidates: List[str] = []
    for fragment in split_key(item.sku_channel):
        if _mentions(item.explanation, fragment):
            candidates.append(fragment)
    for match in _SKU_LABEL_RE.finditer(item.explanation):
        candidates.append(match.group(0).rstrip(_TRAILING_PUNCTUATION))

    accepted: List[str] = []
    for label in candidates:
        if is_multi_entity(label):
            continue
        if any(_mentions(label, kept) or _mentions(kept, label) for kept in accepted):
            continue
        accepted.append(label)
        if len(accepted) == MAX_SPLIT_ITEMS:
            break
    return accepted


def split_item(item: InsightItem) -> Tuple[InsightItem, ...]:
    """Split one multi-entity item, or return a flagged placeholder."""
    labels = recover_entity_labels(item)
    if not labels:
        return (_placeholder(item),)
    return tuple(
        item.model_copy(
            update={
                "sku_channel": label,
                "explanation": _explanation_for(item.explanation, label),
                "planner_action": f"For {label}: {item.planner_action}",
            }
        )
        for label in labels
    )


def repair_report(report: InsightReport) -> InsightReport:
    """Return ``report`` with every multi-entity item split or flagged.

    Items with single-entity keys and items already flagged for follow-up
    pass through untouched; a report with nothing to repair is returned
    as the same object.
    """
    repaired: Dict[str, Tuple[InsightItem, ...]] = {}
    changed = False
    for name in REPORT_COLLECTIONS:
        items: List[InsightItem] = []
        for item in getattr(report, name):
            if item.needs_followup or not is_multi_entity(item.sku_channel):
                items.append(item)
                continue
            changed = True
            items.extend(split_item(item))
        repaired[name] = tuple(items)

    if not changed:
        return report
    return InsightReport(**repaired)


def _mentions(text: str, label: str) -> bool:
    pattern = rf"(?<!\w){re.escape(label)}(?!\w)"
    return re.search(pattern, text, re.IGNORECASE) is not None


def _explanation_for(explanation: str, label: str) -> str:
    sentences = [s for s in _SENTENCE_END_RE.split(explanation.strip()) if _mentions(s, label)]
    if sentences:
        return " ".join(sentences)
    return f"{label}: {explanation}"


def _placeholder(item: InsightItem) -> InsightItem:
    return item.model_copy(
        update={
            "needs_followup": True,
            "explanation": (
                f"Reported for a group of SKU-channels ({item.sku_channel}); no individual "
                f"SKU-channel could be identified. {item.explanation}"
            ),
            "planner_action": (
                f"Review each SKU-channel in this group individually before acting. {item.planner_action}"
            ),
        }
    )
