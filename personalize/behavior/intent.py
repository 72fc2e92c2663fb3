"""Lightweight search intent extraction."""

from __future__ import annotations

import re

from personalize.behavior.models import SearchIntent

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "grow-supplies": ("grow", "kit", "kits", "growing", "cultivation", "substrate", "spawn"),
    "microscopy-use": ("spore", "spores", "syringe"),
    "liquid-culture": ("liquid culture", "culture"),
    "medicinal": ("supplement", "tincture", "extract", "wellness", "reishi", "lions mane"),
    "culinary": ("shiitake", "oyster", "food", "cooking"),
    "general": ("mushroom",),
}

_COMPARATIVE = ("vs", "versus", "compare", "difference")
_INSTRUCTIONAL = ("how to", "guide", "instructions")
_WORD_RE = re.compile(r"[a-z0-9']+")


def _contains(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def extract_keywords(query: str) -> tuple[str, ...]:
    return tuple(word for word in _WORD_RE.findall(query.lower()) if len(word) > 2)


def detect_categories(query: str) -> tuple[str, ...]:
    text = query.lower()
    found = [
        category
        for category, keywords in CATEGORY_KEYWORDS.items()
        if any(_contains(text, keyword) for keyword in keywords)
    ]
    return tuple(found)


def extract_intent(query: str) -> SearchIntent:
    text = " ".join(query.lower().split())
    keywords = extract_keywords(text)
    categories = detect_categories(text)
    if any(_contains(text, word) for word in _COMPARATIVE):
        intent = "comparative"
    elif any(_contains(text, word) for word in _INSTRUCTIONAL):
        intent = "instructional"
    elif categories and len(keywords) <= 2:
        intent = "specific"
    else:
        intent = "general"
    return SearchIntent(query=text, keywords=keywords, categories=categories, intent=intent)


__all__ = ["CATEGORY_KEYWORDS", "detect_categories", "extract_intent", "extract_keywords"]
