from __future__ import annotations

import re
from typing import Iterable

# Order matters: the first category with a keyword hit wins.
CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "technology": ("ai", "software", "api", "code", "developer", "cloud", "chip", "processor"),
    "mobile": ("android", "ios", "smartphone", "mobile", "tablet", "app store"),
    "science": ("physics", "quantum", "biology", "chemistry", "neuroscience", "experiment"),
    "business": ("market", "strategy", "startup", "sales", "revenue", "business"),
    "design": ("ux", "design", "figma", "layout", "typography", "palette"),
    "finance": ("finance", "stocks", "trading", "investment", "earnings", "bank", "economy"),
    "education": ("course", "lesson", "learning", "curriculum", "textbook", "syllabus"),
    "research": ("paper", "study", "analysis", "dataset", "thesis", "survey"),
}

PALETTES: dict[str, str] = {
    "technology": "electric blue",
    "mobile": "teal",
    "science": "deep violet",
    "business": "amber",
    "design": "coral",
    "finance": "emerald",
    "education": "warm orange",
    "research": "slate indigo",
    "general": "graphite",
}


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}\b")


_PATTERNS = {
    category: [_keyword_pattern(k) for k in keywords]
    for category, keywords in CATEGORY_KEYWORDS.items()
}


def classify_notebook(title: str, source_titles: Iterable[str] = ()) -> str:
    text = " ".join([title or "", *[t or "" for t in source_titles]]).lower()
    for category, patterns in _PATTERNS.items():
        if any(p.search(text) for p in patterns):
            return category
    return "general"


def palette_hint(category: str) -> str:
    return PALETTES.get(category, PALETTES["general"])
