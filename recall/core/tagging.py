"""
Keyword rule table for automatic category tagging.

Pure functions: no engine state, no I/O. A rule matches when enough of its
keywords occur as whole words; confidence grows with the number of keyword
occurrences until it saturates.
"""

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

DEFAULT_CATEGORY = "general"


@dataclass(frozen=True)
class TagRule:
    """Maps a keyword set to a category."""
    category: str
    keywords: Tuple[str, ...]
    min_matches: int = 3  # keyword occurrences needed before the rule applies
    saturation: int = 8   # occurrences at which confidence reaches 1.0


@dataclass
class TagMatch:
    category: str
    confidence: float
    matched_keywords: List[str]


DEFAULT_RULES: Tuple[TagRule, ...] = (
    TagRule("gaming", ("game", "campaign", "character", "dice", "dungeon", "dragon", "d&d", "rpg", "quest", "adventure")),
    TagRule("development", ("code", "api", "function", "database", "server", "deploy", "bug", "feature", "react",
                            "typescript", "python", "javascript")),
    TagRule("automotive", ("car", "vehicle", "tesla", "engine", "maintenance", "repair", "driving", "oil change",
                           "tire")),
    TagRule("business", ("meeting", "client", "project", "deadline", "budget", "revenue", "strategy", "proposal",
                         "contract")),
    TagRule("personal", ("grocery", "recipe", "family", "reminder", "appointment", "health", "workout", "vacation")),
)


def _keyword_pattern(keyword: str) -> re.Pattern:
    # \b does not work next to punctuation such as "d&d", so use explicit word-character lookarounds
    return re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", re.IGNORECASE)


def classify(text: str, rules: Sequence[TagRule] = DEFAULT_RULES) -> List[TagMatch]:
    """Categories whose rules match ``text``, highest confidence first."""
    if not text:
        return []

    matches = []
    for rule in rules:
        occurrences = 0
        matched = []
        for keyword in rule.keywords:
            count = len(_keyword_pattern(keyword).findall(text))
            if count:
                occurrences += count
                matched.append(keyword)

        if occurrences >= rule.min_matches:
            confidence = min(1.0, occurrences / float(rule.saturation))
            matches.append(TagMatch(rule.category, round(confidence, 4), matched))

    matches.sort(key=lambda m: (-m.confidence, m.category))
    return matches


def primary_category(text: str, rules: Sequence[TagRule] = DEFAULT_RULES) -> str:
    """Best matching category, or "general" when no rule applies."""
    matches = classify(text, rules)
    return matches[0].category if matches else DEFAULT_CATEGORY
