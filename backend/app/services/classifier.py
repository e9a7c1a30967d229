"""
Content classifier.

Chooses the leaf type for an inbound email. Pure function of its inputs.

Rules are evaluated top-to-bottom; the first one that fires decides:

  1. any image/* attachment        -> photo      (high)
  2. any audio/* attachment        -> audio      (high)
  3. any video/* attachment        -> video      (high)
  4. milestone keyword in the text -> milestone  (medium)
  5. non-blank text                -> text       (medium)
  6. otherwise                     -> text       (low)

Hashtags are extracted independently of the chosen rule.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from app.models.inbound_email import Attachment
from app.models.ingestion import ClassificationResult, Confidence, LeafType

HASHTAG_PATTERN = re.compile(r"#\w+")

MILESTONE_TAG = "milestone"


@dataclass(frozen=True)
class _Signals:
    text: str
    content_types: tuple[str, ...]
    milestone_matches: tuple[str, ...]


@dataclass(frozen=True)
class _Verdict:
    leaf_type: LeafType
    confidence: Confidence
    reason: str


ClassificationRule = Callable[[_Signals], Optional[_Verdict]]


def _media_rule(prefix: str, leaf_type: LeafType) -> ClassificationRule:
    def rule(signals: _Signals) -> Optional[_Verdict]:
        for content_type in signals.content_types:
            if content_type.startswith(prefix):
                return _Verdict(leaf_type, Confidence.HIGH, f"{content_type} attachment")
        return None

    return rule


def _milestone_rule(signals: _Signals) -> Optional[_Verdict]:
    if not signals.milestone_matches:
        return None
    return _Verdict(
        LeafType.MILESTONE,
        Confidence.MEDIUM,
        "milestone keywords: " + ", ".join(signals.milestone_matches),
    )


def _text_rule(signals: _Signals) -> Optional[_Verdict]:
    if signals.text.strip():
        return _Verdict(LeafType.TEXT, Confidence.MEDIUM, "text content")
    return None


def _default_rule(signals: _Signals) -> Optional[_Verdict]:
    return _Verdict(LeafType.TEXT, Confidence.LOW, "default, no content detected")


RULES: tuple[ClassificationRule, ...] = (
    _media_rule("image/", LeafType.PHOTO),
    _media_rule("audio/", LeafType.AUDIO),
    _media_rule("video/", LeafType.VIDEO),
    _milestone_rule,
    _text_rule,
    _default_rule,
)


def extract_hashtags(text: str) -> list[str]:
    """``#Summer #summer #beach`` -> ``["summer", "beach"]``"""
    tags: list[str] = []
    for match in HASHTAG_PATTERN.findall(text or ""):
        tag = match[1:].lower()
        if tag not in tags:
            tags.append(tag)
    return tags


def find_milestone_keywords(text: str, keywords: Iterable[str]) -> list[str]:
    """
    Return the keywords contained in ``text``, case-insensitively, in
    keyword-list order. Plain substring match: "birthdays" and "firstborn"
    count.
    """
    lowered = (text or "").lower()
    found: list[str] = []
    for keyword in keywords:
        keyword = keyword.strip().lower()
        if not keyword or keyword in found:
            continue
        if keyword in lowered:
            found.append(keyword)
    return found


def classify(
    text: str,
    attachments: Sequence[Attachment],
    milestone_keywords: Iterable[str],
) -> ClassificationResult:
    signals = _Signals(
        text=text or "",
        content_types=tuple((a.content_type or "").lower() for a in attachments),
        milestone_matches=tuple(find_milestone_keywords(text, milestone_keywords)),
    )

    verdict = next(v for v in (rule(signals) for rule in RULES) if v is not None)

    tags = extract_hashtags(signals.text)
    if verdict.leaf_type is LeafType.MILESTONE and MILESTONE_TAG not in tags:
        tags.append(MILESTONE_TAG)

    return ClassificationResult(
        leaf_type=verdict.leaf_type,
        confidence=verdict.confidence,
        reason=verdict.reason,
        tags=tags,
        milestone_keywords=list(signals.milestone_matches),
    )
