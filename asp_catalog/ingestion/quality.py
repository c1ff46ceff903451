"""
Data-Quality Policy
===================

Named, testable rules for what counts as placeholder or garbage data:
placeholder titles, homepage boilerplate descriptions and invalid
performer names. The resolvers consult these rules instead of embedding
their own heuristics.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass

from asp_catalog.core.enums import ReviewReason

MIN_TITLE_LENGTH = 5
MIN_PERFORMER_NAME_LENGTH = 2
MAX_PERFORMER_NAME_LENGTH = 30

# Titles of provider top pages / age gates that leak into product pages
TOP_PAGE_TITLE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"^ソクミル-\d+$"),
    re.compile(r"^Japanska-\d+$", re.I),
    re.compile(r"^FC2動画アダルト$"),
    re.compile(r"^MGS動画\(成人認証\)"),
    re.compile(r"^MGS動画＜プレステージ\s*グループ＞$"),
    re.compile(r"^アダルト動画.*ソクミル"),
    re.compile(r"^無修正動画.*カリビアンコム"),
    re.compile(r"^エロ動画・アダルトビデオ\s*-MGS動画"),
    re.compile(r"^(年齢認証|年齢確認|age verification)", re.I),
    re.compile(r"^(404|not found|ページが見つかりません)", re.I),
]

BOILERPLATE_DESCRIPTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"アダルト動画・エロ動画ソクミル"),
    re.compile(r"人気のアダルトビデオを高画質・低価格"),
    re.compile(r"全作品無料のサンプル動画付き"),
    re.compile(r"18歳未満.*閲覧.*禁止"),
    re.compile(r"年齢確認.*18歳以上"),
    re.compile(r"エロ動画・アダルトビデオのMGS動画"),
    re.compile(r"MGS動画は.*アダルト動画配信サイト"),
]

# Tokens that mark category, navigation or marketing text rather than a name
PERFORMER_DENYLIST: frozenset[str] = frozenset(
    {
        "素人", "ナンパ", "企画", "AV", "動画", "サンプル", "無料", "高画質",
        "HD", "4K", "VR", "カテゴリ", "タグ", "ジャンル", "人気", "ランキング",
        "新着", "特集", "セール", "配信", "女優", "一覧", "不明", "他",
        "PAGE", "NEXT", "PREV", "N/A",
    }
)

# Kana, kanji, Latin letters, spaces, the middle dot and a few name marks
PERFORMER_NAME_CHARS = re.compile(
    r"^[\u3040-\u309f\u30a0-\u30ff\u4e00-\u9fff\u3005\uff21-\uff3a\uff41-\uff5a"
    r"A-Za-z\s\u30fb.\-']+$"
)
MARKUP_GARBAGE = re.compile(r"[<>{}\[\]=/\\|@#$%^*]|https?:|www\.", re.I)

_TAG_RE = re.compile(r"<[^>]+>")
_WRAPPING_BRACKETS = re.compile(r"^[\[【「『（(](.*)[\]】」』）)]$")


@dataclass
class QualityVerdict:
    """Result of checking an extracted product against the quality policy."""

    is_valid: bool
    reason: ReviewReason | None = None
    detail: str = ""


def sanitize_text(text: str | None) -> str | None:
    """
    Strip tags and entities, collapse whitespace and drop wrapping brackets.

    Returns:
        Cleaned text, or None if nothing remains
    """
    if text is None:
        return None
    cleaned = html.unescape(_TAG_RE.sub(" ", str(text)))
    cleaned = re.sub(r"[\s　]+", " ", cleaned).strip()
    match = _WRAPPING_BRACKETS.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned or None


def _squash(value: str) -> str:
    return re.sub(r"[-_\s]", "", value).upper()


def is_placeholder_title(
    title: str | None,
    product_code: str | None = None,
    asp_name: str | None = None,
) -> bool:
    """
    True if a title carries no real information.

    Empty titles, titles shorter than MIN_TITLE_LENGTH, titles that are
    just the product code (with or without an ASP prefix) and known
    provider top-page titles are all placeholders.
    """
    if title is None:
        return True
    stripped = title.strip()
    if not stripped or len(stripped) < MIN_TITLE_LENGTH:
        return True

    squashed = _squash(stripped)
    if product_code:
        code = _squash(product_code)
        if squashed == code:
            return True
        if asp_name and squashed == _squash(f"{asp_name}-{product_code}"):
            return True

    return any(p.search(stripped) for p in TOP_PAGE_TITLE_PATTERNS)


def is_boilerplate_description(text: str | None) -> bool:
    """True if a description is provider boilerplate rather than product copy."""
    if not text or not text.strip():
        return False
    return any(p.search(text) for p in BOILERPLATE_DESCRIPTION_PATTERNS)


def validate_product_fields(
    title: str | None,
    description: str | None,
    product_code: str | None,
    asp_name: str | None = None,
) -> QualityVerdict:
    """
    Check an extracted product's descriptive fields.

    A placeholder title makes the record invalid. A boilerplate
    description alone does not; the resolver simply ignores it.
    """
    if is_placeholder_title(title, product_code, asp_name):
        return QualityVerdict(
            False, ReviewReason.PLACEHOLDER_TITLE, f"placeholder title: {title!r}"
        )
    if is_boilerplate_description(description):
        return QualityVerdict(True, None, "boilerplate description ignored")
    return QualityVerdict(True)


def validate_performer_name(name: str | None, extra_denylist: frozenset[str] = frozenset()) -> str | None:
    """
    Check a candidate performer name.

    Returns:
        The rejection reason, or None if the name is acceptable
    """
    if name is None:
        return "empty"
    stripped = re.sub(r"[\s　]+", " ", name).strip()
    if not stripped:
        return "empty"
    if len(stripped) < MIN_PERFORMER_NAME_LENGTH:
        return "too short"
    if len(stripped) > MAX_PERFORMER_NAME_LENGTH:
        return "too long"
    if MARKUP_GARBAGE.search(stripped):
        return "markup or url fragment"
    if stripped.replace(" ", "").isdigit():
        return "numeric"
    if not PERFORMER_NAME_CHARS.match(stripped):
        return "unexpected characters"

    upper = stripped.upper()
    for token in PERFORMER_DENYLIST | extra_denylist:
        token_upper = token.upper()
        if upper == token_upper:
            return f"denylisted: {token}"
        # Short Latin tokens only count as whole words
        if token_upper.isascii():
            if re.search(rf"\b{re.escape(token_upper)}\b", upper):
                return f"denylisted: {token}"
        elif len(token) >= 2 and token in stripped:
            return f"denylisted: {token}"
    return None
