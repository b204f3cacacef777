"""Extract Bitcoin amounts from disclosure text and classify filings.

Everything here is a pure function over strings. Malformed input never raises;
it simply yields an empty :class:`AmountInfo`.
"""
from __future__ import annotations

import re
from typing import Optional

from .models import ACQUISITION, DISCLOSURE, DISPOSAL, UPDATE, AmountInfo

# A plain decimal number with optional thousands separators. The lookarounds
# keep fragments of larger tokens (``1e2``, ``v2``, ``1.5e3``) from matching.
NUMBER = r"(?<![\w.,])(\d+(?:,\d{3})*(?:\.\d+)?)(?![\w.]*[eE][+-]?\d)(?!\.\d)"
UNIT = r"(?:(?:additional|more|units?\s+of)\s+)?(?:bitcoins?|btc)\b"
AMOUNT_WITH_UNIT = NUMBER + r"\s*" + UNIT

_FLAGS = re.IGNORECASE

DISPOSAL_PATTERN = re.compile(
    r"\b(?:sold|disposed\s+of|divested|(?:the\s+)?sale\s+of)\s+(?:approximately\s+)?"
    + AMOUNT_WITH_UNIT,
    _FLAGS,
)
ACQUISITION_PATTERN = re.compile(
    r"\b(?:purchas(?:e|ed|es)|acquir(?:e|ed|es)|bought)\s+(?:approximately\s+)?"
    + AMOUNT_WITH_UNIT,
    _FLAGS,
)
TOTAL_PATTERN = re.compile(
    r"\b(?:total\s+(?:(?:bitcoin|btc|digital\s+asset)\s+)?holdings?|now\s+holds?|current\s+holdings?)"
    r"\s*(?:of|:)?\s*(?:approximately\s+)?"
    + NUMBER,
    _FLAGS,
)
ANY_AMOUNT_PATTERN = re.compile(AMOUNT_WITH_UNIT, _FLAGS)

_PLAIN_NUMBER = re.compile(r"\d+(?:,\d{3})*(?:\.\d+)?")

# English plus Simplified and Traditional Chinese terms.
BITCOIN_KEYWORDS_PATTERN = re.compile(
    r"(bitcoin|\bbtc\b|cryptocurrenc(?:y|ies)|crypto[\s-]?assets?|digital[\s-]?assets?|"
    r"virtual[\s-]?assets?|virtual[\s-]?currenc(?:y|ies)|digital[\s-]?currenc(?:y|ies)|"
    r"blockchain[\s-]?assets?|比特币|比特幣|數字資產|数字资产|加密货币|加密貨幣|虛擬資產|"
    r"虚拟资产|數位資產|數碼資產|加密資產|加密资产)",
    _FLAGS,
)

TITLE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (ACQUISITION, ("acquisition", "purchase", "acquired", "买入", "買入", "收购", "收購")),
    (DISPOSAL, ("disposal", "sale", "sold", "卖出", "賣出", "出售")),
    (UPDATE, ("update", "revised", "更新", "修订", "修訂")),
)


def parse_amount(token: Optional[str]) -> Optional[float]:
    """Parse a human written amount such as ``1,250.5``.

    Thousands separators are stripped and decimals accepted. Scientific
    notation and anything else that is not a plain number yields ``None``.
    """

    if not token:
        return None
    candidate = token.strip()
    if not _PLAIN_NUMBER.fullmatch(candidate):
        return None
    return float(candidate.replace(",", ""))


def _first_amount(pattern: re.Pattern[str], text: str) -> Optional[float]:
    for match in pattern.finditer(text):
        amount = parse_amount(match.group(1))
        if amount is not None:
            return amount
    return None


def extract_amount_info(text: Optional[str]) -> AmountInfo:
    """Extract the Bitcoin delta and total disclosed in ``text``.

    Disposal verbs are checked before acquisition verbs. A total holdings
    phrase is looked for independently. When neither matched, the largest
    number-then-unit occurrence is taken as a best-effort total.
    """

    info = AmountInfo()
    if not isinstance(text, str) or not text.strip():
        return info

    disposed = _first_amount(DISPOSAL_PATTERN, text)
    if disposed is not None:
        info.delta = -disposed
        info.is_disposal = True
    else:
        info.delta = _first_amount(ACQUISITION_PATTERN, text)

    info.total = _first_amount(TOTAL_PATTERN, text)

    if info.delta is None and info.total is None:
        amounts = [
            amount
            for amount in (parse_amount(m.group(1)) for m in ANY_AMOUNT_PATTERN.finditer(text))
            if amount is not None
        ]
        if amounts:
            info.total = max(amounts)

    return info


def determine_filing_type(
    delta: Optional[float], total: Optional[float], is_disposal: bool
) -> str:
    """Label a filing from its extracted amounts; a delta outranks a total."""

    if is_disposal and delta is not None:
        return DISPOSAL
    if delta:
        return ACQUISITION
    if total is not None:
        return UPDATE
    return DISCLOSURE


def classify_title(title: Optional[str]) -> str:
    """Label a filing from keywords in its title alone."""

    lowered = (title or "").lower()
    for filing_type, keywords in TITLE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return filing_type
    return DISCLOSURE


def is_bitcoin_related(*texts: Optional[str]) -> bool:
    """Return whether any of ``texts`` mentions Bitcoin or digital assets."""

    return any(text and BITCOIN_KEYWORDS_PATTERN.search(text) for text in texts)


def extraction_confidence(text: Optional[str], info: AmountInfo, bitcoin_related: bool = False) -> int:
    """Score how far an extraction from ``text`` can be trusted, from 0 to 100.

    A transaction verb scores highest, then an explicit total holdings phrase,
    then the largest-amount fallback.
    """

    if info.delta is not None:
        score = 90
    elif info.total is not None:
        score = 80 if text and TOTAL_PATTERN.search(text) else 50
    else:
        return 0
    if bitcoin_related:
        score += 10
    return min(score, 100)


__all__ = [
    "parse_amount",
    "extract_amount_info",
    "determine_filing_type",
    "classify_title",
    "is_bitcoin_related",
    "extraction_confidence",
    "BITCOIN_KEYWORDS_PATTERN",
]
