"""Phishing heuristics and scoring of records."""

from __future__ import annotations

import logging
import math
import re
from typing import Callable

from .constants import (
    FINANCIAL_TERM_PATTERNS,
    FREE_MAIL_DOMAINS,
    FUZZY_MIN_SHARED_CHARS,
    FUZZY_OVERLAP_RATIO,
    GENERIC_GREETING_PATTERNS,
    GENERIC_LOCAL_PARTS,
    MAX_FUZZY_LENGTH_DIFF,
    MIN_AFFIX_LENGTH,
    MIN_BODY_FINANCIAL_CATEGORIES,
    MIN_OVERLAP_LENGTH,
    MIN_SUBJECT_FINANCIAL_CATEGORIES,
    MIN_URGENCY_CATEGORIES,
    SUSPICION_THRESHOLD,
    SUSPICIOUS_DOMAIN_PATTERNS,
    URGENCY_PATTERNS,
    WEIGHT_DISPLAY_NAME_MISMATCH,
    WEIGHT_FINANCIAL_TERMS,
    WEIGHT_FINANCIAL_TERMS_SUBJECT,
    WEIGHT_GENERIC_GREETING,
    WEIGHT_NO_SENDER_NAME,
    WEIGHT_SUSPICIOUS_DOMAIN,
    WEIGHT_URGENCY,
)
from .models import AnalysisResult, Indicator, IndicatorKind, Record

logger = logging.getLogger(__name__)

_FINANCIAL_RES = [re.compile(p, re.IGNORECASE) for p in FINANCIAL_TERM_PATTERNS]
_GREETING_RES = [re.compile(p, re.IGNORECASE) for p in GENERIC_GREETING_PATTERNS]
_URGENCY_RES = [re.compile(p, re.IGNORECASE) for p in URGENCY_PATTERNS]
_DOMAIN_RES = [re.compile(p, re.IGNORECASE) for p in SUSPICIOUS_DOMAIN_PATTERNS]
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_NON_ALPHA_RE = re.compile(r"[^a-z\s]")


# --- display-name matching ---


def _normalize(text: str) -> str:
    return _NON_ALNUM_RE.sub("", text.lower())


def company_name_from_domain(domain: str) -> str:
    """Guess the organisation label of a domain.

    "pb.dupr.com" -> "dupr", "cline.bot" -> "cline".
    """
    if not domain:
        return ""
    parts = domain.lower().split(".")
    if len(parts) >= 3:
        return parts[1]
    return parts[0]


def has_significant_overlap(first: str, second: str, min_length: int = MIN_OVERLAP_LENGTH) -> bool:
    """True if the strings share a substring of at least ``min_length`` characters."""
    if len(first) < min_length or len(second) < min_length:
        return False
    longer, shorter = (first, second) if len(first) > len(second) else (second, first)
    if shorter in longer:
        return True
    return any(
        shorter[i : i + min_length] in longer for i in range(len(shorter) - min_length + 1)
    )


def _shares_characters(first: str, second: str) -> bool:
    shorter, longer = sorted((first, second), key=len)
    shorter_chars = set(shorter)
    shared = shorter_chars & set(longer)
    return len(shared) >= FUZZY_MIN_SHARED_CHARS and len(shared) >= math.ceil(
        len(shorter_chars) * FUZZY_OVERLAP_RATIO
    )


def has_fuzzy_name_match(display_name: str, local_part: str) -> bool:
    """Per-word comparison of a display name against an address local part.

    A name token matches when it is a prefix or suffix of the local part
    ("ragatz" in "aragatz"), when the local part abbreviates it, or when both
    start with the same letter, have comparable lengths and share most of
    their characters.
    """
    prefix = _normalize(local_part)
    if not prefix:
        return False

    for token in _NON_ALPHA_RE.sub("", display_name.lower()).split():
        if token == prefix:
            return True
        if len(token) >= MIN_AFFIX_LENGTH and (prefix.startswith(token) or prefix.endswith(token)):
            return True
        if len(prefix) >= MIN_AFFIX_LENGTH and token.startswith(prefix):
            return True
        if (
            token[0] == prefix[0]
            and abs(len(token) - len(prefix)) <= MAX_FUZZY_LENGTH_DIFF
            and _shares_characters(token, prefix)
        ):
            return True
    return False


def _identity_local_part(local: str, domain: str) -> str:
    # "support@gmail.com" tells us nothing about who "Microsoft Support" is
    if domain in FREE_MAIL_DOMAINS and local in GENERIC_LOCAL_PARTS:
        return ""
    return local


def _name_matches_address(display_name: str, address: str) -> bool:
    local, _, domain = address.strip().lower().partition("@")
    local = _identity_local_part(local, domain)
    display_lower = display_name.lower()
    normalized_display = _normalize(display_name)

    if not normalized_display:
        # Nothing comparable (e.g. a non-Latin name); do not accuse.
        return True
    if local and local in display_lower:
        return True
    if domain and domain in display_lower:
        return True

    for candidate in (_normalize(local), _normalize(company_name_from_domain(domain))):
        if not candidate:
            continue
        if candidate in normalized_display or normalized_display in candidate:
            return True
        if has_significant_overlap(normalized_display, candidate):
            return True

    return bool(local) and has_fuzzy_name_match(display_name, local)


def check_display_name_mismatch(
    display_name: str | None,
    sender_email: str | None,
    reply_to: str | None = None,
) -> bool:
    """Return True when the display name has nothing to do with the addresses."""
    if not display_name or not display_name.strip() or not sender_email:
        return False

    if _name_matches_address(display_name, sender_email):
        return False

    if reply_to and reply_to.strip().lower() != sender_email.strip().lower():
        if _name_matches_address(display_name, reply_to):
            return False

    return True


# --- text heuristics ---


def _matching_patterns(patterns: list[re.Pattern], text: str) -> list[re.Match]:
    matches = []
    for pattern in patterns:
        m = pattern.search(text)
        if m:
            matches.append(m)
    return matches


def _sender_domain(sender_email: str | None) -> str:
    if not sender_email or "@" not in sender_email:
        return ""
    return sender_email.rsplit("@", 1)[1].strip().lower()


def find_indicators(record: Record) -> list[Indicator]:
    """Run every heuristic against a record and return the triggered ones."""
    indicators: list[Indicator] = []

    sender_name = record.sender_name or ""
    subject_text = record.subject or ""
    body_text = record.body or record.snippet or ""

    if sender_name.strip() and record.sender_email:
        if check_display_name_mismatch(sender_name, record.sender_email, record.reply_to):
            indicators.append(
                Indicator(
                    kind=IndicatorKind.DISPLAY_NAME_MISMATCH,
                    weight=WEIGHT_DISPLAY_NAME_MISMATCH,
                    detail=f'Display: "{sender_name}" vs Sender: "{record.sender_email}"',
                    description="Display name does not match sender email address",
                )
            )

    if not sender_name.strip():
        indicators.append(
            Indicator(
                kind=IndicatorKind.NO_SENDER_NAME,
                weight=WEIGHT_NO_SENDER_NAME,
                detail="No display name provided",
                description="Email has no sender display name",
            )
        )

    if body_text:
        financial = _matching_patterns(_FINANCIAL_RES, body_text)
        if len(financial) >= MIN_BODY_FINANCIAL_CATEGORIES:
            indicators.append(
                Indicator(
                    kind=IndicatorKind.FINANCIAL_TERMS,
                    weight=WEIGHT_FINANCIAL_TERMS,
                    detail=f"{len(financial)} financial terms detected",
                    description="Email content contains multiple financial terms commonly used in phishing",
                )
            )

    if subject_text:
        subject_financial = _matching_patterns(_FINANCIAL_RES, subject_text)
        if len(subject_financial) >= MIN_SUBJECT_FINANCIAL_CATEGORIES:
            indicators.append(
                Indicator(
                    kind=IndicatorKind.FINANCIAL_TERMS_SUBJECT,
                    weight=WEIGHT_FINANCIAL_TERMS_SUBJECT,
                    detail=", ".join(m.group(0) for m in subject_financial),
                    description="Subject line contains financial terms commonly used in phishing",
                )
            )

    if body_text:
        greetings = _matching_patterns(_GREETING_RES, body_text)
        if greetings:
            indicators.append(
                Indicator(
                    kind=IndicatorKind.GENERIC_GREETING,
                    weight=WEIGHT_GENERIC_GREETING,
                    detail=", ".join(m.group(0) for m in greetings),
                    description="Email uses generic, impersonal greetings commonly found in phishing",
                )
            )

    urgency = [
        p for p in _URGENCY_RES if p.search(body_text) or p.search(subject_text)
    ]
    if len(urgency) >= MIN_URGENCY_CATEGORIES:
        indicators.append(
            Indicator(
                kind=IndicatorKind.URGENCY,
                weight=WEIGHT_URGENCY,
                detail=f"{len(urgency)} urgency indicators",
                description="Email contains multiple urgency indicators commonly used in phishing",
            )
        )

    domain = _sender_domain(record.sender_email)
    if domain and any(p.search(domain) for p in _DOMAIN_RES):
        indicators.append(
            Indicator(
                kind=IndicatorKind.SUSPICIOUS_DOMAIN,
                weight=WEIGHT_SUSPICIOUS_DOMAIN,
                detail=f"Suspicious domain: {domain}",
                description="Email sender uses a suspicious domain",
            )
        )

    return indicators


def analyze_record(
    record: Record,
    is_allowlisted: Callable[[str | None], bool] | None = None,
) -> AnalysisResult:
    """Score a record.

    Allow-listed senders short-circuit to a zero, non-suspicious result
    without running any heuristic.
    """
    if is_allowlisted is not None and is_allowlisted(record.sender_email):
        logger.debug("Sender %s is allow-listed, skipping analysis", record.sender_email)
        return AnalysisResult.allowlisted()

    result = AnalysisResult.from_indicators(find_indicators(record))
    if result.is_suspicious:
        logger.info(
            "Suspicious record %s from %s (score %d)",
            record.thread_id,
            record.sender_email,
            result.score,
        )
    return result


def classify_result(result: AnalysisResult) -> str:
    """Classify a result for display."""
    if result.was_allowlisted:
        return "allowlisted"
    if result.score >= SUSPICION_THRESHOLD:
        return "suspicious"
    if result.score > 0:
        return "borderline"
    return "clean"
