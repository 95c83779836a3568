"""Chat moderation: redacts contact details and denylisted words.

``filter_message`` is the pipeline every chat message goes through before it
is stored or broadcast. The remaining helpers (``validate_message``,
``batch_filter``, ``filtering_stats``, ...) build on it for the moderation
check endpoint and for reporting.
"""

import functools
import re
from dataclasses import dataclass, field

# Reasons, in the order the pipeline can emit them
REASON_PHONE = "phone_number"
REASON_EMAIL = "email_address"
REASON_TOXIC = "toxic_words"
REASON_CAPS = "excessive_caps"
REASON_PUNCTUATION = "excessive_punctuation"
REASON_COMPLETELY_FILTERED = "completely_filtered"

PHONE_PLACEHOLDER = "[phone removed]"
EMAIL_PLACEHOLDER = "[email removed]"
FILTERED_MARKER = "[message filtered]"
DEFAULT_MASK = "***"

TOXIC_WORDS: tuple[str, ...] = (
    # Basic profanity
    "hate", "kill", "suicide", "shit", "fuck", "damn", "hell",
    # Violence and harmful content
    "murder", "death", "destroy", "attack", "violence", "harm",
    "hurt", "pain", "suffer", "torture", "abuse", "assault",
    # Discriminatory language
    "racist", "sexist", "homophobic", "transphobic", "bigot",
    # Toxic behavior
    "toxic", "troll", "spam", "scam", "fraud", "cheat",
    "lie", "liar", "fake", "stupid", "idiot", "moron",
    # Inappropriate content
    "porn", "sex", "nude", "naked", "explicit", "adult",
    # Drug-related
    "drug", "cocaine", "heroin", "marijuana", "weed", "alcohol",
    # Harassment
    "bully", "bullying", "harass", "harassment", "threat", "threaten",
    "revenge", "retaliation", "payback", "punishment",
)

_PHONE_RE = re.compile(r"[0-9]{10,}")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_UPPER_RE = re.compile(r"[A-Z]")
_REPEATED_PUNCT_RE = re.compile(r"""([!@#$%^&*()_+=\[\]{}|;':",./<>?`~])\1{3,}""")
_ALLOWED_CHARS_RE = re.compile(
    "^[\\w\\s"
    "\U0001F300-\U0001F9FF\u2600-\u26FF\u2700-\u27BF"
    r""".,!?;:'"()\-_+=@#$%&*<>/\\|`~\[\]{}]+$"""
)

_CAPS_RATIO = 0.7
_CAPS_MIN_LENGTH = 10


@functools.lru_cache(maxsize=None)
def _word_pattern(word: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)


@dataclass
class FilterResult:
    original_text: str
    filtered_text: str
    was_filtered: bool = False
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    toxic_words_found: list[str] = field(default_factory=list)
    phone_numbers_removed: int = 0
    emails_removed: int = 0


def filter_message(
    text: str,
    *,
    strict: bool = False,
    mask: str = DEFAULT_MASK,
    preserve_length: bool = False,
    denylist: tuple[str, ...] = TOXIC_WORDS,
) -> FilterResult:
    """Run *text* through the moderation pipeline.

    Stages run in a fixed order, each on the previous stage's output:
    phone numbers, email addresses, denylisted words, then (strict mode
    only) shouting and punctuation runs, then trimming. Never raises.
    """
    if not text or not isinstance(text, str):
        return FilterResult(original_text=text if isinstance(text, str) else "", filtered_text="")

    result = FilterResult(original_text=text, filtered_text=text)
    filtered = text

    phones = _PHONE_RE.findall(filtered)
    if phones:
        filtered = _PHONE_RE.sub(PHONE_PLACEHOLDER, filtered)
        result.reasons.append(REASON_PHONE)
        result.warnings.append(f"Removed {len(phones)} phone number(s)")
        result.phone_numbers_removed = len(phones)

    emails = _EMAIL_RE.findall(filtered)
    if emails:
        filtered = _EMAIL_RE.sub(EMAIL_PLACEHOLDER, filtered)
        result.reasons.append(REASON_EMAIL)
        result.warnings.append(f"Removed {len(emails)} email address(es)")
        result.emails_removed = len(emails)

    for word in denylist:
        pattern = _word_pattern(word)
        if pattern.search(filtered):
            replacement = "*" * len(word) if preserve_length else mask
            filtered = pattern.sub(replacement, filtered)
            result.toxic_words_found.append(word)
    if result.toxic_words_found:
        result.reasons.append(REASON_TOXIC)
        result.warnings.append(f"Filtered {len(result.toxic_words_found)} inappropriate word(s)")

    if strict:
        if len(filtered) > _CAPS_MIN_LENGTH:
            ratio = len(_UPPER_RE.findall(filtered)) / len(filtered)
            if ratio > _CAPS_RATIO:
                filtered = filtered.lower()
                result.reasons.append(REASON_CAPS)
                result.warnings.append("Converted excessive caps to lowercase")

        if _REPEATED_PUNCT_RE.search(filtered):
            filtered = _REPEATED_PUNCT_RE.sub(r"\1\1\1", filtered)
            result.reasons.append(REASON_PUNCTUATION)
            result.warnings.append("Reduced excessive punctuation")

    filtered = filtered.strip()
    if not filtered and text.strip():
        filtered = FILTERED_MARKER
        result.reasons.append(REASON_COMPLETELY_FILTERED)
        result.warnings.append("Message was completely filtered")

    result.filtered_text = filtered
    result.was_filtered = bool(result.reasons)
    return result


def validate_message(text: str) -> dict:
    """Strict appropriateness check used before a user commits to posting.

    Shouting and punctuation runs alone still count as appropriate; anything
    that had to be redacted does not.
    """
    result = filter_message(text, strict=True)
    cosmetic = {REASON_CAPS, REASON_PUNCTUATION}
    is_appropriate = not result.was_filtered or (
        len(result.reasons) == 1 and result.reasons[0] in cosmetic
    )
    if not result.was_filtered:
        severity = "none"
    elif REASON_TOXIC in result.reasons:
        severity = "high"
    else:
        severity = "low"
    return {
        "is_appropriate": is_appropriate,
        "message": result.filtered_text,
        "warnings": list(result.warnings),
        "severity": severity,
    }


def batch_filter(texts, **options) -> list[FilterResult]:
    if not isinstance(texts, (list, tuple)):
        return []
    return [filter_message(t, **options) for t in texts]


def filtering_stats(results: list[FilterResult]) -> dict:
    total = len(results)
    filtered = sum(1 for r in results if r.was_filtered)
    reasons: dict[str, int] = {}
    for r in results:
        for reason in r.reasons:
            reasons[reason] = reasons.get(reason, 0) + 1
    return {
        "total_messages": total,
        "filtered_messages": filtered,
        "filtered_percentage": round(filtered / total * 100, 2) if total else 0.0,
        "filter_reasons": reasons,
        "clean_messages": total - filtered,
    }


def is_character_set_appropriate(text: str) -> bool:
    """True if *text* only uses letters, digits, common punctuation and emoji."""
    return isinstance(text, str) and bool(_ALLOWED_CHARS_RE.match(text))


def message_suggestions(result: FilterResult) -> list[str]:
    if not result.was_filtered:
        return ["Your message looks great!"]

    suggestions = []
    if REASON_TOXIC in result.reasons:
        suggestions.append("Try expressing your thoughts with more positive language")
        suggestions.append("Consider focusing on constructive feedback")
    if REASON_PHONE in result.reasons:
        suggestions.append("For privacy, avoid sharing phone numbers in public chats")
        suggestions.append("Use private messages for sharing contact information")
    if REASON_EMAIL in result.reasons:
        suggestions.append("Keep email addresses private for your security")
        suggestions.append("Use the built-in messaging system to connect")
    if REASON_CAPS in result.reasons:
        suggestions.append("Try using normal capitalization for better readability")
    if REASON_PUNCTUATION in result.reasons:
        suggestions.append("Use punctuation sparingly for clearer communication")
    return suggestions or ["Please try rephrasing your message"]
