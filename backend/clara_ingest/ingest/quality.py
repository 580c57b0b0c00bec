"""Text quality validation for extracted document text.

Some PDF producers (browser "print to PDF", documents with outlined or
badly mapped fonts) yield text layers that decode to gibberish. The
validator scores extracted text with a handful of cheap heuristics,
calibrated for Portuguese administrative prose, and recommends whether the
text can be used as-is, should go through OCR, or needs a human look.

The validator is a pure function: identical inputs always produce identical
results.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Literal

from clara_ingest.core.logging import get_logger

logger = get_logger(__name__)

Language = Literal["pt-BR", "en"]
Recommendation = Literal["use_text", "try_ocr", "ask_user"]

MIN_TEXT_LENGTH = 50
ENTROPY_SAMPLE_CHARS = 10_000
PREVIEW_LENGTH = 200

MIN_VALID_WORD_RATIO = 0.55
MIN_COMMON_WORD_RATIO = 0.05
MIN_ALPHANUMERIC_RATIO = 0.60
MIN_AVG_WORD_LENGTH = 2.5
MAX_AVG_WORD_LENGTH = 12
ENTROPY_LOW = 2.5
ENTROPY_HIGH = 6.5
MAX_SUSPICIOUS_PATTERNS = 3
HIGH_CONFIDENCE = 0.75
LOW_CONFIDENCE = 0.45

COMMON_WORDS_PT = frozenset(
    {
        # articles and prepositions
        "de", "da", "do", "das", "dos", "a", "o", "as", "os", "em", "no", "na", "nos", "nas",
        "para", "por", "com", "sem", "sob", "sobre", "entre", "até", "desde", "contra",
        # conjunctions
        "e", "ou", "mas", "que", "se", "quando", "como", "porque", "pois", "porém", "embora",
        # pronouns
        "eu", "tu", "ele", "ela", "nós", "eles", "elas", "você", "vocês",
        "me", "te", "lhe", "lhes", "isso", "isto", "aquilo",
        "esse", "este", "aquele", "essa", "esta", "aquela", "qual", "quem",
        # verbs
        "é", "são", "foi", "ser", "está", "estar", "tem", "ter", "há", "havia",
        "pode", "podem", "deve", "devem", "fazer", "faz", "vai", "vão", "ir",
        "será", "seria", "sendo", "sido", "tendo",
        # adverbs
        "não", "sim", "mais", "menos", "muito", "pouco", "bem", "mal", "já", "ainda",
        "também", "apenas", "só", "sempre", "nunca", "agora", "aqui", "ali", "onde",
        "assim", "então", "logo", "depois", "antes", "durante",
        # nouns
        "ano", "anos", "dia", "dias", "vez", "vezes", "parte", "forma", "caso", "tempo",
        "trabalho", "vida", "mundo", "país", "governo", "empresa", "pessoa", "pessoas",
        # numerals
        "um", "uma", "dois", "duas", "três", "quatro", "cinco", "primeiro", "segundo",
        # contractions and determiners
        "ao", "à", "aos", "às", "pelo", "pela", "pelos", "pelas", "seu", "sua", "seus", "suas",
        "meu", "minha", "nosso", "nossa", "todo", "toda", "todos", "todas", "cada", "outro", "outra",
    }
)

COMMON_WORDS_EN = frozenset(
    {
        "the", "be", "to", "of", "and", "a", "in", "that", "have", "i",
        "it", "for", "not", "on", "with", "he", "as", "you", "do", "at",
        "this", "but", "his", "by", "from", "they", "we", "say", "her", "she",
        "or", "an", "will", "my", "one", "all", "would", "there", "their", "what",
        "is", "are", "was", "were", "been", "being", "has", "had", "having",
    }
)

_COMMON_WORDS: dict[str, frozenset[str]] = {"pt-BR": COMMON_WORDS_PT, "en": COMMON_WORDS_EN}

# Glyph-mapping and encoding failures.
SUSPICIOUS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]{2,}"),
    re.compile(r"\ufffd{2,}"),
    re.compile(r"[a-zA-Z]{25,}"),
    re.compile(r"[\x80-\x9f]{3,}"),
    re.compile(r"[^\x00-\x7f\u00a0-\u024f\u1e00-\u1eff]{10,}"),
    re.compile(r"(.)\1{10,}"),
    re.compile(r"[!@#$%^&*()_+=\[\]{}|\\;:'\",.<>?/]{8,}"),
    re.compile(r"[0-9]{20,}"),
)

_WORD_SPLIT_RE = re.compile(r"[\s\-\u2013\u2014]+")
_EDGE_TRIM_RE = re.compile(r"^[^\wÀ-ÿ]+|[^\wÀ-ÿ]+$", re.ASCII)
_VALID_WORD_RE = re.compile(r"[a-zA-ZÀ-ÿ]{2,}")
_ALNUM_RE = re.compile(r"[a-zA-Z0-9À-ÿ]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True, frozen=True)
class QualityMetrics:
    valid_word_ratio: float = 0.0
    avg_word_length: float = 0.0
    alphanumeric_ratio: float = 0.0
    entropy_score: float = 0.0
    suspicious_patterns: int = 0
    common_word_hits: int = 0


@dataclass(slots=True, frozen=True)
class TextQualityResult:
    """Verdict on a piece of extracted text.

    ``is_valid`` and ``recommendation`` are derived independently from the same
    confidence: text in the ``ask_user`` band can still be valid when it clears
    ``min_confidence`` with at most two issues.
    """

    is_valid: bool
    confidence: float
    issues: tuple[str, ...]
    recommendation: Recommendation
    metrics: QualityMetrics
    text_preview: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["issues"] = list(self.issues)
        return payload


def validate_text_quality(
    text: str,
    expected_language: Language = "pt-BR",
    min_confidence: float = 0.6,
) -> TextQualityResult:
    """Score extracted text and recommend how the pipeline should proceed."""
    if expected_language not in _COMMON_WORDS:
        raise ValueError(f"Unsupported language: {expected_language}")

    if not text or len(text.strip()) < MIN_TEXT_LENGTH:
        return TextQualityResult(
            is_valid=False,
            confidence=0.0,
            issues=("text too short or empty",),
            recommendation="try_ocr",
            metrics=QualityMetrics(),
            text_preview=(text or "")[:PREVIEW_LENGTH],
        )

    words = extract_words(text)
    valid_words = [word for word in words if _VALID_WORD_RE.search(word)]
    valid_word_ratio = len(valid_words) / len(words) if words else 0.0
    avg_word_length = sum(len(word) for word in valid_words) / len(valid_words) if valid_words else 0.0
    alphanumeric_ratio = alphanumeric_share(text)
    entropy_score = shannon_entropy(text[:ENTROPY_SAMPLE_CHARS])
    suspicious = count_suspicious_patterns(text)
    vocabulary = _COMMON_WORDS[expected_language]
    common_word_hits = sum(1 for word in words if word in vocabulary)
    common_word_ratio = common_word_hits / len(words) if words else 0.0

    issues: list[str] = []
    score = 1.0

    if valid_word_ratio < MIN_VALID_WORD_RATIO:
        issues.append(f"low ratio of valid words ({valid_word_ratio * 100:.0f}%)")
        score -= 0.25

    if common_word_ratio < MIN_COMMON_WORD_RATIO:
        issues.append(f"few common words found ({common_word_ratio * 100:.1f}%)")
        score -= 0.15

    if alphanumeric_ratio < MIN_ALPHANUMERIC_RATIO:
        issues.append(f"too many special characters ({(1 - alphanumeric_ratio) * 100:.0f}% non-alphanumeric)")
        score -= 0.20

    if avg_word_length < MIN_AVG_WORD_LENGTH:
        issues.append(f"words too short (average {avg_word_length:.1f} characters)")
        score -= 0.15
    elif avg_word_length > MAX_AVG_WORD_LENGTH:
        issues.append(f"words too long (average {avg_word_length:.1f} characters)")
        score -= 0.20

    if entropy_score < ENTROPY_LOW:
        issues.append("text too repetitive or uniform")
        score -= 0.15
    elif entropy_score > ENTROPY_HIGH:
        issues.append("text looks like binary or random data")
        score -= 0.25

    if suspicious > MAX_SUSPICIOUS_PATTERNS:
        issues.append(f"suspicious encoding patterns detected ({suspicious})")
        score -= 0.20

    # Rounded so stacked float penalties land exactly on the bucket edges.
    confidence = round(max(0.0, min(1.0, score)), 4)

    recommendation: Recommendation
    if confidence >= HIGH_CONFIDENCE:
        recommendation = "use_text"
    elif confidence <= LOW_CONFIDENCE:
        recommendation = "try_ocr"
    else:
        recommendation = "ask_user"

    metrics = QualityMetrics(
        valid_word_ratio=valid_word_ratio,
        avg_word_length=avg_word_length,
        alphanumeric_ratio=alphanumeric_ratio,
        entropy_score=entropy_score,
        suspicious_patterns=suspicious,
        common_word_hits=common_word_hits,
    )
    is_valid = confidence >= min_confidence and len(issues) <= 2

    logger.debug(
        "Text quality analysed",
        extra={
            "ctx_confidence": confidence,
            "ctx_valid": is_valid,
            "ctx_recommendation": recommendation,
            "ctx_issues": issues,
        },
    )
    return TextQualityResult(
        is_valid=is_valid,
        confidence=confidence,
        issues=tuple(issues),
        recommendation=recommendation,
        metrics=metrics,
        text_preview=build_preview(text),
    )


def quick_needs_ocr_check(text: str) -> bool:
    """Fast pre-check used before running the full validator."""
    if not text or len(text) < 100:
        return True
    if alphanumeric_share(text[:2000]) < 0.5:
        return True
    return count_suspicious_patterns(text[:5000]) > 5


def extract_words(text: str) -> list[str]:
    words = []
    for token in _WORD_SPLIT_RE.split(text.lower()):
        word = _EDGE_TRIM_RE.sub("", token)
        if word:
            words.append(word)
    return words


def shannon_entropy(text: str) -> float:
    """Base-2 Shannon entropy over the lower-cased characters of ``text``."""
    lowered = text.lower()
    if not lowered:
        return 0.0
    length = len(lowered)
    entropy = 0.0
    for count in Counter(lowered).values():
        p = count / length
        entropy -= p * math.log2(p)
    return entropy


def alphanumeric_share(text: str) -> float:
    non_whitespace = len(_WHITESPACE_RE.sub("", text))
    if not non_whitespace:
        return 0.0
    return len(_ALNUM_RE.findall(text)) / non_whitespace


def count_suspicious_patterns(text: str) -> int:
    """Score each pattern once: the first match plus one per capture group.

    Repeats of the same pattern (dot leaders in a table of contents, form
    blanks) do not accumulate.
    """
    return sum(1 + pattern.groups for pattern in SUSPICIOUS_PATTERNS if pattern.search(text))


def build_preview(text: str, max_length: int = PREVIEW_LENGTH) -> str:
    """Sample text a quarter of the way in (capped at 500 chars) to skip cover pages."""
    start = min(500, len(text) // 4)
    sample = text[start : start + max_length * 2]
    cleaned = _WHITESPACE_RE.sub(" ", sample).strip()
    return cleaned[:max_length] + ("..." if len(cleaned) > max_length else "")


__all__ = [
    "COMMON_WORDS_PT",
    "COMMON_WORDS_EN",
    "QualityMetrics",
    "TextQualityResult",
    "validate_text_quality",
    "quick_needs_ocr_check",
    "shannon_entropy",
    "count_suspicious_patterns",
]
