"""
Text metrics for regulation content.

Pure functions: word counts, keyword frequencies, sentence statistics,
Flesch reading ease and a custom complexity score.
"""

import math
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List

WORD_PATTERN = re.compile(r"\b[A-Za-z0-9]+(?:[-'][A-Za-z0-9]+)*\b")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_NAMED_ENTITY_PATTERN = re.compile(r"&[a-zA-Z]+;")
_NUMERIC_ENTITY_PATTERN = re.compile(r"&#\d+;")
_WHITESPACE = re.compile(r"\s+")
# Whitespace run plus the character after it, for keyword keys
_WORD_BREAK = re.compile(r"\s+(\S)")

# Sentence boundary: terminal punctuation (optionally closed by quotes or
# brackets) followed by whitespace and an uppercase letter, digit, quote or
# paragraph marker.
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])[\"')\]]*\s+(?=[A-Z0-9\"'(\[§])")
_ABBREVIATIONS = {
    "u.s", "e.g", "i.e", "etc", "no", "nos", "sec", "secs", "pt", "pts", "ch",
    "par", "para", "cf", "vol", "inc", "corp", "co", "mr", "mrs", "ms", "dr",
    "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept", "oct",
    "nov", "dec", "st", "approx", "fed", "reg", "v", "vs",
}

_VOWEL_GROUPS = re.compile(r"[aeiouy]+")
_SILENT_ENDINGS = re.compile(r"(?:[^laeiouy]es|[^laeiouy]ed|[^aeiouy]e)$")
_LE_ENDING = re.compile(r"[^aeiouy]le$")


def clean_text(text: str) -> str:
    """Strip markup tags and entities, collapse whitespace."""
    if not text:
        return ""
    text = _TAG_PATTERN.sub(" ", text)
    text = _NAMED_ENTITY_PATTERN.sub(" ", text)
    text = _NUMERIC_ENTITY_PATTERN.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def tokenize_words(text: str) -> List[str]:
    return WORD_PATTERN.findall(text)


def count_words(text: str) -> int:
    return len(tokenize_words(clean_text(text)))


def split_sentences(text: str) -> List[str]:
    """Split cleaned text into sentences, keeping common legal abbreviations intact."""
    text = clean_text(text)
    if not text:
        return []

    sentences: List[str] = []
    start = 0
    for match in _SENTENCE_BOUNDARY.finditer(text):
        candidate = text[start:match.start()].strip()
        last_word = candidate.rsplit(" ", 1)[-1].rstrip(".\"')]").lower()
        if last_word in _ABBREVIATIONS or (len(last_word) == 1 and last_word.isalpha()):
            continue
        if candidate:
            sentences.append(candidate)
        start = match.end()

    tail = text[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


def count_syllables(word: str) -> int:
    """
    Estimate English syllables in a word.

    Counts vowel groups, drops a silent trailing e/es/ed, and restores the
    syllable of a consonant + "le" ending. Numbers and single letters
    count as one.
    """
    word = word.lower().strip("'")
    if not word:
        return 0
    if not any(ch.isalpha() for ch in word):
        return 1

    total = 0
    for part in re.split(r"[-']", word):
        if not part:
            continue
        if len(part) <= 3:
            total += 1
            continue
        stripped = _SILENT_ENDINGS.sub("", part)
        groups = len(_VOWEL_GROUPS.findall(stripped))
        if _LE_ENDING.search(part):
            groups += 1
        total += max(groups, 1)
    return max(total, 1)


def to_camel_case(keyword: str) -> str:
    """
    'reporting requirement' -> 'reportingRequirement'.

    Only whitespace separates words; hyphens and case are kept, so
    'anti-dumping' stays 'anti-dumping'.
    """
    return _WORD_BREAK.sub(lambda m: m.group(1).upper(), keyword.strip())


def keyword_frequency(text: str, keywords: Iterable[str]) -> Dict[str, int]:
    """Case-insensitive whole-word occurrences of each keyword, keyed by camelCase."""
    cleaned = clean_text(text)
    result: Dict[str, int] = {}
    for keyword in keywords:
        key = to_camel_case(keyword)
        if not key:
            continue
        pattern = re.compile(r"\b" + re.escape(keyword.strip()) + r"\b", re.IGNORECASE)
        result[key] = result.get(key, 0) + len(pattern.findall(cleaned))
    return result


def average_sentence_length(text: str) -> int:
    sentences = split_sentences(text)
    if not sentences:
        return 0
    words = len(tokenize_words(" ".join(sentences)))
    return round(words / len(sentences))


def readability_score(text: str) -> int:
    """Flesch reading ease clamped to [0, 100]; empty text scores 100."""
    sentences = split_sentences(text)
    words = tokenize_words(" ".join(sentences))
    if not sentences or not words:
        return 100

    syllables = sum(count_syllables(w) for w in words)
    score = 206.835 - 1.015 * (len(words) / len(sentences)) - 84.6 * (syllables / len(words))
    return max(0, min(100, round(score)))


def complexity_score(text: str) -> int:
    """
    Weighted complexity in [0, 100].

    40 points for average sentence length (saturating at 30 words), 40 for
    the share of words with three or more syllables, 20 for the variance of
    sentence lengths (saturating at 100).
    """
    sentences = split_sentences(text)
    words = tokenize_words(" ".join(sentences))
    if not sentences or not words:
        return 0

    lengths = [len(tokenize_words(s)) for s in sentences]
    avg_len = len(words) / len(sentences)
    mean = sum(lengths) / len(lengths)
    variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
    complex_ratio = sum(1 for w in words if count_syllables(w) >= 3) / len(words)

    score = (
        40 * min(avg_len / 30, 1)
        + 40 * complex_ratio
        + 20 * min(variance / 100, 1)
    )
    if math.isnan(score):
        return 0
    return max(0, min(100, round(score)))


@dataclass
class TextMetrics:
    word_count: int
    complexity_score: int
    readability_score: int
    average_sentence_length: int
    keyword_frequency: Dict[str, int]

    def to_metric_fields(self) -> Dict[str, object]:
        return {
            "wordCount": self.word_count,
            "complexityScore": self.complexity_score,
            "readabilityScore": self.readability_score,
            "averageSentenceLength": self.average_sentence_length,
            "keywordFrequency": self.keyword_frequency,
        }


def analyze_text(text: str, keywords: Iterable[str]) -> TextMetrics:
    """Compute every text metric for one title's content."""
    return TextMetrics(
        word_count=count_words(text),
        complexity_score=complexity_score(text),
        readability_score=readability_score(text),
        average_sentence_length=average_sentence_length(text),
        keyword_frequency=keyword_frequency(text, keywords),
    )
