"""Turn raw, reasoning-polluted model output into a clean spoken line.

Models asked to "only output the line" still leak planning text ("We need
to...", "Let's count characters", "Thus final answer: ..."). Rather than
chasing every leak pattern, extraction walks a ladder of strategies and the
first one that yields usable speech wins:

    1. last "<Role>: " prefixed line
    2. marked final answer ("final answer: ...", quoted or not)
    3. sentence filter, keeping the latest clean sentences
    4. last non-trivial paragraph
    5. tail of the flattened text

The result is then finalized (markdown and dashes stripped, whitespace
collapsed, length bounded). The ladder runs once. Input that is already a
clean line is returned unchanged, so sanitize() is idempotent.
"""

import logging
import re
from collections.abc import Sequence

from config.config_loader import SanitizerConfig

logger = logging.getLogger(__name__)

# Phrases that mark internal planning rather than spoken debate. Data, not
# logic: settings.yaml can replace the list via sanitizer.meta_signals.
DEFAULT_META_SIGNALS: tuple[str, ...] = (
    "must be", "need to", "we need", "let's ", "should cite", "should be",
    "characters", "char count", "word count", "bullet point", "bullet ",
    "markdown", "citation", "formatting", "sentence count", "numbered list",
    "the user", "the instruction", "approximate", "response length",
    "domain link", "counter red", "counter blue", "opening argument",
    "present your", "incorporate", "web search", "search results",
    "include citation", "argue for or against", "could cite", "could use",
    "they want", "probably yes", "probably not", "probably need",
    "thus final", "final answer", "final response", "final version",
    "here is my", "here are my", "my response", "my answer", "my argument",
    "keep under", "keep within", "under 400", "under 500", "that's ",
    "use at most", "max 3", "max 4", "3-4 bullet",
    "punchy sentence", "directly counter", "be respectful", "be rigorous",
    "output only", "spoken words", "start directly", "not aggressive",
    "use conversational", "wikipedia", "deliver your verdict", "who won",
    "be decisive", "[blue]", "[red]", "blue debater", "red debater",
    "so maybe", "actually we", "actually they", "link with", "domain is",
    "total char", "how many char", "how many word", "now deliver",
    "but they want", "that domain", "that is okay", "that likely",
    "that suggests", "can also", "we can", "we should",
    "documented in", "according to", "studies show", "research shows",
    "the article", "the study", "published in", "as reported",
    "check out", "refer to", "as noted in", "evidence from",
    "data shows", "data suggests", "a study", "one study",
    "researchers found", "researchers have", "the research",
    "the evidence", "the data", "peer-reviewed", "meta-analysis",
    "clinical trial", "randomized control", "literature review",
    "journal of", "university of", "institute of",
    "no sources", "without sources", "missing sources",
    "i don't have", "i cannot verify", "i can't verify",
)

DEFAULT_SPEAKERS: tuple[str, ...] = ("Moderator", "Blue", "Red")

MIN_SENTENCE_CHARS = 15
MAX_BULLETS = 4
_MAX_PASSES = 6

_MD_LINK = re.compile(r"\[([^\]]*)\]\(https?://[^)]+\)")
_URL = re.compile(r"https?://[^\s<>\"'`]+")
_BARE_DOMAIN = re.compile(r"\b\w+\.(?:com|org|net|edu|gov|io)\S*", re.IGNORECASE)
_SPACES = re.compile(r"[ \t]{2,}")
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_THINK_TAG = re.compile(r"</?think>", re.IGNORECASE)
_SENTENCE = re.compile(r"[^.!?]+[.!?]+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")
_LIST_MARKER = re.compile(r"^(?:[-*•]\s+|\d+\.\s+)")
_QUOTED_FINAL = re.compile(
    r"(?:let's craft|thus final answer|final answer|final version)[:\s]*\"([^\"]{20,})\"",
    re.IGNORECASE,
)
_MARKED_FINAL = re.compile(
    r"(?:thus final answer|final answer|final version|final response)[:\s]*([\s\S]{20,})",
    re.IGNORECASE,
)
_BULLET_LINE = re.compile(r"^[-*•]\s+(.+)")
_BULLET_LABEL = re.compile(r"^bullet\s*\d+\s*[:.]?\s*[\"“”]?\s*(.+)", re.IGNORECASE)
_TRAILING_QUOTE = re.compile(r"[\"“”]$")

# finalize()
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC = re.compile(r"\*([^*]+)\*")
_UNDER_BOLD = re.compile(r"(?<!\w)__([^_]+)__(?!\w)")
_UNDER_ITALIC = re.compile(r"(?<!\w)_([^_]+)_(?!\w)")
_HEADING = re.compile(r"#{1,6}\s+")
_DASH = re.compile(r"\s*[—–]\s*")
_DOUBLE_COMMA = re.compile(r",\s*,")
_SPACE_BEFORE_COMMA = re.compile(r"\s+,")
_WHITESPACE = re.compile(r"\s+")

# _plain()
_UNSAFE = re.compile(r"[^A-Za-z0-9 .,!?']+")
_DOT_BEFORE_WORD = re.compile(r"\.(?=\w)")
_FINAL_PHRASE = re.compile(r"thus final answer|final answer|final version|final response", re.IGNORECASE)
_COMMA_RUN = re.compile(r"[\s,]*,[\s,]*")


def strip_urls(text: str) -> str:
    text = _MD_LINK.sub("", text)
    text = _URL.sub("", text)
    text = _BARE_DOMAIN.sub("", text)
    return _SPACES.sub(" ", text).strip()


def _strip_think(text: str) -> str:
    outside = _THINK_BLOCK.sub("", text)
    if outside.strip():
        text = outside
    return _THINK_TAG.sub("", text)


def is_meta_sentence(sentence: str, signals: Sequence[str] = DEFAULT_META_SIGNALS) -> bool:
    lower = sentence.lower()
    if len(lower) < MIN_SENTENCE_CHARS:
        return True
    return any(kw in lower for kw in signals)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in (_SENTENCE.findall(text) or [text]) if s.strip()]


def flatten(text: str) -> str:
    """Join lines into one, dropping list markers and near-empty lines."""
    lines = []
    for line in text.split("\n"):
        stripped = _LIST_MARKER.sub("", line.strip())
        if len(stripped) > 1:
            lines.append(stripped)
    return _SPACES.sub(" ", " ".join(lines)).strip()


def _speaker_pattern(speakers: Sequence[str]) -> str:
    return "|".join(re.escape(s) for s in speakers)


def extract_prefixed(text: str, role: str, speakers: Sequence[str] = DEFAULT_SPEAKERS) -> str | None:
    """Take what follows the LAST "<role>: " marker, up to the next speaker marker."""
    last_index = -1
    for match in re.finditer(rf"{re.escape(role)}:\s*", text, re.IGNORECASE):
        last_index = match.end()
    if last_index == -1:
        return None

    after = text[last_index:]
    names = _speaker_pattern(tuple(speakers) + (role,))
    next_speaker = re.search(rf"\n\s*(?:{names}):", after, re.IGNORECASE)
    spoken = after[: next_speaker.start()] if next_speaker else after
    spoken = spoken.strip()
    return spoken if len(spoken) > 10 else None


def extract_marked_final(text: str, signals: Sequence[str] = DEFAULT_META_SIGNALS) -> str | None:
    quoted = _QUOTED_FINAL.findall(text)
    if quoted:
        return quoted[-1]

    marked = _MARKED_FINAL.search(text)
    if marked:
        clean = [s for s in split_sentences(marked.group(1).strip()) if not is_meta_sentence(s, signals)]
        if clean:
            return " ".join(clean)
    return None


def filter_sentences(flat: str, max_len: int, signals: Sequence[str] = DEFAULT_META_SIGNALS) -> str | None:
    """Keep the latest non-meta sentences that fit in max_len, scanning backwards."""
    clean = [
        s for s in split_sentences(flat)
        if len(s) > MIN_SENTENCE_CHARS and not is_meta_sentence(s, signals)
    ]
    result = ""
    for sentence in reversed(clean):
        candidate = f"{sentence} {result}" if result else sentence
        if len(candidate) > max_len and result:
            break
        result = candidate
    result = result.strip()
    return result if len(result) > 20 else None


def last_paragraph(text: str) -> str | None:
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(text) if len(p.strip()) > 20]
    return paragraphs[-1] if paragraphs else None


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    cut = text[:max_len]
    last_end = max(cut.rfind("."), cut.rfind("!"), cut.rfind("?"))
    if last_end > 20:
        cut = cut[: last_end + 1]
    return cut.rstrip()


def _finalize_once(text: str, max_len: int, speakers: Sequence[str]) -> str:
    result = _BOLD.sub(r"\1", text)
    result = _ITALIC.sub(r"\1", result)
    result = _UNDER_BOLD.sub(r"\1", result)
    result = _UNDER_ITALIC.sub(r"\1", result)
    result = _HEADING.sub("", result)
    result = _DASH.sub(", ", result)
    result = _DOUBLE_COMMA.sub(",", result)
    result = _SPACE_BEFORE_COMMA.sub(",", result)
    result = _WHITESPACE.sub(" ", result).strip()
    result = re.sub(rf"^(?:{_speaker_pattern(speakers)}):\s*", "", result, flags=re.IGNORECASE)
    return _truncate(result, max_len).strip()


def finalize(text: str, max_len: int, speakers: Sequence[str] = DEFAULT_SPEAKERS) -> str:
    """Strip markdown, turn dashes into commas, collapse whitespace, bound length."""
    for _ in range(_MAX_PASSES):
        cleaned = _finalize_once(text, max_len, speakers)
        if cleaned == text:
            break
        text = cleaned
    return text


def extract_bullets(text: str) -> list[str]:
    """Lines that start with a bullet marker or a "Bullet N:" label, normalized to "- "."""
    bullets = []
    for line in text.split("\n"):
        stripped = line.strip()
        marker = _BULLET_LINE.match(stripped)
        if marker:
            bullets.append(f"- {marker.group(1).strip()}")
            continue
        label = _BULLET_LABEL.match(stripped)
        if label:
            content = _TRAILING_QUOTE.sub("", label.group(1).strip()).strip()
            if content:
                bullets.append(f"- {content}")
    return bullets[:MAX_BULLETS]


def _fit_bullets(bullets: list[str], max_len: int) -> str:
    while len(bullets) > 1 and len("\n".join(bullets)) > max_len:
        bullets = bullets[:-1]
    return "\n".join(bullets)[:max_len].rstrip()


def _extract(
    text: str,
    role: str,
    max_len: int,
    signals: Sequence[str],
    speakers: Sequence[str],
) -> str:
    body = strip_urls(_strip_think(text))
    flat = flatten(body)
    candidate = (
        extract_prefixed(body, role, speakers)
        or extract_marked_final(body, signals)
        or filter_sentences(flat, max_len, signals)
        or last_paragraph(body)
        or flat[-max_len:]
    )
    return finalize(flatten(candidate), max_len, tuple(speakers) + (role,))


def _tail(text: str, max_len: int) -> str:
    return _WHITESPACE.sub(" ", text).strip()[-max_len:].strip()


def _settle_once(text: str, max_len: int, speakers: Sequence[str]) -> str:
    return finalize(strip_urls(_strip_think(text)), max_len, speakers)


def _settle(text: str, max_len: int, speakers: Sequence[str]) -> str:
    for _ in range(_MAX_PASSES):
        cleaned = _settle_once(text, max_len, speakers)
        if cleaned == text:
            break
        text = cleaned
    return text


def is_clean(text: str, role: str, max_len: int, speakers: Sequence[str] = DEFAULT_SPEAKERS) -> bool:
    """True when text is already a finished line that extraction would leave alone.

    Clean text fits in max_len, survives cleanup unchanged, and carries
    neither a "<role>:" marker nor a final-answer marker.
    """
    names = tuple(speakers) + (role,)
    return (
        bool(text)
        and len(text) <= max_len
        and re.search(rf"{re.escape(role)}:", text, re.IGNORECASE) is None
        and _MARKED_FINAL.search(text) is None
        and _QUOTED_FINAL.search(text) is None
        and _settle_once(text, max_len, names) == text
    )


def _plain(text: str, max_len: int) -> str:
    """Reduce text to letters, digits and basic punctuation. Always clean."""
    text = _UNSAFE.sub(" ", text)
    text = _DOT_BEFORE_WORD.sub(". ", text)
    text = _WHITESPACE.sub(" ", text)
    previous = None
    while text != previous:
        previous = text
        text = _FINAL_PHRASE.sub(" ", text)
        text = _COMMA_RUN.sub(", ", text)
        text = _WHITESPACE.sub(" ", text).strip()
    return text[:max_len].strip()


def sanitize(
    raw: str,
    role: str,
    max_len: int,
    *,
    bullets: bool = False,
    signals: Sequence[str] = DEFAULT_META_SIGNALS,
    speakers: Sequence[str] = DEFAULT_SPEAKERS,
) -> str:
    """Extract the spoken line for `role` from raw model output.

    Non-empty input always gives non-empty output, output never exceeds
    max_len, and sanitize(sanitize(x)) == sanitize(x). The ladder runs once;
    text that is already clean comes back unchanged.
    """
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    if not raw or not raw.strip():
        return ""
    if is_clean(raw, role, max_len, speakers):
        return raw

    if bullets:
        found = extract_bullets(strip_urls(_strip_think(raw)))
        if found:
            result = _fit_bullets(found, max_len)
            if is_clean(result, role, max_len, speakers) or (
                _fit_bullets(extract_bullets(strip_urls(_strip_think(result))), max_len) == result
            ):
                return result

    names = tuple(speakers) + (role,)
    text = _settle(_extract(raw, role, max_len, signals, speakers), max_len, names)
    if not text:
        logger.debug("Sanitizer found no usable speech for %s, keeping tail", role)
        text = _settle(_tail(raw, max_len), max_len, names)
    if not is_clean(text, role, max_len, speakers):
        text = _plain(text, max_len)
    return text or _plain(raw, max_len) or "."


class Sanitizer:
    """sanitize() bound to the configured phrase list and length limits."""

    def __init__(self, config: SanitizerConfig | None = None) -> None:
        self.config = config or SanitizerConfig()
        self.signals: tuple[str, ...] = tuple(self.config.meta_signals or DEFAULT_META_SIGNALS)

    def clean(self, raw: str, role: str, max_len: int, *, bullets: bool = False) -> str:
        return sanitize(raw, role, max_len, bullets=bullets, signals=self.signals)

    def debater(self, raw: str, name: str) -> str:
        return self.clean(raw, name, self.config.debater_max_len, bullets=self.config.bullet_mode)

    def moderator(self, raw: str) -> str:
        return self.clean(raw, "Moderator", self.config.moderator_max_len)
