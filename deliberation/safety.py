"""Debate topic safety gate: local pattern screen, then a model classifier.

Both stages fail closed. A malformed classifier reply or a failed classifier
call denies the topic.
"""

import json
import logging
import re

from config.config_loader import PromptsConfig
from deliberation.models import GuardResult
from deliberation.providers.base import NO_REASONING, ProviderError, UpstreamClient
from deliberation.turns import messages_for

logger = logging.getLogger(__name__)

MIN_TOPIC_CHARS = 6
MAX_TOPIC_CHARS = 240

CATEGORIES = frozenset({
    "safe",
    "violence_or_abuse",
    "sexual_or_exploitative",
    "hate_or_extremism",
    "self_harm",
    "illegal_activity",
    "political_or_geopolitical",
    "high_risk_advice",
    "other",
})

BLOCKED_TOPIC_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("self_harm", re.compile(r"\b(suicide|self-harm|kill myself|how to die)\b", re.IGNORECASE)),
    ("sexual_or_exploitative", re.compile(r"\b(rape|sexual assault|child porn|cp|incest)\b", re.IGNORECASE)),
    ("violence_or_abuse", re.compile(
        r"\b(bomb|explosive|terror attack|mass shooting|ethnic cleansing)\b", re.IGNORECASE)),
    ("hate_or_extremism", re.compile(r"\b(genocide|racial superiority|hate crime)\b", re.IGNORECASE)),
    ("illegal_activity", re.compile(r"\b(how to make meth|hard drug recipe|weapon build)\b", re.IGNORECASE)),
    ("political_or_geopolitical", re.compile(
        r"\b(election|vote|voting|campaign|candidate|senate|congress|prime minister|president)\b",
        re.IGNORECASE,
    )),
    ("political_or_geopolitical", re.compile(
        r"\b(israel|palestine|ukraine|russia|china[-\s]?taiwan|geopolitical)\b", re.IGNORECASE)),
)

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_BRACED = re.compile(r"\{[\s\S]*\}")

_MALFORMED = GuardResult(False, "other", "Topic guard could not validate this request safely.")
_UNAVAILABLE = GuardResult(False, "other", "Topic guard is temporarily unavailable.")


class SafetyBlocked(Exception):
    """A topic was denied before any debate call was made."""

    def __init__(self, category: str, reason: str) -> None:
        self.category = category
        self.reason = reason
        super().__init__(f"Topic blocked ({category}): {reason}")


def validate_topic(topic: str) -> GuardResult:
    """Cheap local screen run before the classifier call."""
    trimmed = topic.strip()
    if len(trimmed) < MIN_TOPIC_CHARS:
        return GuardResult(False, "other", "Please provide a clearer debate topic.")
    if len(trimmed) > MAX_TOPIC_CHARS:
        return GuardResult(False, "other", f"Debate topics must be under {MAX_TOPIC_CHARS} characters.")
    for category, pattern in BLOCKED_TOPIC_PATTERNS:
        if pattern.search(trimmed):
            return GuardResult(
                False,
                category,
                "This debate topic is blocked for safety. Please use a neutral, constructive topic.",
            )
    return GuardResult(True, "safe", "")


def parse_guard_json(raw: str) -> GuardResult | None:
    """Parse the classifier's JSON reply. None when there is no usable object."""
    fenced = _FENCED_JSON.search(raw)
    if fenced:
        candidate = fenced.group(1)
    else:
        braced = _BRACED.search(raw)
        candidate = braced.group(0) if braced else ""
    if not candidate:
        return None

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None

    category = parsed.get("category")
    if category not in CATEGORIES:
        category = "other"
    reason = parsed.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        reason = "Topic did not pass moderation."
    return GuardResult(parsed.get("allow") is True, category, reason.strip())


class SafetyGate:
    def __init__(self, client: UpstreamClient, prompts: PromptsConfig) -> None:
        self._client = client
        self._prompts = prompts

    async def classify(self, topic: str) -> GuardResult:
        """Ask the guard model. Never raises; any doubt is a deny."""
        messages = messages_for(
            self._prompts.safety_gate,
            self._prompts.safety_gate_user.format(topic=topic.strip()),
        )
        try:
            raw = await self._client.complete_once(
                messages, temperature=0.0, max_tokens=220, reasoning=NO_REASONING,
            )
        except ProviderError as exc:
            logger.warning("Topic guard call failed: %s", exc)
            return _UNAVAILABLE

        result = parse_guard_json(raw)
        if result is None:
            logger.warning("Topic guard reply was not valid JSON, denying")
            return _MALFORMED
        logger.info("Topic guard: allow=%s category=%s", result.allow, result.category)
        return result

    async def check(self, topic: str) -> GuardResult:
        """Run both stages. Raises SafetyBlocked on deny."""
        local = validate_topic(topic)
        if not local.allow:
            raise SafetyBlocked(local.category, local.reason)
        result = await self.classify(topic)
        if not result.allow:
            raise SafetyBlocked(result.category, result.reason)
        return result
