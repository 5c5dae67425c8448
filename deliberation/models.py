"""Dataclasses and enums shared by the deliberation pipeline."""

from dataclasses import dataclass, field
from enum import Enum


class Mode(str, Enum):
    DEBATE = "debate"
    CONVERGENT = "convergent"
    PLAIN = "plain"


class Speaker(str, Enum):
    MODERATOR = "moderator"
    BLUE = "blue"
    RED = "red"
    JUDGE = "judge"
    DEBATER_A = "debater_a"
    DEBATER_B = "debater_b"
    EXECUTOR = "executor"
    ASSISTANT = "assistant"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class ConvergenceStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CONVERGED = "converged"
    NEEDS_INPUT = "needs_input"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    PDF = "pdf"


class ExtractionMethod(str, Enum):
    NATIVE = "native"
    OCR = "ocr"


@dataclass(frozen=True)
class Turn:
    speaker: Speaker
    round: int             # 0 = introductions and kickoffs
    text: str
    sources: frozenset[str] = frozenset()


class TranscriptFull(Exception):
    """Raised when a turn would push a transcript past its size bound."""


@dataclass
class Transcript:
    """Ordered, append-only list of turns for one request."""

    limit: int
    turns: list[Turn] = field(default_factory=list)

    def append(self, turn: Turn) -> Turn:
        if len(self.turns) >= self.limit:
            raise TranscriptFull(f"Transcript limit {self.limit} reached")
        self.turns.append(turn)
        return turn

    def __len__(self) -> int:
        return len(self.turns)

    def __iter__(self):
        return iter(self.turns)

    def last(self, speaker: Speaker) -> Turn | None:
        for turn in reversed(self.turns):
            if turn.speaker is speaker:
                return turn
        return None


@dataclass
class ConvergenceState:
    round: int = 0
    max_rounds: int = 0
    score: int = 0
    status: ConvergenceStatus = ConvergenceStatus.IDLE


@dataclass(frozen=True)
class Attachment:
    kind: AttachmentKind
    data: bytes
    name: str = ""

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ExtractionResult:
    text: str
    method: ExtractionMethod
    page_count: int
    warning: str | None = None


@dataclass(frozen=True)
class JudgeVerdict:
    score: int
    converged: bool
    synthesis: str
    next_direction: str
    unresolved: list[str] = field(default_factory=list)
    clarifying_questions: list[str] = field(default_factory=list)
    final_direction: str = ""


@dataclass(frozen=True)
class ParseFailure:
    reason: str


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str


@dataclass(frozen=True)
class GuardResult:
    allow: bool
    category: str
    reason: str


@dataclass
class OrchestrationRequest:
    task: str
    mode: Mode = Mode.CONVERGENT
    attachments: list[Attachment] = field(default_factory=list)
    max_rounds: int | None = None
    web_search_enabled: bool | None = None  # None -> mode default


@dataclass
class DebateResult:
    topic: str
    transcript: Transcript
    first_speaker: Speaker
    winner: Speaker | None = None
    completed: bool = False


@dataclass
class ConvergenceResult:
    task: str
    transcript: Transcript
    state: ConvergenceState
    final_text: str = ""
    clarifying_questions: list[str] = field(default_factory=list)
    completed: bool = False
