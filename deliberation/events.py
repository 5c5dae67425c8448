"""Typed orchestration events and their server-sent-event wire form."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from deliberation.models import ConvergenceState, Speaker


class EventType(str, Enum):
    START = "start"
    STATUS = "status"
    REASONING = "reasoning"
    CONTENT = "content"
    CONVERGENT_START = "convergent_start"
    CONVERGENCE_STATE = "convergence_state"
    CLARIFYING_QUESTIONS = "clarifying_questions"
    WEB_SEARCH_START = "web-search-start"
    WEB_SEARCH_DONE = "web-search-done"
    DONE = "done"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.data}

    @classmethod
    def start(cls, speaker: Speaker, round: int, is_verdict: bool = False) -> "Event":
        data: dict[str, Any] = {"speaker": speaker.value, "round": round}
        if is_verdict:
            data["isVerdict"] = True
        return cls(EventType.START, data)

    @classmethod
    def status(cls, text: str) -> "Event":
        return cls(EventType.STATUS, {"text": text})

    @classmethod
    def reasoning(cls, text: str, speaker: Speaker | None = None) -> "Event":
        data: dict[str, Any] = {"text": text}
        if speaker is not None:
            data["speaker"] = speaker.value
        return cls(EventType.REASONING, data)

    @classmethod
    def content(cls, text: str, speaker: Speaker | None = None) -> "Event":
        data: dict[str, Any] = {"text": text}
        if speaker is not None:
            data["speaker"] = speaker.value
        return cls(EventType.CONTENT, data)

    @classmethod
    def convergent_start(cls, state: ConvergenceState) -> "Event":
        return cls(EventType.CONVERGENT_START, _state_data(state))

    @classmethod
    def convergence_state(cls, state: ConvergenceState) -> "Event":
        return cls(EventType.CONVERGENCE_STATE, _state_data(state))

    @classmethod
    def clarifying_questions(cls, questions: list[str]) -> "Event":
        return cls(EventType.CLARIFYING_QUESTIONS, {"questions": list(questions)})

    @classmethod
    def web_search_start(cls) -> "Event":
        return cls(EventType.WEB_SEARCH_START)

    @classmethod
    def web_search_done(cls, sources: list[str], speaker: Speaker | None = None) -> "Event":
        data: dict[str, Any] = {"sources": list(sources)}
        if speaker is not None:
            data["speaker"] = speaker.value
        return cls(EventType.WEB_SEARCH_DONE, data)

    @classmethod
    def done(cls, final_text: str) -> "Event":
        return cls(EventType.DONE, {"finalText": final_text})

    @classmethod
    def error(cls, message: str, code: str | None = None) -> "Event":
        data: dict[str, Any] = {"message": message}
        if code is not None:
            data["code"] = code
        return cls(EventType.ERROR, data)

    @classmethod
    def complete(cls) -> "Event":
        return cls(EventType.COMPLETE)


def _state_data(state: ConvergenceState) -> dict[str, Any]:
    return {
        "round": state.round,
        "maxRounds": state.max_rounds,
        "score": state.score,
        "status": state.status.value,
    }


def to_sse(event: Event) -> str:
    """Render one event as a server-sent-events frame."""
    return f"data: {json.dumps(event.to_payload(), ensure_ascii=False)}\n\n"
