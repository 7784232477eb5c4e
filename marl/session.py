"""The live conversation unit: transcript, model identity and metrics."""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime

from .metrics import SessionMetrics
from .transcript import Transcript


def new_session_id() -> str:
    """Timestamp-derived id, e.g. ``20261018_142501_048213``."""
    return datetime.now().strftime("%Y%m%d_%H%M%S_%f")


@dataclass
class Session:
    """One conversation.

    Commands that replace the session (/new, /resume, /model) build a new
    Session value and swap it in whole; fields are not patched in place.
    """

    id: str
    model: str
    provider: str
    instructions: str | None = None
    transcript: Transcript = field(default_factory=Transcript)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    persist: bool = True

    @classmethod
    def create(
        cls,
        *,
        model: str,
        provider: str,
        instructions: str | None = None,
        persist: bool = True,
        session_id: str | None = None,
    ) -> "Session":
        """Fresh session seeded with a single system message from instructions."""
        return cls(
            id=session_id or new_session_id(),
            model=model,
            provider=provider,
            instructions=instructions,
            transcript=Transcript(system=instructions),
            persist=persist,
        )

    @classmethod
    def for_replay(
        cls,
        *,
        session_id: str,
        model: str,
        provider: str,
        metrics: SessionMetrics,
        persist: bool = True,
    ) -> "Session":
        """Empty session for restoring persisted messages; no system message is injected."""
        return cls(
            id=session_id,
            model=model,
            provider=provider,
            transcript=Transcript(),
            metrics=metrics,
            persist=persist,
        )

    def renewed(self) -> "Session":
        """A fresh session sharing instructions, model and provider, with zeroed metrics."""
        session_id = new_session_id()
        if self.id == session_id:
            session_id = f"{session_id}-1"
        elif self.id.startswith(f"{session_id}-"):
            suffix = self.id[len(session_id) + 1 :]
            session_id = f"{session_id}-{int(suffix) + 1 if suffix.isdigit() else 1}"
        return Session.create(
            model=self.model,
            provider=self.provider,
            instructions=self.instructions,
            persist=self.persist,
            session_id=session_id,
        )

    def with_model(self, provider: str, model: str) -> "Session":
        """Same transcript and metrics under a different provider/model."""
        return dataclasses.replace(self, provider=provider, model=model)

    @property
    def model_string(self) -> str:
        return f"{self.provider}/{self.model}"
