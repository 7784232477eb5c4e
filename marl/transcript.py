"""Role-tagged messages and the append-only transcript that owns them."""

from dataclasses import dataclass
from typing import Any

ROLES = ("system", "user", "assistant", "tool")


@dataclass(frozen=True)
class Message:
    role: str
    content: Any = ""
    tool_calls: tuple[dict, ...] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    usage: dict | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown message role: {self.role!r}")
        if self.tool_calls is not None and not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    def to_api(self) -> dict:
        """Chat-completions shaped dict for the conversation service."""
        msg: dict = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [dict(tc) for tc in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role == "tool":
            msg["name"] = self.name
        return msg

    def to_dict(self) -> dict:
        data: dict = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [dict(tc) for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        if self.usage is not None:
            data["usage"] = dict(self.usage)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            tool_calls=data.get("tool_calls"),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            usage=data.get("usage"),
        )


class Transcript:
    """Ordered message history of one conversation.

    Holds at most one system message at any time: a second one offered to
    append() is dropped instead of stored.
    """

    def __init__(self, system: str | None = None):
        self._messages: list[Message] = []
        if system:
            self._messages.append(Message("system", system))

    def append(self, message: Message) -> bool:
        """Add message at the end. Returns False when it was a duplicate system message."""
        if message.role == "system" and self.system is not None:
            return False
        self._messages.append(message)
        return True

    def all(self) -> list[Message]:
        return list(self._messages)

    def reset(self, system: str | None = None) -> None:
        """Replace the history with a fresh single system message (or none)."""
        self._messages = [Message("system", system)] if system else []

    @property
    def system(self) -> Message | None:
        for msg in self._messages:
            if msg.role == "system":
                return msg
        return None

    def to_api(self) -> list[dict]:
        return [m.to_api() for m in self._messages]

    def last_assistant_text(self) -> str | None:
        for msg in reversed(self._messages):
            if msg.role == "assistant" and isinstance(msg.content, str) and msg.content:
                return msg.content
        return None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(list(self._messages))
