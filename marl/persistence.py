"""Durable session records: one JSON file per session id under .marl/chats/."""

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from .errors import NotFoundError, PersistenceError
from .metrics import SessionMetrics
from .session import Session
from .transcript import Message

logger = logging.getLogger(__name__)

RECORD_VERSION = 1
CHATS_DIR = Path(".marl") / "chats"

_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def chats_dir(base_dir: str) -> Path:
    return Path(base_dir).resolve() / CHATS_DIR


def _record_path(base_dir: str, session_id: str) -> Path:
    """Build the record path, rejecting ids that could escape the chats directory."""
    if not session_id or not _ID_RE.match(session_id) or session_id in (".", ".."):
        raise NotFoundError(f"invalid session id: {session_id!r}")
    return chats_dir(base_dir) / f"{session_id}.json"


def to_record(session: Session) -> dict:
    return {
        "version": RECORD_VERSION,
        "id": session.id,
        "model": session.model,
        "provider": session.provider,
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "metrics": session.metrics.to_dict(),
        "messages": [m.to_dict() for m in session.transcript],
    }


def save(session: Session, base_dir: str) -> Path:
    """Write the session record, overwriting any previous one for the same id."""
    path = _record_path(base_dir, session.id)
    try:
        payload = json.dumps(to_record(session), indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise PersistenceError(f"cannot serialize session {session.id}: {e}") from e

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{session.id}.", suffix=".tmp", dir=path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.write("\n")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise PersistenceError(f"failed to write {path}: {e}") from e

    logger.debug("saved session %s (%d messages)", session.id, len(session.transcript))
    return path


def load(session_id: str, base_dir: str, *, persist: bool = True) -> Session:
    """Rebuild a Session from its record.

    The returned session starts empty and every persisted message is replayed
    through Transcript.append(), so it never holds more than one system message.
    """
    path = _record_path(base_dir, session_id)
    if not path.is_file():
        raise NotFoundError(f"no saved session: {session_id}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise PersistenceError(f"failed to read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise PersistenceError(f"invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise PersistenceError(f"{path}: expected a JSON object at top level")

    try:
        metrics = SessionMetrics.from_dict(data.get("metrics") or {})
        model = data["model"]
        provider = data["provider"]
        raw_messages = data["messages"]
        if not isinstance(raw_messages, list):
            raise TypeError("'messages' must be a list")
        messages = [Message.from_dict(m) for m in raw_messages]
    except (KeyError, TypeError, ValueError) as e:
        raise PersistenceError(f"malformed session record {path}: {e}") from e

    session = Session.for_replay(
        session_id=session_id,
        model=model,
        provider=provider,
        metrics=metrics,
        persist=persist,
    )
    for msg in messages:
        if not session.transcript.append(msg):
            logger.debug("dropped duplicate system message while loading %s", session_id)

    system = session.transcript.system
    if system is not None and isinstance(system.content, str):
        session.instructions = system.content
    return session


def list_sessions(base_dir: str) -> list[str]:
    """Known session ids, oldest first."""
    directory = chats_dir(base_dir)
    if not directory.is_dir():
        return []
    ids = [
        p.stem
        for p in directory.iterdir()
        if p.is_file() and p.suffix == ".json" and not p.name.startswith(".")
    ]
    return sorted(ids)
