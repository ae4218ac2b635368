"""Session persistence — one JSON file per session, rewritten atomically."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel

from .context import ContextSnapshot, ContextStore
from .messages import Message

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


def validate_session_id(session_id: str) -> str:
    """Session ids double as file names; reject anything path-like."""
    if not _SESSION_ID_RE.match(session_id) or session_id.endswith((".json", ".jsonl")):
        msg = f"invalid session id '{session_id}'"
        raise ValueError(msg)
    return session_id


@dataclass
class Session:
    """A conversation owned by exactly one engine."""

    model_id: str
    id: str = field(default_factory=new_session_id)
    role: str | None = None
    created_at: float = field(default_factory=time.time)
    token_usage_running_total: int = 0
    context: ContextStore = field(default_factory=ContextStore)

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            id=self.id,
            model_id=self.model_id,
            role=self.role,
            created_at=self.created_at,
            token_usage_running_total=self.token_usage_running_total,
            context=self.context.snapshot(),
        )

    @classmethod
    def from_record(cls, record: SessionRecord) -> Session:
        return cls(
            id=record.id,
            model_id=record.model_id,
            role=record.role,
            created_at=record.created_at,
            token_usage_running_total=record.token_usage_running_total,
            context=ContextStore.from_snapshot(record.context),
        )


class SessionRecord(BaseModel):
    """On-disk layout of ``<sessions_dir>/<id>.json``."""

    id: str
    model_id: str
    role: str | None = None
    created_at: float
    token_usage_running_total: int = 0
    context: ContextSnapshot


class SessionStore:
    """Directory of saved sessions.

    Files are only ever replaced whole (temp file + rename), so a reader never
    observes a half-written session.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser()

    def path_for(self, session_id: str) -> Path:
        return self.root / f"{validate_session_id(session_id)}.json"

    def archive_path_for(self, session_id: str) -> Path:
        return self.root / f"{validate_session_id(session_id)}.archive.jsonl"

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def save(self, session: Session) -> Path:
        path = self.path_for(session.id)
        self.root.mkdir(parents=True, exist_ok=True)
        data = session.to_record().model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{session.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("saved session %s to %s", session.id, path)
        return path

    def load(self, session_id: str) -> Session:
        path = self.path_for(session_id)
        if not path.is_file():
            msg = f"no saved session '{session_id}' in {self.root}"
            raise FileNotFoundError(msg)
        record = SessionRecord.model_validate_json(path.read_text(encoding="utf-8"))
        return Session.from_record(record)

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).is_file()

    def list(self) -> list[str]:
        """Saved session ids, sorted."""
        if not self.root.is_dir():
            return []
        return sorted(
            p.name[: -len(".json")]
            for p in self.root.glob("*.json")
            if not p.name.startswith(".")
        )

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink()
        self.archive_path_for(session_id).unlink(missing_ok=True)
        return True

    def archive(self, session_id: str, messages: Sequence[Message]) -> Path:
        """Append a pre-compression transcript as one JSON line."""
        path = self.archive_path_for(session_id)
        self.root.mkdir(parents=True, exist_ok=True)
        entry = {
            "archived_at": time.time(),
            "messages": [m.model_dump(mode="json") for m in messages],
        }
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
        logger.debug("archived %d messages for session %s", len(messages), session_id)
        return path
