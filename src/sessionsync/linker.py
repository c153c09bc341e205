"""
Session linker -- ties message ranges to the commits they were written against.

A conversation's boundary list records the message index at which its
code state (commit or branch) changed. Saving with an unchanged state
writes nothing; the list only grows when the repository actually moved.

Storage layout:
    ~/.sessionsync/
    ├── boundaries/
    │   └── <conversation_id>.json   # ordered BoundaryRecord list
    └── sessions/
        ├── <session_id>.json        # one immutable Session per save
        └── index.json               # lightweight listing
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from ._fs import atomic_write_text, safe_name
from .errors import InvalidIdentifier, OutOfRange, RepositoryMismatch, SessionNotFound
from .git import VersionControl
from .models import BoundaryRecord, GitState, Session

logger = logging.getLogger("sessionsync.linker")


class SessionLinker:
    """Owns the boundary record sequence of every conversation.

    Args:
        home: Sync home directory (~/.sessionsync).
    """

    def __init__(self, home: Path) -> None:
        self.base_dir = home.expanduser() / "boundaries"
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        return self.base_dir / f"{safe_name(conversation_id)}.json"

    def boundaries(self, conversation_id: str) -> list[BoundaryRecord]:
        """All boundaries for a conversation, in message-index order."""
        path = self._path(conversation_id)
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        return [BoundaryRecord.model_validate(entry) for entry in raw]

    def _save(self, conversation_id: str, records: list[BoundaryRecord]) -> None:
        data = [r.model_dump(mode="json") for r in records]
        atomic_write_text(self._path(conversation_id), json.dumps(data, indent=2))

    def record(
        self,
        conversation_id: str,
        message_index: int,
        git_state: GitState,
    ) -> Optional[BoundaryRecord]:
        """Append a boundary if the code state moved since the last one.

        Args:
            conversation_id: Conversation being saved.
            message_index: Stream length at save time.
            git_state: Commit/branch the conversation is now pinned to.

        Returns:
            The new record, or None when commit and branch are unchanged.

        Raises:
            OutOfRange: If ``message_index`` is behind the latest boundary.
        """
        records = self.boundaries(conversation_id)
        last = records[-1] if records else None

        if last is not None:
            if git_state.same_position(last.git_state):
                return None
            if message_index < last.message_index:
                raise OutOfRange(
                    f"Boundary at {message_index} precedes latest boundary "
                    f"at {last.message_index}",
                    conversation_id=conversation_id,
                    message_index=message_index,
                    latest=last.message_index,
                )

        record = BoundaryRecord(message_index=message_index, git_state=git_state)
        records.append(record)
        self._save(conversation_id, records)
        logger.info(
            "Boundary for %s at message %d: %s@%s",
            conversation_id, message_index,
            git_state.branch or "detached", git_state.commit[:8],
        )
        return record

    def boundaries_between(
        self, conversation_id: str, start: int, end: int
    ) -> list[BoundaryRecord]:
        """Boundaries whose message index falls in ``[start, end)``."""
        return [
            b for b in self.boundaries(conversation_id)
            if start <= b.message_index < end
        ]

    def state_at(self, conversation_id: str, message_index: int) -> Optional[GitState]:
        """The code state in force when message ``message_index`` was saved."""
        current = None
        for boundary in self.boundaries(conversation_id):
            if boundary.message_index > message_index:
                break
            current = boundary.git_state
        return current

    def verify_resume(self, target_commit: str, vcs: VersionControl) -> str:
        """Confirm the working copy landed on the session's commit.

        Called after the code-sync step has checked out ``target_commit``.

        Returns:
            The resolved commit id.

        Raises:
            CommitNotFound: If ``target_commit`` does not resolve locally.
            RepositoryMismatch: If HEAD is anywhere else.
        """
        expected = vcs.rev_parse(target_commit)
        actual = vcs.status().commit
        if actual != expected:
            raise RepositoryMismatch(
                f"Working copy is at {(actual or 'nothing')[:8]}, "
                f"session expects {expected[:8]}",
                expected=expected,
                actual=actual,
            )
        return expected


class SessionIndex(BaseModel):
    """Index entry for listing sessions without loading each file."""

    session_id: str
    conversation_id: str
    git_commit: str
    branch: Optional[str] = None
    device_id: str
    timestamp: datetime
    message_count: int = 0


class SessionStore:
    """Stores saved sessions on disk.

    Args:
        home: Sync home directory (~/.sessionsync).
    """

    def __init__(self, home: Path) -> None:
        self.base_dir = home.expanduser() / "sessions"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._index_path = self.base_dir / "index.json"

    def _session_path(self, session_id: str) -> Path:
        if session_id == "index":
            raise InvalidIdentifier("Invalid session id: 'index'", identifier=session_id)
        return self.base_dir / f"{safe_name(session_id, 'session id')}.json"

    def save(self, session: Session) -> Path:
        """Persist a session and index it. Sessions are written once."""
        path = self._session_path(session.session_id)
        atomic_write_text(path, session.model_dump_json(indent=2))
        self._update_index(session)
        return path

    def load(self, session_id: str) -> Session:
        """Load a session by id.

        Raises:
            SessionNotFound: If no session with that id exists.
        """
        path = self._session_path(session_id)
        if not path.exists():
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        return Session.model_validate_json(path.read_text(encoding="utf-8"))

    def delete(self, session_id: str) -> bool:
        """Delete a session. Returns False if it did not exist."""
        path = self._session_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        entries = [e for e in self._load_index() if e.session_id != session_id]
        self._save_index(entries)
        return True

    def list(self, conversation_id: Optional[str] = None) -> list[SessionIndex]:
        """Index entries, newest first, optionally for one conversation."""
        entries = self._load_index()
        if conversation_id is not None:
            entries = [e for e in entries if e.conversation_id == conversation_id]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    def latest(self, conversation_id: str) -> Optional[Session]:
        entries = self.list(conversation_id)
        if not entries:
            return None
        return self.load(entries[0].session_id)

    def _load_index(self) -> list[SessionIndex]:
        if not self._index_path.exists():
            return []
        try:
            raw = json.loads(self._index_path.read_text(encoding="utf-8"))
            return [SessionIndex.model_validate(entry) for entry in raw]
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Session index unreadable, starting fresh: %s", exc)
            return []

    def _save_index(self, entries: list[SessionIndex]) -> None:
        data = [e.model_dump(mode="json") for e in entries]
        atomic_write_text(self._index_path, json.dumps(data, indent=2))

    def _update_index(self, session: Session) -> None:
        entries = [e for e in self._load_index() if e.session_id != session.session_id]
        entries.append(SessionIndex(
            session_id=session.session_id,
            conversation_id=session.conversation_id,
            git_commit=session.git_commit,
            branch=session.branch,
            device_id=session.device_id,
            timestamp=session.timestamp,
            message_count=session.message_count,
        ))
        self._save_index(entries)
