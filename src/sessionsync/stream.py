"""
Message stream store -- the append-only conversation log.

Each conversation is a JSONL file, one message per line, written only
by appending. Indices are positions in that file and are handed out by
the stream itself; nothing else assigns them.

Storage layout:
    ~/.sessionsync/conversations/
    └── <conversation_id>.jsonl

Because the stream only grows, any two ranges read from it agree with
each other. Disagreement can only come from a different device's
stream, which the sync coordinator deals with.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from ._fs import safe_name
from .errors import ConversationNotFound, InvalidAppend, OutOfRange, StreamCorrupted
from .models import Message

logger = logging.getLogger("sessionsync.stream")


class MessageStream:
    """Indexed, append-only message log for a single conversation.

    Args:
        conversation_id: Conversation this stream belongs to.
        path: JSONL file backing the stream. ``None`` keeps it in memory.
    """

    def __init__(self, conversation_id: str, path: Optional[Path] = None) -> None:
        self.conversation_id = conversation_id
        self._path = path
        self._messages: list[Message] = []
        self._ids: set[str] = set()

        if path is not None and path.exists():
            self._load()

    def _load(self) -> None:
        """Read the backing file.

        Raises:
            StreamCorrupted: If a line is not a valid message. Nothing is
                skipped; a gap would shift every later index.
        """
        assert self._path is not None
        with open(self._path, encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    message = Message.model_validate_json(line)
                except ValidationError as exc:
                    raise StreamCorrupted(
                        f"{self._path}:{lineno} is not a valid message: "
                        f"{exc.error_count()} validation error(s)",
                        conversation_id=self.conversation_id,
                        path=str(self._path),
                        line=lineno,
                    ) from exc
                self._messages.append(message)
                self._ids.add(message.id)
        logger.debug(
            "Loaded %d messages for %s", len(self._messages), self.conversation_id
        )

    def __len__(self) -> int:
        return len(self._messages)

    def length(self) -> int:
        """Number of messages in the stream."""
        return len(self._messages)

    def _check(self, message: Message, tail: Optional[Message], seen: set[str]) -> None:
        if message.id in seen:
            raise InvalidAppend(
                f"Message {message.id} is already in the stream",
                conversation_id=self.conversation_id,
                message_id=message.id,
            )
        if tail is not None and message.timestamp < tail.timestamp:
            raise InvalidAppend(
                f"Message {message.id} is older than the stream tail",
                conversation_id=self.conversation_id,
                message_id=message.id,
                timestamp=message.timestamp.isoformat(),
                tail_timestamp=tail.timestamp.isoformat(),
            )

    def append(self, message: Message) -> int:
        """Append a message and return its index.

        Raises:
            InvalidAppend: If the message is older than the current tail
                or its id is already present. Messages are never reordered.
        """
        tail = self._messages[-1] if self._messages else None
        self._check(message, tail, self._ids)
        self._write([message])
        self._messages.append(message)
        self._ids.add(message.id)
        return len(self._messages) - 1

    def extend(self, messages: Iterable[Message]) -> int:
        """Append a batch atomically: either every message lands or none does.

        Returns:
            The new stream length.
        """
        batch = list(messages)
        tail = self._messages[-1] if self._messages else None
        seen = set(self._ids)
        for message in batch:
            self._check(message, tail, seen)
            seen.add(message.id)
            tail = message

        self._write(batch)
        self._messages.extend(batch)
        self._ids = seen
        return len(self._messages)

    def range(self, start: int, end: int) -> list[Message]:
        """Messages ``[start, end)`` in index order.

        Raises:
            OutOfRange: If ``end`` is past the stream length or the
                bounds are inverted.
        """
        length = len(self._messages)
        if start < 0 or start > end or end > length:
            raise OutOfRange(
                f"Range [{start}, {end}) outside stream of length {length}",
                conversation_id=self.conversation_id,
                start=start,
                end=end,
                length=length,
            )
        return self._messages[start:end]

    def tail(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def _write(self, batch: list[Message]) -> None:
        if self._path is None or not batch:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as fh:
            for message in batch:
                fh.write(message.model_dump_json() + "\n")


class MessageStore:
    """Opens and caches message streams under the sync home.

    Args:
        home: Sync home directory (~/.sessionsync).
    """

    def __init__(self, home: Path) -> None:
        self.base_dir = home.expanduser() / "conversations"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._streams: dict[str, MessageStream] = {}

    def _path(self, conversation_id: str) -> Path:
        return self.base_dir / f"{safe_name(conversation_id)}.jsonl"

    def exists(self, conversation_id: str) -> bool:
        return conversation_id in self._streams or self._path(conversation_id).exists()

    def open(self, conversation_id: str, must_exist: bool = False) -> MessageStream:
        """Return the stream for a conversation, creating it lazily.

        Raises:
            ConversationNotFound: If ``must_exist`` and nothing is stored.
        """
        stream = self._streams.get(conversation_id)
        if stream is not None:
            return stream
        if must_exist and not self._path(conversation_id).exists():
            raise ConversationNotFound(
                f"Conversation {conversation_id} not found",
                conversation_id=conversation_id,
            )
        stream = MessageStream(conversation_id, self._path(conversation_id))
        self._streams[conversation_id] = stream
        return stream

    def list_conversations(self) -> list[str]:
        """Ids of every conversation stored locally, sorted."""
        ids = {p.stem for p in self.base_dir.glob("*.jsonl")}
        ids.update(self._streams)
        return sorted(ids)
