from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .models import ConversationSummary, StoredMessage

logger = logging.getLogger("weblm.sessions")

DEFAULT_TITLE = "New Chat"
TITLE_LENGTH = 48


@dataclass
class _Conversation:
    summary: ConversationSummary
    messages: List[StoredMessage] = field(default_factory=list)

    def to_record(self) -> dict:
        return {
            "summary": self.summary.model_dump(),
            "messages": [message.model_dump() for message in self.messages],
        }


def _title_from(content: str) -> str:
    first_line = next((line.strip() for line in content.splitlines() if line.strip()), "")
    return first_line[:TITLE_LENGTH] or DEFAULT_TITLE


class SessionStore:
    """Conversation records keyed by id, optionally mirrored to one JSON file."""

    def __init__(self, path: Optional[Path] = None, max_sessions: Optional[int] = None) -> None:
        """Purpose: Hold conversation records and hydrate them from ``path`` when it exists.
        Inputs/Outputs: Optional JSON file path and an optional cap on kept conversations.
        Side Effects / State: Reads the file once; trims it to the cap and rewrites when over.
        Dependencies: _read_file, _enforce_cap.
        Failure Modes: An unreadable or non-JSON file is logged and ignored.
        If Removed: The controller has nowhere to keep conversation history.
        Testing Notes: Write through one instance, read through a second on the same path.
        """
        self._path = path
        self._cap = max_sessions if max_sessions and max_sessions > 0 else None
        self._conversations: Dict[str, _Conversation] = {}
        self._read_file()
        if self._enforce_cap():
            self._write_file()

    def _read_file(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            records = json.loads(self._path.read_text(encoding="utf-8")).get("conversations", [])
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning("session_file_unreadable path=%s error=%s", self._path, exc)
            return
        for record in records:
            summary = ConversationSummary(**record["summary"])
            messages = [StoredMessage(**item) for item in record.get("messages", [])]
            self._conversations[summary.session_id] = _Conversation(summary, messages)

    def _write_file(self) -> None:
        # No path means memory only.
        if self._path is None:
            return
        document = {"conversations": [entry.to_record() for entry in self._conversations.values()]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")

    def _enforce_cap(self) -> bool:
        if self._cap is None or len(self._conversations) <= self._cap:
            return False
        newest_first = sorted(
            self._conversations,
            key=lambda session_id: self._conversations[session_id].summary.updated_at,
            reverse=True,
        )
        for session_id in newest_first[self._cap :]:
            del self._conversations[session_id]
            logger.info("session_pruned session_id=%s", session_id)
        return True

    def _blank(self, session_id: str) -> _Conversation:
        summary = ConversationSummary(session_id=session_id, title=DEFAULT_TITLE, updated_at=time.time())
        return _Conversation(summary)

    def create(self, session_id: Optional[str] = None) -> str:
        """Open a conversation; an id that already exists keeps its history."""
        session_id = session_id or uuid.uuid4().hex
        if session_id in self._conversations:
            return session_id
        self._conversations[session_id] = self._blank(session_id)
        self._enforce_cap()
        self._write_file()
        return session_id

    def reset(self, session_id: str) -> None:
        # History is replaced wholesale, never edited in place.
        self._conversations[session_id] = self._blank(session_id)
        self._write_file()

    def destroy(self, session_id: str) -> bool:
        if self._conversations.pop(session_id, None) is None:
            return False
        self._write_file()
        return True

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        meta: Optional[Dict[str, object]] = None,
    ) -> StoredMessage:
        """Purpose: Append one message to a conversation, creating the conversation when absent.
        Inputs/Outputs: Role, content and optional advisory meta; returns the stored message.
        Side Effects / State: Bumps updated_at; the first user message names the conversation.
        Dependencies: StoredMessage, _enforce_cap, _write_file.
        Failure Modes: File write errors propagate to the caller.
        If Removed: Questions and answers are lost when the panel closes.
        Testing Notes: Check the title comes from the first non-empty line of the first question.
        """
        entry = self._conversations.get(session_id)
        if entry is None:
            entry = self._conversations[session_id] = self._blank(session_id)
        stamp = time.time()
        message = StoredMessage(role=role, content=content, timestamp=stamp, meta=meta)
        entry.messages.append(message)
        entry.summary.updated_at = stamp
        if role == "user" and entry.summary.title == DEFAULT_TITLE:
            entry.summary.title = _title_from(content)
        self._enforce_cap()
        self._write_file()
        return message

    def list_sessions(self) -> List[ConversationSummary]:
        entries = sorted(self._conversations.values(), key=lambda entry: entry.summary.updated_at, reverse=True)
        return [entry.summary for entry in entries]

    def get_messages(self, session_id: str) -> List[StoredMessage]:
        entry = self._conversations.get(session_id)
        return list(entry.messages) if entry else []
