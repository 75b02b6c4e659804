"""
Conversation Memory

Per-session conversation state for follow-up questions:
- ConversationTurn / ConversationLog: immutable, append-only turn history
- SessionManager: session id -> current log, plus a per-session lock so turns
  of one session run one at a time
- TranscriptSink: append-only record of every turn (in memory or JSON lines)

A session's log can be rebuilt from its transcript, which lets the CLI continue
a conversation across process invocations.
"""
import asyncio
import json
import logging
import threading
import uuid
import weakref
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from src.core.filter_spec import FilterSpec

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    """A single turn in a conversation."""
    role: str
    raw_text: str
    resolved_filters: Optional[FilterSpec] = None
    result_count: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "rawText": self.raw_text,
            "resolvedFilters": self.resolved_filters.to_dict() if self.resolved_filters else None,
            "resultCount": self.result_count,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        filters = data.get("resolvedFilters")
        return cls(
            role=data["role"],
            raw_text=data.get("rawText", ""),
            resolved_filters=FilterSpec.from_dict(filters) if filters else None,
            result_count=data.get("resultCount"),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.now(),
        )


@dataclass(frozen=True)
class ConversationLog:
    """Append-only tuple of turns; ``append`` returns a new log."""
    session_id: str
    turns: Tuple[ConversationTurn, ...] = ()

    def append(self, turn: ConversationTurn) -> "ConversationLog":
        return ConversationLog(self.session_id, self.turns + (turn,))

    def last_resolved_filters(self) -> Optional[FilterSpec]:
        """Filters of the most recent successfully executed turn."""
        for turn in reversed(self.turns):
            if turn.resolved_filters is not None:
                return turn.resolved_filters
        return None

    def __len__(self) -> int:
        return len(self.turns)


# =============================================================================
# TRANSCRIPT SINKS
# =============================================================================

class TranscriptSink(ABC):
    """Append-only transcript of turns. Prior entries are never modified."""

    @abstractmethod
    def append(self, session_id: str, entry: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def entries(self, session_id: str) -> List[Dict[str, Any]]:
        """All entries of one session, oldest first."""
        pass

    def replay(self, session_id: str) -> ConversationLog:
        """Rebuild a session's log from its transcript."""
        log = ConversationLog(session_id)
        for entry in self.entries(session_id):
            try:
                log = log.append(ConversationTurn.from_dict(entry))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable transcript entry for {session_id}: {e}")
        return log


class InMemoryTranscriptSink(TranscriptSink):
    def __init__(self):
        self._entries: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def append(self, session_id: str, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._entries.setdefault(session_id, []).append(dict(entry))

    def entries(self, session_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(e) for e in self._entries.get(session_id, [])]


class JsonlTranscriptSink(TranscriptSink):
    """One JSON object per line: ``{"sessionId": ..., <turn fields>}``."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, session_id: str, entry: Dict[str, Any]) -> None:
        line = json.dumps({"sessionId": session_id, **entry}, default=str, ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def entries(self, session_id: str) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        found = []
        with self._lock:
            with open(self.path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"{self.path}:{line_number} is not valid JSON, skipped")
                        continue
                    if data.get("sessionId") == session_id:
                        data.pop("sessionId", None)
                        found.append(data)
        return found


# =============================================================================
# SESSIONS
# =============================================================================

class _TurnLock:
    """A session lock and the number of turns holding or awaiting it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SessionManager:
    """
    Holds the current ConversationLog of each session.

    Locks are created per event loop: ``answer_sync`` runs every turn in a fresh
    loop, and an asyncio.Lock cannot be shared between loops.
    """

    def __init__(self, sink: Optional[TranscriptSink] = None):
        self.sink = sink
        self._logs: Dict[str, ConversationLog] = {}
        self._guard = threading.Lock()
        self._locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, _TurnLock]]" = (
            weakref.WeakKeyDictionary()
        )

    @staticmethod
    def new_session_id() -> str:
        return str(uuid.uuid4())

    @asynccontextmanager
    async def turn(self, session_id: str) -> AsyncIterator[None]:
        """
        Hold the session's lock for one turn.

        The lock is dropped once no turn of the session holds or waits for it.
        """
        loop = asyncio.get_running_loop()
        with self._guard:
            locks = self._locks.setdefault(loop, {})
            entry = locks.get(session_id)
            if entry is None:
                entry = locks[session_id] = _TurnLock()
            entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and locks.get(session_id) is entry:
                    del locks[session_id]

    def active_locks(self) -> int:
        """Session locks held or awaited in the running loop."""
        loop = asyncio.get_running_loop()
        with self._guard:
            return len(self._locks.get(loop, {}))

    def get_log(self, session_id: str) -> ConversationLog:
        with self._guard:
            log = self._logs.get(session_id)
        if log is not None:
            return log

        log = self.sink.replay(session_id) if self.sink is not None else ConversationLog(session_id)
        if len(log):
            logger.info(f"Restored session {session_id} with {len(log)} turns from transcript")
        with self._guard:
            return self._logs.setdefault(session_id, log)

    def record(self, session_id: str, turn: ConversationTurn) -> ConversationLog:
        """Append a turn to the session log and the transcript."""
        log = self.get_log(session_id).append(turn)
        with self._guard:
            self._logs[session_id] = log
        if self.sink is not None:
            try:
                self.sink.append(session_id, turn.to_dict())
            except OSError as e:
                logger.error(f"Failed to write transcript for {session_id}: {e}")
        return log

    def reset(self, session_id: str) -> None:
        with self._guard:
            self._logs[session_id] = ConversationLog(session_id)

    @property
    def session_ids(self) -> List[str]:
        with self._guard:
            return list(self._logs)
