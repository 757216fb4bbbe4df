"""
Memory and session stores: the two free-text namespaces.

``memory/<uuid4>`` holds notes the agent wants to remember; each one is
embedded and tagged.  ``session/<session>/turn/<n>`` holds one
conversation turn, embedded as ``"User: ...\\nAssistant: ..."`` so that a
later query can find the exchange from either side.

Usage example::

    memories = MemoryStore(namespace)
    memory_id = memories.add_memory("JWT tokens expire after 24 hours", tags=["auth"])
    for match in memories.search("How long do JWT tokens last?"):
        print(match.score, match.content)
"""

from __future__ import annotations

from typing import Optional, Sequence

from .collection import SemanticNamespace
from .errors import NotFoundError
from .intelligence import generate_id
from .models import MemoryMetadata, SearchMatch, Segment, TurnMetadata


class MemoryStore:
    """
    Tagged free-text notes in the ``memory`` namespace.

    Parameters
    ----------
    namespace:
        The ``memory`` :class:`SemanticNamespace`.
    """

    def __init__(self, namespace: SemanticNamespace) -> None:
        self.namespace = namespace

    def add_memory(
        self,
        text: str,
        tags: Optional[Sequence[str]] = None,
        source: str = "user",
    ) -> str:
        """
        Embed and store *text*.

        Returns
        -------
        str
            The new memory's id (the key is ``memory/<id>``).
        """
        if not text.strip():
            raise ValueError("memory text must not be empty")
        memory_id = generate_id()
        metadata = MemoryMetadata(tags=list(tags or []), source=source)
        self.namespace.add(memory_id, text, metadata)
        return memory_id

    def search(self, query: str, top_k: int = 5, tag: str | None = None) -> list[SearchMatch]:
        """Most similar memories first; *tag* restricts to memories carrying it."""
        where = {"tags": tag} if tag else None
        return self.namespace.search(query, top_k, where=where)

    def get(self, memory_id: str) -> Optional[Segment]:
        """Return the memory with *memory_id*, or ``None`` if there is none."""
        try:
            return self.namespace.get(memory_id)
        except NotFoundError:
            return None

    def list_all(self, limit: int | None = 100) -> list[Segment]:
        """Stored memories, oldest first (no ranking applied)."""
        segments = sorted(
            self.namespace.store.scan(self.namespace.prefix),
            key=lambda s: (s.metadata.get("created_at", 0.0), s.key),
        )
        return segments if limit is None else segments[:limit]

    def count(self) -> int:
        return self.namespace.count()


class SessionStore:
    """Conversation turns in the ``session`` namespace."""

    def __init__(self, namespace: SemanticNamespace) -> None:
        self.namespace = namespace

    @staticmethod
    def turn_text(user_message: str, assistant_message: str) -> str:
        return f"User: {user_message}\nAssistant: {assistant_message}"

    def index_turn(
        self,
        session_id: str,
        turn_id: int,
        user_message: str,
        assistant_message: str,
        model: str = "",
    ) -> str:
        """Store one turn and return its key."""
        if not session_id or "/" in session_id:
            raise ValueError(f"invalid session id {session_id!r}")
        if turn_id < 0:
            raise ValueError("turn_id must be non-negative")
        segment = self.namespace.add(
            f"{session_id}/turn/{turn_id}",
            self.turn_text(user_message, assistant_message),
            TurnMetadata(
                session_id=session_id,
                turn_id=turn_id,
                user_message=user_message,
                assistant_message=assistant_message,
                model=model,
            ),
        )
        return segment.key

    def search_turns(
        self,
        query: str,
        session_id: str | None = None,
        top_k: int = 5,
    ) -> list[SearchMatch]:
        """Most similar turns first, optionally restricted to one session."""
        prefix = f"{session_id}/" if session_id else None
        return self.namespace.search(query, top_k, prefix=prefix)

    def count(self, session_id: str | None = None) -> int:
        prefix = self.namespace.prefix + (f"{session_id}/" if session_id else "")
        return self.namespace.store.count(prefix)
