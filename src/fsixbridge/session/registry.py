"""Registry of daemon sessions keyed by document identity."""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING

from fsixbridge.logging import get_logger

if TYPE_CHECKING:
    from fsixbridge.session.connection import Session

log = get_logger("registry")


class SessionRegistry:
    """Maps a document identity to at most one Session.

    The registry only tracks sessions; it never disposes them. Whoever
    replaces or evicts an entry decides what happens to the old session.
    All access is expected on the event loop thread.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def assign(self, identity: str, session: Session) -> Session | None:
        """Register ``session`` for ``identity``, replacing any existing entry.

        Returns:
            The session previously registered for ``identity``, if any.
        """
        previous = self._sessions.get(identity)
        self._sessions[identity] = session
        if previous is not None and previous is not session:
            log.debug("Replaced session for %s", identity)
            return previous
        return None

    def lookup(self, identity: str) -> Session | None:
        return self._sessions.get(identity)

    def evict(self, identity: str) -> Session | None:
        """Remove and return the session registered for ``identity``."""
        session = self._sessions.pop(identity, None)
        if session is not None:
            log.debug("Evicted session for %s", identity)
        return session

    def clear(self) -> list[Session]:
        """Remove every entry and return the sessions that were registered."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        return sessions

    def identities(self) -> list[str]:
        return list(self._sessions)

    def items(self) -> list[tuple[str, Session]]:
        return list(self._sessions.items())

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))
