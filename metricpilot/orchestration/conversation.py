"""
conversation.py - Append-only conversation log.

The generation service returns only the turns it produced in the current round,
never the full history. The client has already appended the user's own message
optimistically, so reconciliation is a plain ordered append: merge_turns() puts
the server's turns after everything already in the log.
"""
from __future__ import annotations

from typing import Iterable, Iterator, Optional, Sequence

from metricpilot.orchestration.schemas import ConversationTurn, Role


def merge_turns(
    existing: Sequence[ConversationTurn],
    incoming: Sequence[ConversationTurn],
) -> list[ConversationTurn]:
    """
    Return existing followed by incoming, both in their original order.

    Pure: neither input is modified. An empty incoming list is legal and
    returns a copy of existing.
    """
    return [*existing, *incoming]


class ConversationLog:
    """Ordered record of user / assistant turns. Turns are only ever appended."""

    def __init__(self, turns: Optional[Iterable[ConversationTurn]] = None) -> None:
        self._turns: list[ConversationTurn] = list(turns or [])

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    def append_user(self, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=Role.user, text=text)
        self.append(turn)
        return turn

    def merge(self, incoming: Sequence[ConversationTurn]) -> int:
        """Append a round's server turns; returns how many were added."""
        self._turns = merge_turns(self._turns, incoming)
        return len(incoming)

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def to_list(self) -> list[ConversationTurn]:
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))

    def __repr__(self) -> str:
        return f"ConversationLog(turns={len(self._turns)})"
