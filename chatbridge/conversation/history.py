"""Conversation history store.

Owns the raw turn log. The *curated* projection drops every run of
model turns that contains an invalid turn, together with the user turn
that prompted it, so curated history always alternates user/model.

One instance per session. There is no internal locking: two in-flight
requests recording into the same history can break alternation.
"""

from __future__ import annotations

import logging

from chatbridge.content.schemas import (
    Role,
    Text,
    Thought,
    Turn,
    is_tool_result_turn,
)
from chatbridge.errors import RoleError

logger = logging.getLogger(__name__)


def validate_history(turns: list[Turn]) -> None:
    for turn in turns:
        if turn.role not in (Role.USER, Role.MODEL):
            raise RoleError(f"Role must be user or model, but got {turn.role!r}.")


def is_valid_turn(turn: Turn) -> bool:
    """Non-empty, and no empty non-thought text fragment."""
    if not turn.fragments:
        return False
    for fragment in turn.fragments:
        if isinstance(fragment, Text) and fragment.text == "":
            return False
    return True


def is_text_turn(turn: Turn | None) -> bool:
    """A model turn whose first fragment is non-empty text."""
    return bool(
        turn is not None
        and turn.role == Role.MODEL
        and turn.fragments
        and isinstance(turn.fragments[0], Text)
        and turn.fragments[0].text != ""
    )


def is_thought_turn(turn: Turn | None) -> bool:
    """A model turn that opens with a thought marker."""
    return bool(
        turn is not None
        and turn.role == Role.MODEL
        and turn.fragments
        and isinstance(turn.fragments[0], Thought)
        and turn.fragments[0].thought
    )


def extract_curated_history(turns: list[Turn]) -> list[Turn]:
    """Keep user turns; keep each run of model turns only if all are valid.

    An invalid run is excluded and the user turn before it is popped too.
    """
    curated: list[Turn] = []
    i = 0
    length = len(turns)
    while i < length:
        if turns[i].role == Role.USER:
            curated.append(turns[i])
            i += 1
            continue

        run: list[Turn] = []
        valid = True
        while i < length and turns[i].role == Role.MODEL:
            run.append(turns[i])
            if valid and not is_valid_turn(turns[i]):
                valid = False
            i += 1
        if valid:
            curated.extend(run)
        elif curated:
            curated.pop()
    return curated


def _merge_text(into: Turn, other: Turn) -> None:
    """Append other's leading text to into's first fragment, then its remaining fragments."""
    first = into.fragments[0]
    assert isinstance(first, Text)
    head = other.fragments[0]
    first.text += head.text if isinstance(head, Text) else ""
    into.fragments.extend(other.fragments[1:])


class ConversationHistory:
    """Append-mostly turn log with curation and turn consolidation."""

    def __init__(self, initial_history: list[Turn] | None = None) -> None:
        initial = initial_history or []
        validate_history(initial)
        self._history: list[Turn] = [t.model_copy(deep=True) for t in initial]

    def __len__(self) -> int:
        return len(self._history)

    def get_history(self, curated: bool = False) -> list[Turn]:
        """Deep copy of the raw or curated history."""
        turns = extract_curated_history(self._history) if curated else self._history
        return [t.model_copy(deep=True) for t in turns]

    def set_history(self, turns: list[Turn]) -> None:
        """Replace the whole history; nothing changes if any role is invalid."""
        validate_history(turns)
        self._history = [t.model_copy(deep=True) for t in turns]

    def add_history(self, turn: Turn) -> None:
        validate_history([turn])
        self._history.append(turn.model_copy(deep=True))

    def clear_history(self) -> None:
        self._history = []

    def record_history(
        self,
        user_input: Turn,
        model_output: list[Turn],
        external_history: list[Turn] | None = None,
    ) -> None:
        """Record one exchange, consolidating adjacent text-only model turns.

        ``external_history`` is a multi-step tool-calling exchange that
        already contains the user input; its curated form is stored
        instead of ``user_input``.
        """
        outputs = [t.model_copy(deep=True) for t in model_output]
        non_thought = [t for t in outputs if not is_thought_turn(t)]

        output_turns: list[Turn] = []
        if non_thought and all(t.role for t in non_thought):
            output_turns = non_thought
        elif not non_thought and outputs:
            # Model produced only thoughts; don't insert an empty model turn
            pass
        elif not is_tool_result_turn(user_input):
            # Keep user/model alternation when the model said nothing
            output_turns.append(Turn(role=Role.MODEL, fragments=[]))

        if external_history:
            validate_history(external_history)
            self._history.extend(
                t.model_copy(deep=True) for t in extract_curated_history(external_history)
            )
        else:
            validate_history([user_input])
            self._history.append(user_input.model_copy(deep=True))

        consolidated: list[Turn] = []
        for turn in output_turns:
            if is_thought_turn(turn):
                continue
            last = consolidated[-1] if consolidated else None
            if is_text_turn(last) and is_text_turn(turn):
                _merge_text(last, turn)
            else:
                consolidated.append(turn)

        if not consolidated:
            return

        last_entry = self._history[-1] if self._history else None
        if not external_history and is_text_turn(last_entry) and is_text_turn(consolidated[0]):
            _merge_text(last_entry, consolidated.pop(0))

        validate_history(consolidated)
        self._history.extend(consolidated)
