"""Exception hierarchy for the exercise generator.

Three families of failure exist and each is surfaced differently:

``InputValidationError``
    The caller supplied an impossible or malformed spec.  Raised before any
    generation work starts; the message is a stable code string such as
    ``input_invalid_allowed_note_values_max_three`` so front-ends can map it
    to friendly text.
``MelodyNoSolutionError``
    The user's illegal degree/interval/transition rules leave no legal
    melodic motion even after relaxation.  The engine converts it into a
    structured :class:`~sightsinging_generator.models.NoSolution` result.
``Pass4AssertionError`` / ``PlaybackMismatchError``
    Internal invariant violations.  They indicate a programming defect and
    are never caught by the engine.
"""

from __future__ import annotations

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import IllegalTransition

__all__ = [
    "InputValidationError",
    "MelodyNoSolutionError",
    "Pass4AssertionError",
    "PlaybackMismatchError",
]


class InputValidationError(ValueError):
    """Raised when an exercise spec cannot be generated as written."""


class MelodyNoSolutionError(Exception):
    """Raised when user constraints leave no legal melodic motion.

    Parameters
    ----------
    illegal_degrees, illegal_intervals_semis, illegal_transitions:
        The rule sets in force when the search gave up.  They are copied so
        later mutation by the caller cannot alter the report.
    """

    def __init__(
        self,
        illegal_degrees: List[int],
        illegal_intervals_semis: List[int],
        illegal_transitions: Optional[List["IllegalTransition"]] = None,
    ) -> None:
        super().__init__("constraints_too_strict")
        self.illegal_degrees = list(illegal_degrees)
        self.illegal_intervals_semis = list(illegal_intervals_semis)
        self.illegal_transitions = list(illegal_transitions or [])


class Pass4AssertionError(AssertionError):
    """Raised when a repaired melody still breaks a hard invariant."""

    def __init__(self, code: str, detail: str = "") -> None:
        message = f"{code}: {detail}" if detail else code
        super().__init__(message)
        self.code = code
        self.detail = detail


class PlaybackMismatchError(RuntimeError):
    """Raised when the merged playback view disagrees with the notation."""
