"""Per-image processing state machine.

    PENDING -> DETECTED -> METRICS_COMPUTED -> REFERENCE_APPLIED | SELF_SCALED
            -> TRANSFORMED -> COMPOSITED -> SUCCEEDED

Any non-terminal state may move to FAILED.
"""

from __future__ import annotations

from enum import StrEnum

from alignx.alignment.errors import InvalidStateTransition


class ImageState(StrEnum):
    PENDING = "pending"
    DETECTED = "detected"
    METRICS_COMPUTED = "metrics_computed"
    REFERENCE_APPLIED = "reference_applied"
    SELF_SCALED = "self_scaled"
    TRANSFORMED = "transformed"
    COMPOSITED = "composited"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[ImageState, frozenset[ImageState]] = {
    ImageState.PENDING: frozenset({ImageState.DETECTED}),
    ImageState.DETECTED: frozenset({ImageState.METRICS_COMPUTED}),
    ImageState.METRICS_COMPUTED: frozenset({ImageState.REFERENCE_APPLIED, ImageState.SELF_SCALED}),
    ImageState.REFERENCE_APPLIED: frozenset({ImageState.TRANSFORMED}),
    ImageState.SELF_SCALED: frozenset({ImageState.TRANSFORMED}),
    ImageState.TRANSFORMED: frozenset({ImageState.COMPOSITED}),
    ImageState.COMPOSITED: frozenset({ImageState.SUCCEEDED}),
    ImageState.SUCCEEDED: frozenset(),
    ImageState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({ImageState.SUCCEEDED, ImageState.FAILED})


class ImageJob:
    """Tracks one image through the pipeline and records its path."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._history: list[ImageState] = [ImageState.PENDING]

    @property
    def state(self) -> ImageState:
        return self._history[-1]

    @property
    def history(self) -> tuple[ImageState, ...]:
        return tuple(self._history)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_advance(self, target: ImageState) -> bool:
        if target is ImageState.FAILED:
            return not self.finished
        return target in _TRANSITIONS[self.state]

    def advance(self, target: ImageState) -> None:
        if not self.can_advance(target):
            raise InvalidStateTransition(f"{self.name or 'image'}: cannot move from {self.state} to {target}")
        self._history.append(target)

    def fail(self) -> None:
        self.advance(ImageState.FAILED)
