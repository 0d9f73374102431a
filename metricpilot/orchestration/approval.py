"""
approval.py - Human approval checkpoints.

Two checkpoints exist: metric-set approval and taxonomy approval. The gate
tracks which checkpoint is open (required / type) and which metric ids the
user currently intends to keep (selection).

Checkpoint transitions:
    none -> metrics(required) -> metrics(satisfied) -> taxonomy(required)
         -> taxonomy(satisfied) -> none

Only the engine moves the checkpoint, and only when applying a server response
(open_checkpoint / close_checkpoint). The gate itself changes nothing but the
selection.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from metricpilot.errors import ValidationError
from metricpilot.orchestration.schemas import ApprovalState, ApprovalType

logger = logging.getLogger(__name__)


def seed_selection(
    existing_selection: Sequence[str],
    new_metric_ids: Iterable[str],
) -> list[str]:
    """
    Add freshly generated metric ids to the selection.

    New recommendations are opt-out: they join the selection automatically.
    Ids the user deselected earlier are not in existing_selection and are not
    in new_metric_ids (they are not new), so they stay deselected.
    """
    selection = list(existing_selection)
    seen = set(selection)
    for metric_id in new_metric_ids:
        if metric_id not in seen:
            selection.append(metric_id)
            seen.add(metric_id)
    return selection


def validate_for_approval(approval_type: ApprovalType, selection: Sequence[str]) -> None:
    """Raise ValidationError(EmptySelection) when approving metrics with nothing selected."""
    if approval_type == ApprovalType.metrics and not selection:
        raise ValidationError(
            "EmptySelection",
            "Select at least one metric before approving the metric set",
        )


class ApprovalGate:
    """Checkpoint state plus the user's current metric selection."""

    def __init__(self, state: Optional[ApprovalState] = None) -> None:
        state = state or ApprovalState()
        self._required = state.required
        self._type = state.type
        self._selection: list[str] = list(state.selection)

    # ---- read side --------------------------------------------------------

    @property
    def required(self) -> bool:
        return self._required

    @property
    def type(self) -> ApprovalType:
        return self._type

    @property
    def selection(self) -> list[str]:
        return list(self._selection)

    def is_open_for(self, approval_type: ApprovalType) -> bool:
        return self._required and self._type == approval_type

    def state(self) -> ApprovalState:
        return ApprovalState(
            required=self._required,
            type=self._type,
            selection=list(self._selection),
        )

    # ---- selection --------------------------------------------------------

    def seed(self, new_metric_ids: Iterable[str]) -> None:
        self._selection = seed_selection(self._selection, new_metric_ids)

    def toggle(self, metric_id: str) -> bool:
        """Flip membership of one id. Returns True if it is now selected."""
        if metric_id in self._selection:
            self._selection.remove(metric_id)
            return False
        self._selection.append(metric_id)
        return True

    def select(self, metric_ids: Iterable[str]) -> None:
        """Replace the selection wholesale, keeping order and dropping repeats."""
        self._selection = seed_selection([], metric_ids)

    def retain(self, metric_ids: Iterable[str]) -> None:
        """Drop selected ids that no longer name a known metric."""
        known = set(metric_ids)
        self._selection = [m for m in self._selection if m in known]

    def validate_for_approval(
        self,
        approval_type: ApprovalType,
        selection: Optional[Sequence[str]] = None,
        known_ids: Optional[Iterable[str]] = None,
    ) -> list[str]:
        """
        Check a pending approval and return the selection that will be sent.

        selection=None means "use the gate's current selection". The
        empty-selection rule is checked first, so approving metrics with nothing
        selected always reports EmptySelection regardless of checkpoint type.
        When known_ids is given, every selected id must be one of them.
        """
        chosen = list(self._selection if selection is None else selection)
        validate_for_approval(approval_type, chosen)
        if not self.is_open_for(approval_type):
            raise ValidationError(
                "ApprovalTypeMismatch",
                f"No {approval_type.value} approval is pending (open checkpoint: {self._type.value})",
            )
        if approval_type == ApprovalType.metrics and known_ids is not None:
            known = set(known_ids)
            unknown = [m for m in chosen if m not in known]
            if unknown:
                raise ValidationError(
                    "UnknownMetric",
                    f"Selection names metrics not in this session: {', '.join(unknown)}",
                )
        return chosen

    # ---- checkpoint (engine only) -----------------------------------------

    def open_checkpoint(self, approval_type: ApprovalType) -> None:
        logger.debug("Approval checkpoint opened type=%s", approval_type.value)
        self._required = True
        self._type = approval_type

    def close_checkpoint(self) -> None:
        self._required = False
        self._type = ApprovalType.none
