"""Keep external work items' lifecycle columns consistent with a run.

Every requested transition is validated against the forward-only ordering before
the tracker is asked to apply it. When the tracker cannot move columns, the item
gets a human-actionable annotation instead and the run carries on.
"""

from __future__ import annotations

import logging

from github_agent_workflow.tracker.base import ItemRef, Tracker, UnsupportedOperationError

from .context import ExternalWorkItem, TransitionOutcome, TransitionStatus
from .lifecycle import IllegalTransitionError, LifecycleState, check_transition

logger = logging.getLogger(__name__)

BLOCKED_ANNOTATION_PREFIX = "Blocked:"


def manual_move_note(state: LifecycleState) -> str:
    return f"Requires manual move to {state.column}"


class StateTracker:
    def __init__(self, tracker: Tracker) -> None:
        self._tracker = tracker
        self._mirrors: dict[str, ExternalWorkItem] = {}
        self._logical: dict[str, LifecycleState] = {}
        self._posted: dict[str, list[str]] = {}
        self._blocked: set[str] = set()

    def observe(self, ref: ItemRef) -> ExternalWorkItem:
        """Read the item's current state from the tracker (once per run)."""

        mirror = self._mirrors.get(ref.id)
        if mirror is None:
            state = self._tracker.get_lifecycle_state(ref)
            mirror = ExternalWorkItem(ref=ref, state=state)
            self._mirrors[ref.id] = mirror
            self._logical.setdefault(ref.id, state)
        return mirror

    def state_of(self, ref: ItemRef) -> LifecycleState:
        self.observe(ref)
        return self._logical[ref.id]

    def external_state_of(self, ref: ItemRef) -> LifecycleState:
        return self.observe(ref).state

    def is_blocked(self, ref: ItemRef) -> bool:
        return ref.id in self._blocked

    def annotations(self, ref: ItemRef) -> list[str]:
        return list(self._posted.get(ref.id, []))

    def request(self, ref: ItemRef, to: LifecycleState) -> TransitionOutcome:
        """Validate and apply a requested transition."""

        if ref.id in self._blocked:
            return self._outcome(
                ref,
                self._logical.get(ref.id),
                to,
                TransitionStatus.REJECTED,
                detail="item is blocked for this run",
            )
        try:
            mirror = self.observe(ref)
        except Exception as e:
            logger.exception("Reading lifecycle state failed", extra={"item": ref.id})
            return self._outcome(
                ref, None, to, TransitionStatus.ERROR, detail=f"{type(e).__name__}: {e}"
            )
        current = self._logical[ref.id]

        if to == current:
            return self._outcome(ref, current, to, TransitionStatus.UNCHANGED)
        try:
            check_transition(current=current, to=to)
        except IllegalTransitionError as e:
            return self._outcome(ref, current, to, TransitionStatus.REJECTED, detail=str(e))

        try:
            self._tracker.set_lifecycle_state(ref, to)
        except UnsupportedOperationError as e:
            note = manual_move_note(to)
            try:
                self._annotate(ref, note)
            except Exception as annotate_error:
                logger.exception("Failed to annotate item", extra={"item": ref.id})
                return self._outcome(
                    ref, current, to, TransitionStatus.ERROR, detail=str(annotate_error)
                )
            self._logical[ref.id] = to
            return self._outcome(
                ref, current, to, TransitionStatus.FALLBACK, annotation=note, detail=str(e)
            )
        except Exception as e:
            logger.exception("Lifecycle transition failed", extra={"item": ref.id})
            return self._outcome(ref, current, to, TransitionStatus.ERROR, detail=str(e))

        mirror.state = to
        self._logical[ref.id] = to
        return self._outcome(ref, current, to, TransitionStatus.APPLIED)

    def block(self, ref: ItemRef, reason: str) -> TransitionOutcome:
        """Reset the item to Backlog and annotate it as blocked.

        This is the only backward move allowed. After it, the item never
        advances again within the same run, even when the tracker could not be
        reached to record the block.
        """

        self._blocked.add(ref.id)
        current: LifecycleState | None = self._logical.get(ref.id)
        status = TransitionStatus.APPLIED
        annotation: str | None = None
        detail = ""
        try:
            mirror = self.observe(ref)
            current = self._logical[ref.id]
            self._logical[ref.id] = LifecycleState.BACKLOG
            if mirror.state != LifecycleState.BACKLOG:
                try:
                    self._tracker.set_lifecycle_state(ref, LifecycleState.BACKLOG)
                    mirror.state = LifecycleState.BACKLOG
                except UnsupportedOperationError as e:
                    annotation = manual_move_note(LifecycleState.BACKLOG)
                    self._annotate(ref, annotation)
                    status = TransitionStatus.FALLBACK
                    detail = str(e)
            elif current == LifecycleState.BACKLOG:
                status = TransitionStatus.UNCHANGED
            self._annotate(ref, f"{BLOCKED_ANNOTATION_PREFIX} {reason}")
        except Exception as e:
            logger.exception("Failed to mark item blocked", extra={"item": ref.id})
            self._logical[ref.id] = LifecycleState.BACKLOG
            return self._outcome(
                ref,
                current,
                LifecycleState.BACKLOG,
                TransitionStatus.ERROR,
                detail=f"{type(e).__name__}: {e}",
            )

        return self._outcome(
            ref, current, LifecycleState.BACKLOG, status, annotation=annotation, detail=detail
        )

    def annotate(self, ref: ItemRef, text: str) -> bool:
        return self._annotate(ref, text)

    def _annotate(self, ref: ItemRef, text: str) -> bool:
        posted = self._posted.setdefault(ref.id, [])
        if text in posted:
            return False
        self._tracker.append_annotation(ref, text)
        posted.append(text)
        return True

    @staticmethod
    def _outcome(
        ref: ItemRef,
        from_state: LifecycleState | None,
        to_state: LifecycleState,
        status: TransitionStatus,
        *,
        annotation: str | None = None,
        detail: str = "",
    ) -> TransitionOutcome:
        outcome = TransitionOutcome(
            item=ref.id,
            from_state=from_state,
            to_state=to_state,
            status=status,
            annotation=annotation,
            detail=detail,
        )
        failed = status in {TransitionStatus.REJECTED, TransitionStatus.ERROR}
        log = logger.warning if failed else logger.info
        log(
            "Lifecycle transition processed",
            extra={
                "item": ref.id,
                "from_state": from_state.value if from_state is not None else None,
                "to_state": to_state.value,
                "status": status.value,
            },
        )
        return outcome
