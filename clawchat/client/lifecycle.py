"""Run lifecycle tracker.

State machine for the main conversation's active run::

    IDLE -> AWAITING -> STREAMING -> {FINAL, ABORTED, ERROR} -> IDLE

Terminal states are reported to observers and the tracker immediately
returns to IDLE. A silence watchdog runs while a run is active: when no
meaningful event arrives within the threshold the ``silent`` flag is set
without changing the formal state; the next event clears it.

Run binding:
    - ``begin()`` starts a run without a runId. The first event (or the
      chat.send acknowledgment) binds it.
    - While STREAMING with a bound runId, events for other runIds are ignored.
    - While IDLE, events for a recently finished runId are ignored; events
      for an unknown runId start tracking it as an external run.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

from clawchat.client.scheduling import Scheduler, TimerHandle
from clawchat.models import RunInProgressError

logger = logging.getLogger(__name__)

_FINISHED_HISTORY = 64


class RunState(str, Enum):
    IDLE = "idle"
    AWAITING = "awaiting"
    STREAMING = "streaming"
    FINAL = "final"
    ABORTED = "aborted"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.FINAL, RunState.ABORTED, RunState.ERROR)


@dataclass
class RunOutcome:
    """Summary of a finished run.

    Attributes:
        state: Terminal state.
        run_id: The run's id, if it was ever bound.
        duration: Seconds from start to terminal; None when not measured.
        thinking_duration: Seconds from start to the first event.
        resumed: True if the run was re-entered from fetched history.
    """
    state: RunState
    run_id: Optional[str]
    duration: Optional[float] = None
    thinking_duration: Optional[float] = None
    resumed: bool = False


# Receives (state, run_id, silent)
RunStateCallback = Callable[[RunState, Optional[str], bool], None]


class RunLifecycleTracker:
    """Tracks the single active run of the main conversation."""

    def __init__(
        self,
        scheduler: Scheduler,
        silence_threshold: float = 3.0,
        on_state_change: Optional[RunStateCallback] = None,
    ):
        self._scheduler = scheduler
        self._silence_threshold = silence_threshold
        self._on_state_change = on_state_change

        self._state = RunState.IDLE
        self._run_id: Optional[str] = None
        self._started_at: Optional[float] = None
        self._first_event_at: Optional[float] = None
        self._silent = False
        self._resumed = False
        self._watchdog: Optional[TimerHandle] = None
        self._finished: Deque[str] = deque(maxlen=_FINISHED_HISTORY)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    @property
    def is_active(self) -> bool:
        return self._state in (RunState.AWAITING, RunState.STREAMING)

    @property
    def silent(self) -> bool:
        """True while an active run has produced no event within the threshold."""
        return self._silent

    @property
    def resumed(self) -> bool:
        """True if the active run was re-entered from history rather than observed live."""
        return self._resumed

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    @property
    def finished_run_ids(self) -> List[str]:
        return list(self._finished)

    # =========================================================================
    # Transitions
    # =========================================================================

    def begin(self) -> None:
        """Enter AWAITING for a user-submitted message.

        Raises:
            RunInProgressError: If a run is already active.
        """
        if self._state != RunState.IDLE:
            raise RunInProgressError()
        self._run_id = None
        self._started_at = self._scheduler.now()
        self._first_event_at = None
        self._resumed = False
        self._transition_to(RunState.AWAITING)
        self._arm_watchdog()

    def bind(self, run_id: str) -> None:
        """Attach a runId (from the chat.send acknowledgment) to the active run."""
        if self.is_active and self._run_id is None:
            self._run_id = run_id
            logger.debug(f"Run bound to {run_id}")

    def accept(self, run_id: str) -> bool:
        """Decide whether an event for ``run_id`` belongs to the active run.

        Accepting moves AWAITING to STREAMING and restarts the silence
        watchdog.

        Returns:
            True if the event should be applied.
        """
        if self._state == RunState.IDLE:
            if run_id in self._finished:
                logger.debug(f"Ignoring late event for finished run {run_id}")
                return False
            logger.info(f"Tracking external run {run_id}")
            self._run_id = run_id
            self._started_at = self._scheduler.now()
            self._first_event_at = None
            self._resumed = False
        elif self._run_id is None:
            self._run_id = run_id
            if self._resumed:
                logger.debug(f"Resumed run adopted live run {run_id}")
                self._resumed = False
        elif run_id != self._run_id:
            logger.debug(f"Ignoring event for run {run_id} (active: {self._run_id})")
            return False
        elif self._resumed:
            # Detached run is streaming live again on the new connection
            logger.debug(f"Live events resumed for run {run_id}")
            self._resumed = False

        if self._first_event_at is None:
            self._first_event_at = self._scheduler.now()
        was_silent = self._silent
        self._silent = False
        if self._state != RunState.STREAMING:
            self._transition_to(RunState.STREAMING)
        elif was_silent:
            self._notify()
        self._arm_watchdog()
        return True

    def force_streaming(self) -> bool:
        """Enter STREAMING for a run detected in fetched history.

        Returns:
            True if the tracker changed state.
        """
        if self._state == RunState.STREAMING:
            return False
        if self._state == RunState.IDLE:
            self._run_id = None
            self._started_at = self._scheduler.now()
            self._first_event_at = None
            self._resumed = True
        self._transition_to(RunState.STREAMING)
        self._arm_watchdog()
        return True

    def mark_finished(self, run_id: str) -> None:
        """Remember ``run_id`` as finished without it ever being active.

        Used when a run was aborted before its id was known; later events
        for it are then ignored like any other late event.
        """
        if run_id != self._run_id and run_id not in self._finished:
            self._finished.append(run_id)

    def mark_detached(self) -> None:
        """Mark the active run as only recoverable through history (connection lost)."""
        if self.is_active:
            self._resumed = True

    def finish(self, state: RunState, measure: bool = True) -> Optional[RunOutcome]:
        """Move the active run to a terminal state and back to IDLE.

        Args:
            state: FINAL, ABORTED or ERROR.
            measure: Compute the run duration.

        Returns:
            The outcome, or None if no run was active.
        """
        if not state.is_terminal:
            raise ValueError(f"Not a terminal state: {state}")
        if not self.is_active:
            return None

        self._cancel_watchdog()
        now = self._scheduler.now()
        outcome = RunOutcome(state=state, run_id=self._run_id, resumed=self._resumed)
        if measure and not self._resumed and self._started_at is not None:
            outcome.duration = now - self._started_at
            if self._first_event_at is not None:
                outcome.thinking_duration = self._first_event_at - self._started_at

        if self._run_id:
            self._finished.append(self._run_id)
        self._silent = False
        self._transition_to(state)

        self._state = RunState.IDLE
        self._run_id = None
        self._started_at = None
        self._first_event_at = None
        self._resumed = False
        self._notify()
        return outcome

    def stop(self) -> None:
        """Cancel timers without changing state (client teardown)."""
        self._cancel_watchdog()

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _transition_to(self, new_state: RunState) -> None:
        old_state = self._state
        self._state = new_state
        logger.debug(f"Run state: {old_state.value} -> {new_state.value} ({self._run_id})")
        self._notify()

    def _notify(self) -> None:
        if self._on_state_change:
            try:
                self._on_state_change(self._state, self._run_id, self._silent)
            except Exception as e:
                logger.warning(f"Error in run state callback: {e}")

    def _arm_watchdog(self) -> None:
        self._cancel_watchdog()
        self._watchdog = self._scheduler.call_later(self._silence_threshold, self._on_silence)

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _on_silence(self) -> None:
        self._watchdog = None
        if self.is_active and not self._silent:
            self._silent = True
            logger.debug(f"Run {self._run_id} silent for {self._silence_threshold}s")
            self._notify()
