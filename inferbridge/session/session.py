"""
Session state machine for multi-step forward calls.

A session is opened by a call with start_flag=True (step 0), continued by
calls on the same ID with increasing steps, and closed either by a call
with end_flag=True, by an explicit end_session signal, or abandoned with
kill_flag=True.

Rules applied by SessionTable.begin():
- start on an ACTIVE id is rejected; start on an ENDED or KILLED id
  opens a brand-new session under the same id
- continue on an unknown, ENDED or KILLED id is rejected
- at most one forward may be outstanding per session
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from inferbridge.core.errors import InvalidParametersError

logger = logging.getLogger(__name__)

MAX_SESSION_ID = 2**64 - 1


class RequestStatus(Enum):
    """Execution status of a forward call."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SessionState(Enum):
    """Lifecycle state of a session."""

    ACTIVE = "active"
    ENDED = "ended"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionState.ACTIVE


@dataclass
class Session:
    """Caller-supplied session parameters for one forward call.

    Attributes:
        id: 64-bit unsigned session identifier.
        step: Step counter; 0 on start, strictly increasing afterwards.
        start_flag: Opens the session.
        end_flag: Closes the session after this call.
        kill_flag: Abandons the session immediately.
    """

    id: int
    step: int = 0
    start_flag: bool = False
    end_flag: bool = False
    kill_flag: bool = False


@dataclass
class SessionRecord:
    """Bookkeeping kept by the SessionTable for one session id."""

    session_id: int
    state: SessionState = SessionState.ACTIVE
    step: int = 0
    forwards: int = 0
    busy: bool = False


class SessionTable:
    """Thread-safe table of session records for one model instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[int, SessionRecord] = {}

    @staticmethod
    def _check_ids(session: Session) -> None:
        if not 0 <= session.id <= MAX_SESSION_ID:
            raise InvalidParametersError(f"Invalid parameters: session id {session.id} out of range")
        if session.step < 0:
            raise InvalidParametersError(f"Invalid parameters: negative step {session.step}")

    def begin(self, session: Session) -> SessionRecord:
        """Validate a forward call against the state machine and mark the session busy.

        Returns:
            The session's record, now busy.

        Raises:
            InvalidParametersError: If the transition is not allowed.
        """
        self._check_ids(session)
        with self._lock:
            record = self._records.get(session.id)

            if record is not None and record.busy:
                raise InvalidParametersError(
                    f"Forward already in flight for session {session.id}"
                )

            if session.start_flag:
                if record is not None and record.state is SessionState.ACTIVE:
                    raise InvalidParametersError(f"Session {session.id} is already active")
                if session.step != 0:
                    raise InvalidParametersError(
                        f"Session {session.id} must start at step 0, got {session.step}"
                    )
                record = SessionRecord(session_id=session.id)
                self._records[session.id] = record
            else:
                if record is None or record.state is not SessionState.ACTIVE:
                    logger.warning("Rejected continue on inactive session %d", session.id)
                    raise InvalidParametersError(f"Session {session.id} is not active")
                if session.step <= record.step and record.forwards > 0:
                    raise InvalidParametersError(
                        f"Session {session.id} step must increase, got {session.step} "
                        f"after {record.step}"
                    )

            record.busy = True
            return record

    def finish(self, session: Session) -> SessionRecord:
        """Release the busy mark and apply the end transition."""
        with self._lock:
            record = self._records[session.id]
            record.busy = False
            record.forwards += 1
            record.step = session.step
            if session.end_flag and record.state is SessionState.ACTIVE:
                record.state = SessionState.ENDED
            return record

    def kill(self, session: Session) -> SessionRecord:
        """Mark a session KILLED.

        Nothing is dispatched for a kill, so it is accepted for any id,
        including one with a forward in flight or one that is not active.
        """
        self._check_ids(session)
        with self._lock:
            record = self._records.get(session.id)
            if record is None:
                record = SessionRecord(session_id=session.id)
                self._records[session.id] = record
            record.state = SessionState.KILLED
            return record

    def abort(self, session: Session) -> None:
        """Release the busy mark after a failed forward without counting a step."""
        with self._lock:
            record = self._records.get(session.id)
            if record is not None:
                record.busy = False

    def end(self, session_id: int) -> bool:
        """Mark a session ENDED. Returns False if the id is unknown."""
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return False
            if record.state is SessionState.ACTIVE:
                record.state = SessionState.ENDED
            return True

    def state(self, session_id: int) -> Optional[SessionState]:
        with self._lock:
            record = self._records.get(session_id)
            return record.state if record is not None else None

    def active_ids(self):
        with self._lock:
            return [sid for sid, r in self._records.items() if r.state is SessionState.ACTIVE]

    def busy_ids(self):
        with self._lock:
            return [sid for sid, r in self._records.items() if r.busy]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
