"""
Session and streaming forward protocol.

Provides:
- Session: Caller-supplied session parameters for one forward call
- SessionState / SessionTable: Per-instance session state machine
- RequestStatus: Status of a forward call
- GenerationConfig: Per-call generation parameters with defaulting rules
- model: Model / ModelInstance for the low-level forward path
  (imported explicitly as inferbridge.session.model)
"""

from inferbridge.session.generation_config import GenerationConfig
from inferbridge.session.session import (
    RequestStatus,
    Session,
    SessionRecord,
    SessionState,
    SessionTable,
)

__all__ = [
    "GenerationConfig",
    "RequestStatus",
    "Session",
    "SessionRecord",
    "SessionState",
    "SessionTable",
]
