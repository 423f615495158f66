from dataclasses import dataclass
from datetime import datetime
from typing import Optional

SESSION_STATE_SUBMITTED = "submitted"
SESSION_STATE_AWAITING_SANDBOX = "awaiting_e2b"
SESSION_STATE_SANDBOX_EXECUTING = "e2b_executing"
SESSION_STATE_COMPLETED = "completed"
SESSION_STATE_ERROR = "error"

TERMINAL_SESSION_STATES = frozenset({SESSION_STATE_COMPLETED, SESSION_STATE_ERROR})

# Merge-able fields. Anything else passed to the store is rejected.
SESSION_FIELDS = (
    "state",
    "last_message",
    "last_response",
    "requires_sandbox",
    "sandbox_id",
    "error",
    "user_id",
    "tenant_id",
    "response_at",
    "execution_started_at",
)


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    state: str
    last_message: str
    last_response: str
    requires_sandbox: bool
    sandbox_id: Optional[str]
    error: Optional[str]
    user_id: str
    tenant_id: str
    created_at: datetime
    updated_at: datetime
    response_at: Optional[datetime] = None
    execution_started_at: Optional[datetime] = None
