from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sandbox_orchestrator.domain.errors import NotFoundError, ValidationError
from sandbox_orchestrator.domain.sessions import (
    SESSION_FIELDS,
    SESSION_STATE_AWAITING_SANDBOX,
    SESSION_STATE_COMPLETED,
    SESSION_STATE_ERROR,
    SESSION_STATE_SANDBOX_EXECUTING,
    SESSION_STATE_SUBMITTED,
    TERMINAL_SESSION_STATES,
    SessionRecord,
)
from sandbox_orchestrator.observability.structured_log import log_json

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory keyed registry of chat session state.

    ``merge`` is the only write primitive. Every write runs under the lock
    for its session id and only touches the fields it names, so response and
    execution-started signals can land in either order.
    """

    def __init__(self, ttl_sec: int = 24 * 60 * 60) -> None:
        self._ttl_sec = max(1, int(ttl_sec))
        self._sessions: Dict[str, SessionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def merge(self, session_id: str, **fields: Any) -> SessionRecord:
        session_id = str(session_id or "").strip()
        if not session_id:
            raise ValidationError("session_id is required")
        unknown = sorted(set(fields) - set(SESSION_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown session fields: {', '.join(unknown)}")
        async with self._lock_for(session_id):
            return self._merge_locked(session_id, fields)

    async def submit(
        self,
        message: str,
        session_id: Optional[str] = None,
        user_id: str = "",
        tenant_id: str = "",
    ) -> SessionRecord:
        """Record a new inbound message; generates an id when none is given."""
        sid = str(session_id or "").strip() or str(uuid.uuid4())
        record = await self.merge(
            sid,
            state=SESSION_STATE_SUBMITTED,
            last_message=message,
            last_response="",
            requires_sandbox=False,
            sandbox_id=None,
            error=None,
            user_id=str(user_id or ""),
            tenant_id=str(tenant_id or ""),
            response_at=None,
            execution_started_at=None,
        )
        log_json(logger, "session.submitted", session_id=sid, tenant_id=record.tenant_id)
        return record

    async def record_response(
        self,
        session_id: str,
        text: str,
        requires_sandbox: bool,
        sandbox_id: Optional[str] = None,
    ) -> SessionRecord:
        async with self._lock_for(session_id):
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError(f"Session {session_id} has not been submitted")
            started = current.execution_started_at is not None
            if not requires_sandbox:
                state = SESSION_STATE_COMPLETED
            elif started:
                state = SESSION_STATE_SANDBOX_EXECUTING
            else:
                state = SESSION_STATE_AWAITING_SANDBOX
            fields: Dict[str, Any] = {
                "state": self._monotonic(current, state),
                "last_response": text,
                "requires_sandbox": bool(requires_sandbox),
                "response_at": _utc_now(),
            }
            if sandbox_id:
                fields["sandbox_id"] = sandbox_id
            record = self._merge_locked(session_id, fields)
        log_json(logger, "session.response.recorded", session_id=session_id, state=record.state)
        return record

    async def record_execution_started(self, session_id: str, sandbox_id: str) -> SessionRecord:
        async with self._lock_for(session_id):
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError(f"Session {session_id} has not been submitted")
            fields: Dict[str, Any] = {
                "state": self._monotonic(current, SESSION_STATE_SANDBOX_EXECUTING),
                "sandbox_id": sandbox_id,
                "execution_started_at": _utc_now(),
            }
            record = self._merge_locked(session_id, fields)
        log_json(logger, "session.execution.started", session_id=session_id, sandbox_id=sandbox_id, state=record.state)
        return record

    async def record_error(self, session_id: str, detail: str) -> SessionRecord:
        record = await self.merge(session_id, state=SESSION_STATE_ERROR, error=detail)
        log_json(logger, "session.error", session_id=session_id)
        return record

    def get(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise NotFoundError(f"Session {session_id} has not been processed yet")
        return record

    def list_ids(self) -> List[str]:
        return sorted(self._sessions)

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        current = now or datetime.now(timezone.utc)
        cutoff = current - timedelta(seconds=self._ttl_sec)
        expired = []
        for sid, rec in self._sessions.items():
            lock = self._locks.get(sid)
            if rec.updated_at < cutoff and (lock is None or not lock.locked()):
                expired.append(sid)
        for sid in expired:
            self._sessions.pop(sid, None)
            self._locks.pop(sid, None)
        if expired:
            log_json(logger, "session.evicted", count=len(expired))
        return len(expired)

    # ---- Internal helpers ----

    def _merge_locked(self, session_id: str, fields: Dict[str, Any]) -> SessionRecord:
        now = _utc_now()
        current = self._sessions.get(session_id)
        if current is None:
            current = SessionRecord(
                session_id=session_id,
                state=SESSION_STATE_SUBMITTED,
                last_message="",
                last_response="",
                requires_sandbox=False,
                sandbox_id=None,
                error=None,
                user_id="",
                tenant_id="",
                created_at=now,
                updated_at=now,
            )
        record = replace(current, updated_at=now, **fields)
        self._sessions[session_id] = record
        return record

    @staticmethod
    def _monotonic(current: Optional[SessionRecord], proposed: str) -> str:
        if current is not None and current.state in TERMINAL_SESSION_STATES:
            return current.state
        return proposed


def session_to_dict(record: SessionRecord) -> Dict[str, Any]:
    data = asdict(record)
    for key in ("created_at", "updated_at", "response_at", "execution_started_at"):
        if data.get(key) is not None:
            data[key] = data[key].isoformat()
    return {
        "sessionId": data["session_id"],
        "processingState": data["state"],
        "lastMessage": data["last_message"],
        "lastResponse": data["last_response"],
        "requiresE2B": data["requires_sandbox"],
        "sandboxId": data["sandbox_id"],
        "error": data["error"],
        "userId": data["user_id"],
        "tenantId": data["tenant_id"],
        "createdAt": data["created_at"],
        "updatedAt": data["updated_at"],
        "responseTimestamp": data["response_at"],
        "executionStartTimestamp": data["execution_started_at"],
    }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
