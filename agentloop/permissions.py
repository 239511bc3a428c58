"""Permission gate: scoped grants, audit log and human approval requests."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from agentloop.schemas import AuditEntry, PermissionScope, PermissionStatus, ToolCall, utcnow

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_CAPACITY = 1000

# Argument inspected for path-restricted scopes
PATH_ARGUMENT = "path"

ApprovalCallback = Callable[[ToolCall], Awaitable[bool]]


def _normalize_path(path: str) -> str:
    return os.path.normpath(os.path.expanduser(path))


def path_allowed(path: str, prefixes: Iterable[str]) -> bool:
    """Whether ``path`` equals or lies under one of ``prefixes``.

    Matching is by path component, so ``/allowed`` covers ``/allowed/sub``
    but not ``/allowed-other``.
    """
    requested = _normalize_path(path)
    for prefix in prefixes:
        allowed = _normalize_path(prefix)
        if requested == allowed or requested.startswith(allowed.rstrip("/") + "/"):
            return True
    return False


class PermissionGate:
    """Decides whether a tool call may run and records every decision.

    Session-only scopes live in memory. Persistent scopes and the audit log
    are also written to SQLite when ``db_path`` is given. The audit log is a
    ring buffer: past ``audit_capacity`` entries the oldest are evicted.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        audit_capacity: int = DEFAULT_AUDIT_CAPACITY,
        persist_approvals: bool = False,
    ):
        """Initialize the gate.

        Args:
            db_path: SQLite file for persistent scopes and the audit log, or
                None to keep everything in memory
            audit_capacity: Maximum number of audit entries retained
            persist_approvals: Whether scopes created from approvals survive restarts
        """
        self.db_path = Path(db_path) if db_path else None
        self.audit_capacity = audit_capacity
        self.persist_approvals = persist_approvals
        self._lock = threading.Lock()
        self._scopes: dict[str, PermissionScope] = {}
        self._audit: deque[AuditEntry] = deque(maxlen=audit_capacity)

        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
            self._load()
        self._prune_expired()

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    def check(self, call: ToolCall) -> PermissionStatus:
        """Check whether ``call`` is covered by a stored scope.

        Returns:
            GRANTED when a live scope covers the call, DENIED when a
            path-restricted scope does not cover the requested path, and
            NEEDS_APPROVAL when no live scope exists
        """
        with self._lock:
            scope = self._scopes.get(call.name)

        if scope is None:
            return PermissionStatus.NEEDS_APPROVAL

        if scope.is_expired():
            logger.info(f"Scope for {call.name} expired; revoking")
            self.revoke(call.name)
            return PermissionStatus.NEEDS_APPROVAL

        if scope.allowed_path_prefixes is not None:
            requested = call.arguments.get(PATH_ARGUMENT)
            if requested is None or not path_allowed(requested, scope.allowed_path_prefixes):
                logger.info(f"Path {requested!r} is outside the scope for {call.name}")
                return PermissionStatus.DENIED

        return PermissionStatus.GRANTED

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def record_approval(self, call: ToolCall, cacheable: bool = False) -> None:
        """Audit an approval and, for cacheable capabilities, remember it."""
        if cacheable:
            self.grant(call.name, session_only=not self.persist_approvals)
        self._append_audit(AuditEntry(
            tool_name=call.name,
            arguments=dict(call.arguments),
            approved=True,
            path=call.arguments.get(PATH_ARGUMENT),
        ))

    def log_denial(self, call: ToolCall) -> None:
        self._append_audit(AuditEntry(
            tool_name=call.name,
            arguments=dict(call.arguments),
            approved=False,
            path=call.arguments.get(PATH_ARGUMENT),
        ))

    # ------------------------------------------------------------------
    # Scope management
    # ------------------------------------------------------------------

    def grant(
        self,
        tool_name: str,
        allowed_path_prefixes: list[str] | None = None,
        ttl: float | None = None,
        session_only: bool = True,
    ) -> PermissionScope:
        """Store a scope for ``tool_name``, replacing any existing one.

        Args:
            tool_name: Capability name
            allowed_path_prefixes: Restrict the scope to these paths; None allows all
            ttl: Lifetime in seconds; None never expires
            session_only: Keep the scope in memory only

        Returns:
            The stored PermissionScope
        """
        now = utcnow()
        scope = PermissionScope(
            tool_name=tool_name,
            allowed_path_prefixes=allowed_path_prefixes,
            granted_at=now,
            expires_at=now + timedelta(seconds=ttl) if ttl is not None else None,
            session_only=session_only,
        )
        with self._lock:
            self._scopes[tool_name] = scope
            if self.db_path is not None:
                with self._get_connection() as conn:
                    if session_only:
                        conn.execute("DELETE FROM scopes WHERE tool_name = ?", (tool_name,))
                    else:
                        conn.execute(
                            """
                            INSERT INTO scopes (tool_name, allowed_paths_json, granted_at, expires_at)
                            VALUES (?, ?, ?, ?)
                            ON CONFLICT(tool_name) DO UPDATE SET
                                allowed_paths_json = excluded.allowed_paths_json,
                                granted_at = excluded.granted_at,
                                expires_at = excluded.expires_at
                            """,
                            (
                                tool_name,
                                json.dumps(allowed_path_prefixes),
                                scope.granted_at.isoformat(),
                                scope.expires_at.isoformat() if scope.expires_at else None,
                            ),
                        )
                    conn.commit()

        logger.info(f"Granted {tool_name} ({'session' if session_only else 'persistent'})")
        return scope

    def revoke(self, tool_name: str) -> bool:
        """Remove the scope for ``tool_name``. Returns whether one existed."""
        with self._lock:
            existed = self._scopes.pop(tool_name, None) is not None
            if self.db_path is not None:
                with self._get_connection() as conn:
                    conn.execute("DELETE FROM scopes WHERE tool_name = ?", (tool_name,))
                    conn.commit()
        if existed:
            logger.info(f"Revoked {tool_name}")
        return existed

    def clear(self) -> None:
        """Remove all scopes."""
        with self._lock:
            self._scopes.clear()
            if self.db_path is not None:
                with self._get_connection() as conn:
                    conn.execute("DELETE FROM scopes")
                    conn.commit()
        logger.info("All permissions cleared")

    def scopes(self) -> list[PermissionScope]:
        """Live scopes, expired ones pruned first."""
        self._prune_expired()
        with self._lock:
            return list(self._scopes.values())

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def audit_entries(self, limit: int | None = None) -> list[AuditEntry]:
        """Audit entries, oldest first; ``limit`` keeps the most recent ones."""
        with self._lock:
            entries = list(self._audit)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear_audit(self) -> None:
        with self._lock:
            self._audit.clear()
            if self.db_path is not None:
                with self._get_connection() as conn:
                    conn.execute("DELETE FROM audit")
                    conn.commit()

    def _append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(entry)
            if self.db_path is not None:
                with self._get_connection() as conn:
                    conn.execute(
                        """
                        INSERT INTO audit (tool_name, arguments_json, timestamp, approved, path)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            entry.tool_name,
                            json.dumps(entry.arguments),
                            entry.timestamp.isoformat(),
                            int(entry.approved),
                            entry.path,
                        ),
                    )
                    self._evict_audit(conn)
                    conn.commit()

        logger.info(f"Audit: {entry.tool_name} {'approved' if entry.approved else 'denied'}")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scopes (
                    tool_name TEXT PRIMARY KEY,
                    allowed_paths_json TEXT,
                    granted_at TEXT NOT NULL,
                    expires_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tool_name TEXT NOT NULL,
                    arguments_json TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    approved INTEGER NOT NULL,
                    path TEXT
                )
            """)
            conn.commit()

    def _load(self) -> None:
        with self._get_connection() as conn:
            for row in conn.execute("SELECT * FROM scopes"):
                self._scopes[row["tool_name"]] = PermissionScope(
                    tool_name=row["tool_name"],
                    allowed_path_prefixes=json.loads(row["allowed_paths_json"] or "null"),
                    granted_at=datetime.fromisoformat(row["granted_at"]),
                    expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
                    session_only=False,
                )
            rows = conn.execute(
                "SELECT * FROM audit ORDER BY id DESC LIMIT ?", (self.audit_capacity,)
            ).fetchall()

        for row in reversed(rows):
            self._audit.append(AuditEntry(
                tool_name=row["tool_name"],
                arguments=json.loads(row["arguments_json"]),
                timestamp=datetime.fromisoformat(row["timestamp"]),
                approved=bool(row["approved"]),
                path=row["path"],
            ))
        logger.debug(f"Loaded {len(self._scopes)} scopes and {len(self._audit)} audit entries")

    def _evict_audit(self, conn: sqlite3.Connection) -> None:
        """Delete audit rows beyond capacity, oldest first."""
        conn.execute(
            """
            DELETE FROM audit
            WHERE id NOT IN (
                SELECT id FROM audit ORDER BY id DESC LIMIT ?
            )
            """,
            (self.audit_capacity,),
        )

    def _prune_expired(self) -> None:
        now = utcnow()
        with self._lock:
            expired = [name for name, scope in self._scopes.items() if scope.is_expired(now)]
        for name in expired:
            self.revoke(name)


@dataclass
class PendingApproval:
    """A tool call waiting for a human decision."""

    request_id: str
    call: ToolCall
    future: asyncio.Future = field(repr=False)
    created_at: datetime = field(default_factory=utcnow)


class ApprovalBroker:
    """Pending-request records resolved from outside the loop's call stack.

    ``request`` is an ApprovalCallback: the loop awaits it while a UI (CLI
    prompt, HTTP endpoint) calls ``resolve`` with the user's decision.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        self._pending: dict[str, PendingApproval] = {}

    async def request(self, call: ToolCall) -> bool:
        """Wait for a decision on ``call``. A timeout counts as rejection."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        request_id = uuid.uuid4().hex
        self._pending[request_id] = PendingApproval(request_id=request_id, call=call, future=future)
        logger.info(f"Approval requested for {call.name} ({request_id})")

        try:
            if self.timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Approval request {request_id} timed out; treating as rejected")
            return False
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Deliver a decision. Returns False if the request is unknown or already resolved."""
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(approved)
        logger.info(f"Approval {request_id} {'granted' if approved else 'rejected'}")
        return True

    def pending(self) -> list[PendingApproval]:
        return [p for p in self._pending.values() if not p.future.done()]

    def cancel_all(self) -> int:
        """Reject every outstanding request. Returns how many were rejected."""
        return sum(self.resolve(p.request_id, False) for p in self.pending())
