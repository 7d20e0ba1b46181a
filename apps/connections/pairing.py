"""
Pairing state machine: one connect/reconnect attempt of one connection.

    idle -> creating -> awaiting_scan -> polling -> connected | timed_out | cancelled | failed

The session owns two asyncio tasks: a fixed-interval poll loop and a one-shot deadline.
Every state change goes through _transition() (compare-and-set under a lock), so a connected
tick that loses the race to cancel/timeout is discarded and terminal states never change.
Ticks never overlap: the loop awaits a tick before waiting for the next interval. A cancel
that arrives during a tick lets the tick finish; only its transition is dropped.

On connected the terminal state is committed first (row + session state); migration and
department bootstrap then run as best-effort follow-ups whose failures are only logged.
"""
from __future__ import annotations

import asyncio
import inspect
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from apps.connections.departments import DepartmentBootstrapper
from apps.connections.errors import (
    BootstrapError,
    ConnectionLifecycleError,
    GatewayError,
    InvalidState,
    MigrationError,
    PairingCancelled,
    PairingFailed,
    PairingTimeout,
    PollingError,
)
from apps.connections.gateway import GatewayStatus, ProviderGateway
from apps.connections.migration import MigrationEngine
from apps.connections.phone import format_phone, is_matchable, normalize_phone
from apps.connections.store import PENDING_STATUSES, ConnectionStatus, ConnectionStore
from apps.observability import bind_context, get_logger

logger = get_logger(__name__)


class PairingState(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    AWAITING_SCAN = "awaiting_scan"
    POLLING = "polling"
    CONNECTED = "connected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    PairingState.CONNECTED,
    PairingState.TIMED_OUT,
    PairingState.CANCELLED,
    PairingState.FAILED,
})
LIVE_STATES = frozenset(PairingState) - TERMINAL_STATES


@dataclass
class PairingResult:
    """Terminal outcome handed to the caller by PairingSession.wait() and on_complete."""

    state: PairingState
    connection_id: str
    session_id: str
    phone_number: Optional[str] = None
    normalized_phone: Optional[str] = None
    migration_id: Optional[str] = None
    migrated_conversations: int = 0
    error: Optional[ConnectionLifecycleError] = None

    @property
    def ok(self) -> bool:
        return self.state is PairingState.CONNECTED


class PairingSession:
    """
    Drives one pairing attempt. `created=True` means start_pairing inserted the row and the
    provider instance is new; False means reconnect of an existing row, which on abandon is
    reverted to `prior_status` instead of deleted.
    """

    def __init__(
        self,
        *,
        connection_id: str,
        company_id: str,
        session_id: str,
        store: ConnectionStore,
        gateway: ProviderGateway,
        migrations: MigrationEngine,
        departments: DepartmentBootstrapper,
        created: bool = True,
        prior_status: Optional[str] = None,
        poll_interval: float = 3.0,
        deadline: float = 120.0,
        on_qr: Optional[Callable[[str, str], Any]] = None,
        on_complete: Optional[Callable[[PairingResult], Any]] = None,
    ):
        if poll_interval <= 0 or deadline <= 0:
            raise ValueError("poll_interval and deadline must be positive")
        self.connection_id = connection_id
        self.company_id = company_id
        self.session_id = session_id
        self.store = store
        self.gateway = gateway
        self.migrations = migrations
        self.departments = departments
        self.created = created
        self.prior_status = prior_status or ConnectionStatus.DISCONNECTED.value
        self.poll_interval = poll_interval
        self.deadline = deadline
        self.on_qr = on_qr
        self.on_complete = on_complete

        self.qr_code: Optional[str] = None
        self.ticks = 0
        self.last_poll_error: Optional[PollingError] = None
        self.started_at: Optional[float] = None
        self.deadline_at: Optional[float] = None

        self._state = PairingState.IDLE
        self._lock = threading.Lock()
        self._stop = asyncio.Event()
        self._finished = asyncio.Event()
        self._result: Optional[PairingResult] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._deadline_task: Optional[asyncio.Task] = None

    # --- state ---

    @property
    def state(self) -> PairingState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def result(self) -> Optional[PairingResult]:
        return self._result

    def _transition(self, expected: Iterable[PairingState], new: PairingState) -> bool:
        """The single authoritative guard: move to `new` only from one of `expected`."""
        with self._lock:
            if self._state not in expected:
                return False
            logger.debug("pairing_transition", connection_id=self.connection_id, old=self._state.value, new=new.value)
            self._state = new
            return True

    def snapshot(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "session_id": self.session_id,
            "state": self._state.value,
            "qr_code": self.qr_code if self._state in (PairingState.AWAITING_SCAN, PairingState.POLLING) else None,
            "ticks": self.ticks,
            "reconnect": not self.created,
        }

    # --- start ---

    async def begin(self) -> None:
        """
        Ask the provider for a QR code, persist it and start polling.
        Raises PairingFailed (row rolled back) on provider error or when no QR is returned.
        Returns quietly if the attempt was cancelled while the provider call was in flight.
        """
        if not self._transition({PairingState.IDLE}, PairingState.CREATING):
            raise InvalidState(f"pairing already {self._state.value}", connection_id=self.connection_id)

        if not self.created:
            try:
                claimed = self.store.update_if(
                    self.connection_id, {self.prior_status}, status=ConnectionStatus.CONNECTING.value, qr_code=None
                )
            except SQLAlchemyError as e:
                return await self._fail_start(
                    PairingFailed(f"could not mark connection connecting: {e}", connection_id=self.connection_id),
                    cause=e,
                    rollback=False,
                )
            if not claimed:
                return await self._fail_start(
                    PairingFailed("connection changed before reconnect", connection_id=self.connection_id),
                    rollback=False,
                )

        try:
            if self.created:
                qr = await self.gateway.init(self.session_id)
            else:
                qr = await self.gateway.reconnect(self.session_id)
        except GatewayError as e:
            return await self._fail_start(PairingFailed(str(e), connection_id=self.connection_id), cause=e)

        if not qr.qr_code:
            return await self._fail_start(
                PairingFailed("provider returned no QR code", connection_id=self.connection_id)
            )

        if not self._transition({PairingState.CREATING}, PairingState.AWAITING_SCAN):
            # cancel() already reverted the row; the instance it could not see yet goes too
            await self._teardown_provider()
            return

        try:
            stored = self.store.set_qr(self.connection_id, qr.qr_code)
        except SQLAlchemyError as e:
            return await self._fail_start(
                PairingFailed(f"could not store QR code: {e}", connection_id=self.connection_id),
                cause=e,
                expected=(PairingState.AWAITING_SCAN,),
            )
        if not stored:
            return await self._fail_start(
                PairingFailed("connection changed while pairing", connection_id=self.connection_id),
                expected=(PairingState.AWAITING_SCAN,),
            )

        self.qr_code = qr.qr_code
        logger.info("pairing_qr_ready", connection_id=self.connection_id, session_id=self.session_id, reconnect=not self.created)
        if self.on_qr is not None:
            try:
                await _maybe_await(self.on_qr(self.connection_id, qr.qr_code))
            except Exception:
                logger.exception("pairing_on_qr_failed", connection_id=self.connection_id)

        if not self._transition({PairingState.AWAITING_SCAN}, PairingState.POLLING):
            return
        loop = asyncio.get_running_loop()
        self.started_at = loop.time()
        self.deadline_at = self.started_at + self.deadline
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"pairing-poll-{self.connection_id}")
        self._deadline_task = asyncio.create_task(self._deadline_timer(), name=f"pairing-deadline-{self.connection_id}")

    async def _fail_start(
        self,
        error: PairingFailed,
        cause: Optional[BaseException] = None,
        expected: Iterable[PairingState] = (PairingState.CREATING,),
        rollback: bool = True,
    ) -> None:
        """Roll back a failed start and raise `error`; returns quietly if cancel() got there first."""
        if not self._transition(expected, PairingState.FAILED):
            return
        logger.warning("pairing_start_failed", connection_id=self.connection_id, error=str(error))
        if rollback:
            if self.created:
                await self._teardown_provider()
            self._restore_row()
        await self._finish(PairingResult(PairingState.FAILED, self.connection_id, self.session_id, error=error))
        raise error from cause

    # --- polling ---

    async def _poll_loop(self) -> None:
        # task-local: every line logged by this poller carries the session
        bind_context(connection_id=self.connection_id, session_id=self.session_id)
        while True:
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                return
            except asyncio.TimeoutError:
                pass
            if self._state is not PairingState.POLLING:
                return
            await self._tick()
            if self._state is not PairingState.POLLING:
                return

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            status = await self.gateway.status(self.session_id)
        except GatewayError as e:
            self.last_poll_error = PollingError(str(e), connection_id=self.connection_id)
            logger.warning("pairing_poll_failed", connection_id=self.connection_id, tick=self.ticks, error=str(e))
            return
        if not status.connected:
            return
        await self._on_connected(status)

    async def _on_connected(self, status: GatewayStatus) -> None:
        normalized = normalize_phone(status.phone_number)
        error: Optional[ConnectionLifecycleError] = None
        with self._lock:
            if self._state is not PairingState.POLLING:
                logger.info("pairing_connected_discarded", connection_id=self.connection_id, state=self._state.value)
                return
            try:
                applied = self.store.mark_connected(self.connection_id, status.phone_number, normalized)
            except SQLAlchemyError as e:
                applied = False
                error = PairingFailed(f"could not persist connected state: {e}", connection_id=self.connection_id)
            if applied:
                self._state = PairingState.CONNECTED
            else:
                self._state = PairingState.FAILED
                error = error or PairingFailed("connection row changed while pairing", connection_id=self.connection_id)
        self._stop_timers()

        if error is not None:
            logger.error("pairing_connect_commit_failed", connection_id=self.connection_id, error=str(error))
            await self._finish(PairingResult(PairingState.FAILED, self.connection_id, self.session_id, error=error))
            return

        logger.info(
            "pairing_connected",
            connection_id=self.connection_id,
            phone=format_phone(status.phone_number),
            ticks=self.ticks,
        )
        result = PairingResult(
            PairingState.CONNECTED,
            self.connection_id,
            self.session_id,
            phone_number=status.phone_number,
            normalized_phone=normalized or None,
        )
        if is_matchable(normalized):
            try:
                migration = self.migrations.reconcile_if_duplicate(self.company_id, self.connection_id, normalized)
            except MigrationError as e:
                logger.error("pairing_migration_failed", connection_id=self.connection_id, error=str(e))
            else:
                if migration is not None:
                    result.migration_id = migration.id
                    result.migrated_conversations = migration.migrated_conversations_count
        else:
            logger.info("pairing_phone_unmatchable", connection_id=self.connection_id, digits=len(normalized))
        try:
            self.departments.ensure_default(self.connection_id)
        except BootstrapError as e:
            logger.error("pairing_department_bootstrap_failed", connection_id=self.connection_id, error=str(e))
        await self._finish(result)

    # --- exits ---

    async def _deadline_timer(self) -> None:
        loop = asyncio.get_running_loop()
        remaining = self.deadline_at - loop.time()
        while remaining > 0:
            await asyncio.sleep(remaining)
            remaining = self.deadline_at - loop.time()
        if not self._transition(LIVE_STATES, PairingState.TIMED_OUT):
            return
        logger.info("pairing_timed_out", connection_id=self.connection_id, ticks=self.ticks, deadline=self.deadline)
        self._stop_timers()
        await self._abandon()
        await self._finish(PairingResult(
            PairingState.TIMED_OUT,
            self.connection_id,
            self.session_id,
            error=PairingTimeout(f"not connected after {self.deadline:g}s", connection_id=self.connection_id),
        ))

    async def cancel(self) -> PairingResult:
        """Abandon the attempt. No-op (returns the existing outcome) once terminal."""
        if not self._transition(LIVE_STATES, PairingState.CANCELLED):
            await self._finished.wait()
            return self._result
        logger.info("pairing_cancelled", connection_id=self.connection_id, ticks=self.ticks)
        self._stop_timers()
        await self._abandon()
        result = PairingResult(
            PairingState.CANCELLED,
            self.connection_id,
            self.session_id,
            error=PairingCancelled("pairing cancelled", connection_id=self.connection_id),
        )
        await self._finish(result)
        return result

    async def wait(self) -> PairingResult:
        await self._finished.wait()
        return self._result

    def _stop_timers(self) -> None:
        self._stop.set()
        current = asyncio.current_task()
        if self._deadline_task is not None and self._deadline_task is not current and not self._deadline_task.done():
            self._deadline_task.cancel()

    async def _teardown_provider(self) -> None:
        """Best-effort provider delete; the row (and its session_id) is handled by the caller."""
        try:
            await self.gateway.delete(self.session_id)
        except GatewayError as e:
            logger.warning("pairing_provider_teardown_failed", connection_id=self.connection_id, error=str(e))

    async def _abandon(self) -> None:
        """Cleanup shared by cancel and timeout. Row writes are conditional on still pending."""
        await self._teardown_provider()
        self._restore_row()

    def _restore_row(self) -> None:
        """Delete a row this attempt created, or put a reconnected row back. Only while still pending."""
        try:
            if self.created:
                self.store.delete_if_pending(self.connection_id)
            else:
                self.store.update_if(self.connection_id, PENDING_STATUSES, status=self.prior_status, qr_code=None)
        except SQLAlchemyError as e:
            logger.error("pairing_row_cleanup_failed", connection_id=self.connection_id, error=str(e))

    async def _finish(self, result: PairingResult) -> None:
        self._result = result
        self._finished.set()
        if self.on_complete is not None:
            try:
                await _maybe_await(self.on_complete(result))
            except Exception:
                logger.exception("pairing_on_complete_failed", connection_id=self.connection_id)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
