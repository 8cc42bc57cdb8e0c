"""Account connection manager: one supervised worker per mailbox.

The :class:`ConnectionManager` owns every :class:`AccountWorker`.  All
changes go through a command queue consumed by the supervisor task, so
the worker table is only ever mutated from that task.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .config import SyncConfig
from .db.models import Account
from .db.store import AccountStore
from .errors import MailboxConnectionError
from .imap_client import AsyncImapClient, MailboxClient
from .logging import account_context
from .models import AccountCredentials
from .sync import SyncEngine

logger = structlog.get_logger()

ClientFactory = Callable[[AccountCredentials], MailboxClient]
NewMessagesListener = Callable[[uuid.UUID, int], Any]
ConnectionEndedListener = Callable[[uuid.UUID, str], Any]


class AccountWorker:
    """Keeps one account connected, synced and listening for new mail.

    The loop never gives up: after every session end, graceful or not,
    it waits ``reconnect_delay_seconds`` and connects again.  Only
    cancellation (via :meth:`stop`) ends it.
    """

    def __init__(
        self,
        account: Account,
        *,
        sync: SyncEngine,
        accounts: AccountStore,
        config: SyncConfig,
        client_factory: ClientFactory,
        emit_new: Callable[[uuid.UUID, int], Awaitable[None]],
        emit_ended: Callable[[uuid.UUID, str], Awaitable[None]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.account = account
        self.connected = False
        self.sessions = 0
        self.last_error: str | None = None
        self._sync = sync
        self._accounts = accounts
        self._config = config
        self._client_factory = client_factory
        self._emit_new = emit_new
        self._emit_ended = emit_ended
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def account_id(self) -> uuid.UUID:
        return self.account.id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"account-{self.account.email}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("account_worker_stopped", account=self.account.email)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        with account_context(self.account.email, self.account.id):
            while True:
                self.sessions += 1
                reason = "connection closed"
                client = self._client_factory(self.account.credentials)
                try:
                    await self._session(client)
                except MailboxConnectionError as exc:
                    reason = str(exc)
                    logger.warning("account_connection_error", error=reason)
                    await self._record_error(reason)
                except Exception as exc:
                    reason = f"{type(exc).__name__}: {exc}"
                    logger.exception("account_worker_error")
                    await self._record_error(reason)
                finally:
                    self.connected = False
                    await _close_quietly(client)

                await self._emit_ended(self.account.id, reason)
                logger.info(
                    "account_reconnect_scheduled",
                    delay_seconds=self._config.reconnect_delay_seconds,
                    reason=reason,
                )
                await self._sleep(self._config.reconnect_delay_seconds)

    async def _record_error(self, reason: str) -> None:
        self.last_error = reason
        try:
            await self._accounts.mark_error(self.account.id, reason)
        except SQLAlchemyError as exc:
            logger.error("account_status_write_failed", error=str(exc))

    async def _session(self, client: MailboxClient) -> None:
        await client.connect()
        await client.select(self._config.mailbox, readonly=False)
        self.connected = True
        logger.info("account_connected", idle=client.supports_idle)

        result = await self._sync.initial_sync(self.account, client)
        if not result.ok:
            raise MailboxConnectionError(result.error or "initial sync failed")

        while True:
            timeout = (
                self._config.idle_timeout_seconds
                if client.supports_idle
                else self._config.poll_interval_seconds
            )
            count = await client.wait_for_new_mail(timeout)
            if count <= 0:
                continue
            logger.info("new_mail", count=count)
            await self._emit_new(self.account.id, count)
            result = await self._sync.incremental_sync(self.account, client, count)
            if not result.ok:
                raise MailboxConnectionError(result.error or "incremental sync failed")


async def _close_quietly(client: MailboxClient) -> None:
    try:
        await client.disconnect()
    except (MailboxConnectionError, OSError) as exc:
        logger.debug("account_disconnect_error", error=str(exc))


@dataclass
class _Command:
    kind: str
    account_id: uuid.UUID | None = None
    account: Account | None = None
    done: asyncio.Future[Any] = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class ConnectionManager:
    """Supervisor for the per-account workers."""

    def __init__(
        self,
        sync: SyncEngine,
        accounts: AccountStore,
        config: SyncConfig,
        *,
        client_factory: ClientFactory = AsyncImapClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sync = sync
        self._accounts = accounts
        self._config = config
        self._client_factory = client_factory
        self._sleep = sleep
        self._commands: asyncio.Queue[_Command] = asyncio.Queue()
        self._workers: dict[uuid.UUID, AccountWorker] = {}
        self._snapshot: Mapping[uuid.UUID, AccountWorker] = MappingProxyType({})
        self._new_listeners: list[NewMessagesListener] = []
        self._ended_listeners: list[ConnectionEndedListener] = []
        self._running = False
        self._supervisor: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_new_messages(self, listener: NewMessagesListener) -> None:
        self._new_listeners.append(listener)

    def on_connection_ended(self, listener: ConnectionEndedListener) -> None:
        self._ended_listeners.append(listener)

    async def _emit_new(self, account_id: uuid.UUID, count: int) -> None:
        await _notify(self._new_listeners, "new_messages", account_id, count)

    async def _emit_ended(self, account_id: uuid.UUID, reason: str) -> None:
        await _notify(self._ended_listeners, "connection_ended", account_id, reason)

    # ------------------------------------------------------------------
    # Public commands
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def workers(self) -> Mapping[uuid.UUID, AccountWorker]:
        """Read-only view of the workers, republished by the supervisor."""
        return self._snapshot

    async def connect(self, account: Account) -> AccountWorker:
        """Start (or restart) the worker for *account*."""
        return await self._submit(_Command("connect", account_id=account.id, account=account))

    async def disconnect(self, account_id: uuid.UUID) -> bool:
        """Stop the worker for *account_id*; False if none was running."""
        return await self._submit(_Command("disconnect", account_id=account_id))

    async def _submit(self, command: _Command) -> Any:
        if not self._running:
            raise RuntimeError("connection manager is not running")
        await self._commands.put(command)
        return await command.done

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the supervisor as a background task."""
        self._running = True
        self._supervisor = asyncio.create_task(self.run(), name="connection-supervisor")

    async def stop(self) -> None:
        if not self._running:
            return
        command = _Command("stop")
        await self._commands.put(command)
        await command.done
        if self._supervisor is not None:
            await self._supervisor
            self._supervisor = None

    async def run(self) -> None:
        """Consume commands until a stop command arrives."""
        self._running = True
        logger.info("connection_supervisor_started")
        try:
            while True:
                command = await self._commands.get()
                try:
                    result = await self._handle(command)
                except Exception as exc:
                    logger.exception("connection_command_failed", command=command.kind)
                    if not command.done.done():
                        command.done.set_exception(exc)
                    continue
                if not command.done.done():
                    command.done.set_result(result)
                if command.kind == "stop":
                    return
        finally:
            self._running = False
            while not self._commands.empty():
                pending = self._commands.get_nowait()
                if not pending.done.done():
                    pending.done.set_exception(RuntimeError("connection manager stopped"))
            await self._stop_all()
            logger.info("connection_supervisor_stopped")

    async def _handle(self, command: _Command) -> Any:
        if command.kind == "connect":
            assert command.account is not None
            existing = self._workers.pop(command.account.id, None)
            if existing is not None:
                await existing.stop()
            worker = AccountWorker(
                command.account,
                sync=self._sync,
                accounts=self._accounts,
                config=self._config,
                client_factory=self._client_factory,
                emit_new=self._emit_new,
                emit_ended=self._emit_ended,
                sleep=self._sleep,
            )
            self._workers[command.account.id] = worker
            self._publish()
            worker.start()
            logger.info("account_worker_started", account=command.account.email)
            return worker

        if command.kind == "disconnect":
            worker = self._workers.pop(command.account_id, None)
            if worker is None:
                return False
            self._publish()
            await worker.stop()
            return True

        if command.kind == "stop":
            await self._stop_all()
            return None

        raise ValueError(f"unknown command {command.kind!r}")

    async def _stop_all(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        self._publish()
        for worker in workers:
            await worker.stop()

    def _publish(self) -> None:
        self._snapshot = MappingProxyType(dict(self._workers))


async def _notify(listeners: list[Callable[..., Any]], event: str, *args: Any) -> None:
    for listener in list(listeners):
        try:
            result = listener(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("connection_listener_failed", event=event)
