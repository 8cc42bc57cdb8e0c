"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

import structlog

from .errors import MailboxConnectionError
from .models import AccountCredentials

logger = structlog.get_logger()

_UID_RE = re.compile(rb"UID (\d+)")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")


@dataclass
class FetchedMessage:
    """Raw message data fetched from IMAP."""

    uid: int
    raw_bytes: bytes
    flags: list[str] = field(default_factory=list)
    internal_date: datetime | None = None

    @property
    def seen(self) -> bool:
        return "\\Seen" in self.flags


class MailboxClient(Protocol):
    """Mailbox access capability used by the connection manager and sync engine."""

    @property
    def supports_idle(self) -> bool: ...

    async def connect(self) -> None: ...

    async def select(self, folder: str, *, readonly: bool = False) -> int: ...

    async def search(self, criteria: str) -> list[int]: ...

    async def fetch(self, uids: list[int]) -> list[FetchedMessage]: ...

    async def wait_for_new_mail(self, timeout: float) -> int: ...

    async def disconnect(self) -> None: ...


class AsyncImapClient:
    """Async-friendly IMAP client for one account.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  IDLE runs
    on a single-thread executor owned by the client, so a long IDLE never
    holds a thread of the shared default pool.  Every imaplib / socket
    failure surfaces as :class:`MailboxConnectionError`.
    """

    def __init__(self, credentials: AccountCredentials) -> None:
        self._credentials = credentials
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._exists: int = 0
        self._idling = False
        self._idle_executor: ThreadPoolExecutor | None = None

    @property
    def supports_idle(self) -> bool:
        """True when both the server advertises IDLE and imaplib can issue it."""
        if self._conn is None:
            return False
        return "IDLE" in self._conn.capabilities and hasattr(self._conn, "idle")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket and log in."""
        await self._call(self._connect_sync)
        logger.info(
            "imap_connected",
            host=self._credentials.host,
            username=self._credentials.username,
            idle=self.supports_idle,
        )

    def _connect_sync(self) -> None:
        if self._credentials.use_ssl:
            self._conn = imaplib.IMAP4_SSL(self._credentials.host, self._credentials.port)
        else:
            self._conn = imaplib.IMAP4(self._credentials.host, self._credentials.port)
        self._conn.login(
            self._credentials.username,
            self._credentials.password.get_secret_value(),
        )

    async def select(self, folder: str, *, readonly: bool = False) -> int:
        """Select *folder*; returns the current message count."""
        conn = self._require_conn()
        status, data = await self._call(conn.select, folder, readonly)
        if status != "OK":
            raise MailboxConnectionError(f"cannot open {folder}: {data!r}")
        self._exists = int(data[0] or 0)
        return self._exists

    async def disconnect(self) -> None:
        """Close mailbox and logout.  Safe to call when not connected.

        When an IDLE thread is still blocked on the socket (the waiting
        coroutine was cancelled), the socket is shut down instead, which
        unblocks that thread; no second thread ever talks to the session.
        """
        conn, self._conn = self._conn, None
        executor, self._idle_executor = self._idle_executor, None
        if conn is not None:
            if self._idling:
                await asyncio.to_thread(_shutdown_quietly, conn)
            else:
                await asyncio.to_thread(self._logout_sync, conn)
            logger.info("imap_disconnected", host=self._credentials.host)
        if executor is not None:
            executor.shutdown(wait=False)

    @staticmethod
    def _logout_sync(conn: imaplib.IMAP4) -> None:
        try:
            conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def search(self, criteria: str) -> list[int]:
        """UID SEARCH; returns UIDs in ascending order."""
        conn = self._require_conn()
        status, data = await self._call(conn.uid, "SEARCH", None, criteria)
        if status != "OK":
            raise MailboxConnectionError(f"search failed: {data!r}")
        if not data or not data[0]:
            return []
        return [int(uid) for uid in data[0].split()]

    async def fetch(self, uids: list[int]) -> list[FetchedMessage]:
        """Fetch raw bytes, flags and arrival time without setting ``\\Seen``."""
        if not uids:
            return []
        self._require_conn()
        return await self._call(self._fetch_sync, uids)

    def _fetch_sync(self, uids: list[int]) -> list[FetchedMessage]:
        assert self._conn is not None
        results: list[FetchedMessage] = []
        for uid in uids:
            status, msg_data = self._conn.uid("FETCH", str(uid), "(UID FLAGS INTERNALDATE BODY.PEEK[])")
            if status != "OK" or not msg_data:
                continue
            for item in msg_data:
                if not isinstance(item, tuple):
                    continue
                header, raw_bytes = item[0], item[1]
                results.append(
                    FetchedMessage(
                        uid=_parse_uid(header, default=uid),
                        raw_bytes=raw_bytes,
                        flags=_parse_flags(header),
                        internal_date=_parse_internal_date(header),
                    )
                )
        logger.debug("imap_fetch_complete", requested=len(uids), fetched=len(results))
        return results

    # ------------------------------------------------------------------
    # New-mail notification
    # ------------------------------------------------------------------

    async def wait_for_new_mail(self, timeout: float) -> int:
        """Block until new mail arrives or *timeout* elapses.

        Uses IDLE when available, otherwise sleeps *timeout* and polls
        with NOOP.  Returns the number of newly arrived messages (0 on
        timeout).
        """
        self._require_conn()
        if self.supports_idle:
            if self._idle_executor is None:
                self._idle_executor = ThreadPoolExecutor(
                    max_workers=1,
                    thread_name_prefix=f"imap-idle-{self._credentials.username}",
                )
            # Cleared by the IDLE thread itself once it returns.
            self._idling = True
            return await self._call(self._idle_sync, timeout, executor=self._idle_executor)
        await asyncio.sleep(timeout)
        return await self._call(self._poll_sync)

    def _idle_sync(self, timeout: float) -> int:
        try:
            conn = self._conn
            if conn is None:
                return 0
            with conn.idle(duration=timeout) as idler:
                for response_type, data in idler:
                    if response_type == "EXISTS":
                        return self._record_exists(data)
            return 0
        finally:
            self._idling = False

    def _poll_sync(self) -> int:
        assert self._conn is not None
        status, _ = self._conn.noop()
        if status != "OK":
            raise MailboxConnectionError("NOOP rejected")
        _, data = self._conn.response("EXISTS")
        return self._record_exists(data)

    def _record_exists(self, data: list) -> int:
        counts = [int(value) for value in data if value]
        if not counts:
            return 0
        current = counts[-1]
        new = max(0, current - self._exists)
        self._exists = current
        return new

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_conn(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise MailboxConnectionError("not connected")
        return self._conn

    async def _call(self, fn, *args, executor: ThreadPoolExecutor | None = None):
        try:
            if executor is None:
                return await asyncio.to_thread(fn, *args)
            return await asyncio.get_running_loop().run_in_executor(executor, fn, *args)
        except (imaplib.IMAP4.error, OSError, EOFError) as exc:
            raise MailboxConnectionError(str(exc) or type(exc).__name__) from exc


def _shutdown_quietly(conn: imaplib.IMAP4) -> None:
    try:
        conn.shutdown()
    except OSError:
        pass


def _parse_uid(header: bytes, *, default: int) -> int:
    match = _UID_RE.search(header)
    return int(match.group(1)) if match else default


def _parse_flags(header: bytes) -> list[str]:
    match = _FLAGS_RE.search(header)
    if not match:
        return []
    return [flag.decode() for flag in match.group(1).split()]


def _parse_internal_date(header: bytes) -> datetime | None:
    parsed = imaplib.Internaldate2tuple(header)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), UTC)
