"""
Reference-counted connection leases.

A :class:`ConnectionLeaseManager` hands out at most one
:class:`LeasedConnection` per logical execution context (a thread, or a
:mod:`contextvars` context copy). Acquiring again in the same context, or
passing an existing lease explicitly, bumps the lease depth instead of
checking out a second connection, so a post hook can run further statements
on the connection its transaction already holds. The physical connection goes
back to the pool when the depth returns to zero, or is discarded at once when
released with an error.

Use :meth:`ConnectionLeaseManager.lease` to get the pairing for free::

    with manager.lease() as lease:
        rows = fetch_rows(lease.connection, "SELECT 1")
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from pglink.db_util import DbUtil
from pglink.errors import InvalidArgumentError

logger = logging.getLogger("pglink.lease")


class LeasedConnection:
    """A pooled connection plus its reuse depth and transaction state."""

    def __init__(self, connection, manager: "ConnectionLeaseManager"):
        self.connection = connection
        self.manager = manager
        self.depth = 0
        # preserved transactions keep one extra level each until committed
        self.held = 0
        # transaction calls currently running on this lease
        self.active_calls = 0
        self.transaction_open = False
        self.broken = False

    @property
    def released(self) -> bool:
        return self.depth == 0

    def hold(self) -> None:
        """Keep the lease checked out past the current scope."""
        self.depth += 1
        self.held += 1

    def __repr__(self) -> str:
        return (
            f"<LeasedConnection depth={self.depth} held={self.held} "
            f"transaction_open={self.transaction_open} broken={self.broken}>"
        )


class ConnectionLeaseManager:
    """Leases pooled connections from a :class:`~pglink.db_util.DbUtil`."""

    def __init__(self, db: DbUtil):
        self.db = db
        self._current: ContextVar[Optional[LeasedConnection]] = ContextVar(
            f"pglink_lease_{id(self)}", default=None
        )
        self._lock = threading.Lock()
        self._checked_out = 0

    @property
    def checked_out(self) -> int:
        """Number of physical connections currently checked out."""
        return self._checked_out

    def current(self) -> Optional[LeasedConnection]:
        """The live lease of the calling context, if any."""
        lease = self._current.get()
        if lease is None or lease.released:
            return None
        return lease

    def acquire(self, existing: LeasedConnection = None) -> LeasedConnection:
        """
        Reuse ``existing`` or the context's lease, else check a connection out.
        """
        lease = existing if existing is not None else self.current()
        if lease is not None:
            if lease.manager is not self:
                raise InvalidArgumentError("client was leased from a different pool")
            if lease.released:
                raise InvalidArgumentError("client has already been released")
            lease.depth += 1
            return lease

        connection = self.db.getconn()
        lease = LeasedConnection(connection, self)
        lease.depth = 1
        with self._lock:
            self._checked_out += 1
        self._current.set(lease)
        return lease

    def release(self, lease: LeasedConnection, error: BaseException = None) -> None:
        """
        Drop one level of ``lease``. With ``error`` the connection is
        discarded immediately, whatever the depth.
        """
        if lease.released:
            raise InvalidArgumentError("lease released more times than it was acquired")
        if error is not None:
            logger.error("DB: Discarding connection after error: %s", error)
            lease.depth = 0
            self._return(lease, close=True)
            return
        lease.depth -= 1
        if lease.depth == 0:
            self._return(lease, close=False)

    def release_holds(self, lease: LeasedConnection) -> None:
        """Release every level kept by :meth:`LeasedConnection.hold`."""
        while lease.held > 0 and not lease.released:
            lease.held -= 1
            self.release(lease)

    def _return(self, lease: LeasedConnection, close: bool) -> None:
        lease.held = 0
        lease.transaction_open = False
        try:
            self.db.putconn(lease.connection, close=close)
        finally:
            with self._lock:
                self._checked_out -= 1
            if self._current.get() is lease:
                self._current.set(None)

    @contextmanager
    def lease(self, existing: LeasedConnection = None) -> Iterator[LeasedConnection]:
        """
        Scoped :meth:`acquire` / :meth:`release`. A lease marked ``broken``
        while in use is discarded on exit.
        """
        lease = self.acquire(existing)
        try:
            yield lease
        except BaseException as error:
            if not lease.released:
                self.release(lease, error if lease.broken else None)
            raise
        else:
            if lease.broken:
                self.release(lease, RuntimeError("lease marked broken"))
            elif not lease.released:
                self.release(lease)
