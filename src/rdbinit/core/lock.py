"""Advisory per-database initialization lock.

A lock is a marker file named `<prefix><key>` in a shared directory. Its
presence means some process holds (or held, until the lease expires) the
right to initialize `key`. Each marker carries a lease: owner id, fencing
token and expiry. An expired marker may be taken over by another process.

Check-and-set on the marker happens while holding an exclusive OS lock on a
sidecar guard file, so two processes can never both create or take over the
marker. The fencing token is a per-key counter persisted next to the marker;
it increases on every acquisition.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterator

from rdbinit.core.config import DEFAULT_LOCK_PREFIX
from rdbinit.core.errors import LockCancelled, LockFailure, LockTimeout

IS_WINDOWS = os.name == "nt"
if not IS_WINDOWS:
    import fcntl
else:
    import msvcrt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """
    Ownership record stored in a lock marker.

    Attributes:
        db: Lock key (the database name).
        owner_id: Identity of the holder (host, pid and a random suffix).
        token: Fencing token; strictly increasing per key.
        acquired_at: Epoch seconds of the acquisition.
        expires_at: Epoch seconds after which the marker may be taken over.
    """

    db: str
    owner_id: str
    token: int
    acquired_at: float
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at

    @classmethod
    def from_json(cls, raw: str) -> "Lease":
        data = json.loads(raw)
        return cls(
            db=str(data["db"]),
            owner_id=str(data["owner_id"]),
            token=int(data["token"]),
            acquired_at=float(data["acquired_at"]),
            expires_at=float(data["expires_at"]),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))


def default_owner_id() -> str:
    host = os.uname().nodename if hasattr(os, "uname") else os.getenv("COMPUTERNAME", "host")
    return f"{host}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def marker_path(key: str, *, lock_dir: str | None = None, prefix: str = DEFAULT_LOCK_PREFIX) -> Path:
    """Return the marker file path for a lock key."""
    return Path(lock_dir or tempfile.gettempdir()) / f"{prefix}{key}"


def _read_lease(path: Path) -> Lease | None:
    """
    Return the lease stored at `path`, or None when there is no marker.

    A marker that exists but cannot be parsed (for example one written by an
    older plain-text protocol) is reported as an already expired lease so it
    can be taken over.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return Lease.from_json(raw)
    except (ValueError, KeyError, TypeError):
        return Lease(db=raw.strip(), owner_id="", token=0, acquired_at=0.0, expires_at=0.0)


def read_marker(key: str, *, lock_dir: str | None = None, prefix: str = DEFAULT_LOCK_PREFIX) -> Lease | None:
    """Return the current lease for `key`, or None if the lock is free."""
    return _read_lease(marker_path(key, lock_dir=lock_dir, prefix=prefix))


@contextmanager
def _guard(path: Path) -> Iterator[None]:
    """Hold an exclusive OS lock on the sidecar guard file of `path`."""
    guard_path = path.with_name(path.name + ".guard")
    with open(guard_path, "a+") as fh:
        if IS_WINDOWS:
            fh.seek(0)
            while True:
                try:
                    msvcrt.locking(fh.fileno(), msvcrt.LK_LOCK, 1)
                    break
                except OSError:
                    continue
            try:
                yield
            finally:
                fh.seek(0)
                msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
        else:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _next_token(path: Path) -> int:
    fence = path.with_name(path.name + ".fence")
    try:
        current = int(fence.read_text(encoding="utf-8").strip() or 0)
    except FileNotFoundError:
        current = 0
    except ValueError:
        current = 0
    token = current + 1
    fence.write_text(str(token), encoding="utf-8")
    return token


def _write_marker(path: Path, lease: Lease, *, exclusive: bool) -> None:
    if exclusive:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(lease.to_json())
        return
    tmp = path.with_name(f"{path.name}.{lease.owner_id.replace(':', '_')}.tmp")
    tmp.write_text(lease.to_json(), encoding="utf-8")
    os.replace(tmp, path)


def force_release(key: str, *, lock_dir: str | None = None, prefix: str = DEFAULT_LOCK_PREFIX) -> Lease | None:
    """
    Remove the marker for `key` regardless of its owner.

    Intended for operators cleaning up after a crashed holder. Returns the
    lease that was removed, or None if the lock was already free.
    """
    path = marker_path(key, lock_dir=lock_dir, prefix=prefix)
    if not path.parent.exists():
        return None
    with _guard(path):
        lease = _read_lease(path)
        try:
            path.unlink()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LockFailure(f"Cannot remove lock marker {path}: {exc}") from exc
    logger.warning("Force-released lock %s held by %s", key, lease.owner_id if lease else "?")
    return lease


class SchemaLock:
    """Lease-based advisory lock for initializing one database."""

    def __init__(
        self,
        key: str,
        *,
        lock_dir: str | None = None,
        prefix: str = DEFAULT_LOCK_PREFIX,
        poll_interval: float = 0.2,
        lease_ttl: float = 600.0,
        owner_id: str | None = None,
    ) -> None:
        if not key:
            raise ValueError("Lock key must not be empty")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if lease_ttl <= 0:
            raise ValueError("lease_ttl must be > 0")
        self.key = key
        self.path = marker_path(key, lock_dir=lock_dir, prefix=prefix)
        self.poll_interval = poll_interval
        self.lease_ttl = lease_ttl
        self.owner_id = owner_id or default_owner_id()
        self._lease: Lease | None = None
        self._mutex = threading.Lock()

    @property
    def lease(self) -> Lease | None:
        return self._lease

    def _try_acquire(self) -> Lease | None:
        with _guard(self.path):
            current = _read_lease(self.path)
            if current is not None and not current.expired:
                return None

            now = time.time()
            lease = Lease(
                db=self.key,
                owner_id=self.owner_id,
                token=_next_token(self.path),
                acquired_at=now,
                expires_at=now + self.lease_ttl,
            )
            if current is None:
                _write_marker(self.path, lease, exclusive=True)
            else:
                logger.warning(
                    "Taking over expired lock %s from %s (token %d)",
                    self.key,
                    current.owner_id or "unknown owner",
                    current.token,
                )
                _write_marker(self.path, lease, exclusive=False)
            return lease

    def acquire(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Lease:
        """
        Block until the lock is held and return the new lease.

        Args:
            timeout: Give up after this many seconds (None waits forever).
            cancel: Event that aborts the wait when set.

        Raises:
            LockTimeout: The lock was not acquired within `timeout`.
            LockCancelled: `cancel` was set while waiting.
            LockFailure: The lock is already held by this object or the
                marker could not be written.
        """
        with self._mutex:
            if self._lease is not None:
                raise LockFailure(f"Lock '{self.key}' is already held by this process (not reentrant)")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = None if timeout is None else time.monotonic() + timeout
        waited = False

        while True:
            if cancel is not None and cancel.is_set():
                raise LockCancelled(self.key)
            try:
                lease = self._try_acquire()
            except FileExistsError:
                lease = None
            except OSError as exc:
                raise LockFailure(f"Cannot set lock for '{self.key}': {exc}") from exc

            if lease is not None:
                with self._mutex:
                    self._lease = lease
                logger.debug("Acquired lock %s (token %d)", self.key, lease.token)
                return lease

            if not waited:
                logger.info("Lock %s is held by another initializer, waiting", self.key)
                waited = True
            if deadline is not None and time.monotonic() >= deadline:
                raise LockTimeout(self.key, timeout or 0.0)

            wait = self.poll_interval
            if deadline is not None:
                wait = max(min(wait, deadline - time.monotonic()), 0.0)
            if cancel is not None:
                cancel.wait(wait)
            else:
                time.sleep(wait)

    def assert_held(self) -> Lease:
        """
        Verify that the marker still carries this holder's lease.

        Raises:
            LockFailure: The lock is not held, was taken over, or expired.
        """
        lease = self._lease
        if lease is None:
            raise LockFailure(f"Lock '{self.key}' is not held")
        current = _read_lease(self.path)
        if current is None or current.owner_id != lease.owner_id or current.token != lease.token:
            raise LockFailure(f"Lock '{self.key}' was lost (fencing token {lease.token} is stale)")
        if current.expired:
            raise LockFailure(f"Lease on lock '{self.key}' expired")
        return current

    def renew(self) -> Lease:
        """Extend the held lease by `lease_ttl` seconds and return it."""
        with _guard(self.path):
            current = self.assert_held()
            lease = Lease(
                db=current.db,
                owner_id=current.owner_id,
                token=current.token,
                acquired_at=current.acquired_at,
                expires_at=time.time() + self.lease_ttl,
            )
            try:
                _write_marker(self.path, lease, exclusive=False)
            except OSError as exc:
                raise LockFailure(f"Cannot renew lock for '{self.key}': {exc}") from exc
        with self._mutex:
            self._lease = lease
        return lease

    def release(self) -> None:
        """
        Remove the marker if this holder owns it.

        Releasing a lock whose marker is already gone is a no-op.

        Raises:
            LockFailure: The marker belongs to another owner, or it could not
                be removed.
        """
        lease = self._lease
        if not self.path.parent.exists():
            self._lease = None
            return
        with _guard(self.path):
            current = _read_lease(self.path)
            if current is None:
                self._lease = None
                return
            if lease is None or current.owner_id != lease.owner_id:
                raise LockFailure(
                    f"Cannot unset lock of '{self.key}': held by {current.owner_id or 'unknown owner'}"
                )
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise LockFailure(f"Cannot unset lock of '{self.key}': {exc}") from exc
        self._lease = None
        logger.debug("Released lock %s", self.key)

    def __enter__(self) -> Lease:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
