"""Advisory lock on a manifest's execution record.

Only one apply/destroy may run against a record at a time. The lock is a
record in the state store holding a token, the owner identity and an
expiry; an expired lock may be taken over.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from common import owner_identity
from errors import ConcurrentExecutionConflict
from manifest_opr.state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = 900.0


@dataclass
class LockInfo:
    """Lock record contents."""
    token: str
    owner: str
    acquired_at: float
    expires_at: float

    def expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> dict:
        return {
            'token': self.token,
            'owner': self.owner,
            'acquired_at': self.acquired_at,
            'expires_at': self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockInfo':
        return cls(
            token=data['token'],
            owner=data.get('owner', 'unknown'),
            acquired_at=float(data.get('acquired_at', 0)),
            expires_at=float(data.get('expires_at', 0)),
        )


class StateLock:
    """Single-writer lock for '<manifest>/lock'.

    Usable as a context manager:

        with StateLock(store, 'demo', ttl=600):
            ...
    """

    def __init__(
        self,
        store: StateStore,
        manifest_name: str,
        ttl: float = DEFAULT_TTL,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.manifest_name = manifest_name
        self.ttl = ttl
        self.owner = owner or owner_identity()
        self._clock = clock
        self._info: Optional[LockInfo] = None

    @property
    def key(self) -> str:
        return f'{self.manifest_name}/lock'

    @property
    def held(self) -> bool:
        return self._info is not None

    def current(self) -> Optional[LockInfo]:
        """Return the lock record, if any (held by anyone)."""
        data = self.store.read(self.key)
        return LockInfo.from_dict(data) if data else None

    def acquire(self) -> LockInfo:
        """Acquire the lock.

        Raises:
            ConcurrentExecutionConflict: If another owner holds an unexpired lock
        """
        now = self._clock()
        info = LockInfo(
            token=secrets.token_hex(16),
            owner=self.owner,
            acquired_at=now,
            expires_at=now + self.ttl,
        )
        if self.store.create_exclusive(self.key, info.to_dict()):
            self._info = info
            logger.debug(f"[lock] Acquired {self.key} as {self.owner}")
            return info

        existing = self.current()
        if existing is not None and not existing.expired(now):
            raise ConcurrentExecutionConflict(self.key, existing.owner, existing.expires_at)

        # Expired (or vanished between calls): take it over
        if existing is not None:
            logger.warning(f"[lock] Taking over expired lock on {self.key} held by {existing.owner}")
        self.store.delete(self.key)
        if not self.store.create_exclusive(self.key, info.to_dict()):
            winner = self.current()
            raise ConcurrentExecutionConflict(
                self.key,
                winner.owner if winner else 'unknown',
                winner.expires_at if winner else now,
            )
        self._info = info
        return info

    def release(self) -> None:
        """Release the lock if this instance still owns it."""
        if self._info is None:
            return
        existing = self.current()
        if existing is not None and existing.token == self._info.token:
            self.store.delete(self.key)
            logger.debug(f"[lock] Released {self.key}")
        else:
            logger.warning(f"[lock] Lock on {self.key} was taken over before release")
        self._info = None

    def force_release(self) -> Optional[LockInfo]:
        """Remove any lock record regardless of owner. Returns what was removed."""
        existing = self.current()
        if existing is not None:
            logger.warning(f"[lock] Force-releasing {self.key} held by {existing.owner}")
            self.store.delete(self.key)
        return existing

    def __enter__(self) -> 'StateLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
