"""Credential rotation gate between the setup and consume phases.

Setup runs with administrative credentials. Before consume may start, a
distinct issuance step must produce new credential material whose
identity differs from anything issued or used during setup. Only
fingerprints are recorded; raw keys never reach the execution record.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from errors import CredentialExpired, StaleCredentialReuse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialMaterial:
    """Short-lived authentication value.

    Attributes:
        access_id: Public identifier (auth method access id, key id)
        access_key: Secret part
        issued_at: Issuance timestamp
        expires_at: Optional expiry timestamp
        purpose: What the material was issued for (setup, consume)
    """
    access_id: str
    access_key: str = field(repr=False)
    issued_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None
    purpose: str = ''

    @property
    def fingerprint(self) -> str:
        """Identity of the material (safe to persist and log)."""
        digest = hashlib.sha256(f'{self.access_id}:{self.access_key}'.encode('utf-8'))
        return digest.hexdigest()[:16]

    def expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def describe(self) -> dict:
        """Non-secret summary for output and records."""
        d: dict[str, Any] = {
            'access_id': self.access_id,
            'fingerprint': self.fingerprint,
            'issued_at': self.issued_at,
            'purpose': self.purpose,
        }
        if self.expires_at is not None:
            d['expires_at'] = self.expires_at
        return d

    @classmethod
    def from_dict(cls, data: dict, purpose: str = '') -> 'CredentialMaterial':
        return cls(
            access_id=str(data['access_id']),
            access_key=str(data['access_key']),
            issued_at=float(data.get('issued_at') or time.time()),
            expires_at=float(data['expires_at']) if data.get('expires_at') else None,
            purpose=data.get('purpose', purpose),
        )

    @classmethod
    def from_outputs(cls, outputs: dict, purpose: str = '') -> Optional['CredentialMaterial']:
        """Material carried in node outputs (access_id/access_key), if any."""
        if not outputs.get('access_id') or not outputs.get('access_key'):
            return None
        return cls(
            access_id=str(outputs['access_id']),
            access_key=str(outputs['access_key']),
            issued_at=float(outputs.get('issued_at') or time.time()),
            expires_at=float(outputs['expires_at']) if outputs.get('expires_at') else None,
            purpose=purpose,
        )


class CredentialRotationGate:
    """Policy check that consume never reuses setup material.

    This is a bookkeeping gate, not a cryptographic mechanism: it compares
    fingerprints of material seen during setup with material presented
    for consume.
    """

    def __init__(self, setup_fingerprints: Iterable[str] = (),
                 rotated_fingerprint: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self._setup: set[str] = set(setup_fingerprints)
        self.rotated_fingerprint = rotated_fingerprint
        self._clock = clock

    @property
    def setup_fingerprints(self) -> list[str]:
        return sorted(self._setup)

    def record_setup(self, material: CredentialMaterial) -> None:
        """Remember material issued or used during setup."""
        if material.fingerprint not in self._setup:
            logger.debug(f"[rotate] Recorded setup credential {material.fingerprint}")
        self._setup.add(material.fingerprint)

    def is_stale(self, material: CredentialMaterial) -> bool:
        return material.fingerprint in self._setup

    def assert_fresh(self, material: CredentialMaterial, phase: str = 'consume') -> None:
        """Fail fast if material was seen during setup or has expired.

        Raises:
            StaleCredentialReuse: Material was issued or used during setup
            CredentialExpired: Material is past its expiry
        """
        if self.is_stale(material):
            raise StaleCredentialReuse(material.fingerprint, phase)
        if material.expired(self._clock()):
            raise CredentialExpired(
                f"Credential {material.fingerprint} expired at {material.expires_at:.0f}"
            )

    def rotate(self, issuer: Callable[[], CredentialMaterial]) -> CredentialMaterial:
        """Obtain fresh material from issuer and check it.

        Raises:
            StaleCredentialReuse: Issuer returned material seen during setup
        """
        material = issuer()
        self.assert_fresh(material)
        self.rotated_fingerprint = material.fingerprint
        logger.info(f"[rotate] Issued consume credential {material.fingerprint} "
                    f"(access id {material.access_id})")
        return material
