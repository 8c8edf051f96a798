"""Local provider: a file-backed simulated secrets and cloud backend.

Useful for demos, dry runs and tests. Resources are keyed by
'<kind>/<node_id>' so re-applying a node updates the same resource.
Secret material is stable across re-applies and only changes when a
credential is re-issued.
"""

import json
import logging
import secrets
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from common import Cancelled
from manifest_opr.rotation import CredentialMaterial
from providers.base import ProviderError

logger = logging.getLogger(__name__)

_NAMESPACE = uuid.UUID('6f1b8e52-5d0a-4c3e-9b8e-2f0c1d7a9e44')


class LocalProvider:
    """Simulated backend.

    Args:
        backend_file: JSON file persisting backend state (None = in memory)
        credential_ttl: Lifetime of issued credentials in seconds (None = no expiry)
    """
    name = 'local'

    def __init__(self, backend_file: Optional[Path] = None,
                 credential_ttl: Optional[float] = 3600.0):
        self.backend_file = Path(backend_file) if backend_file else None
        self.credential_ttl = credential_ttl
        self._mutex = threading.Lock()
        self._backend = self._load()

    def _load(self) -> dict:
        if self.backend_file is not None and self.backend_file.exists():
            with open(self.backend_file, encoding='utf-8') as f:
                data = json.load(f)
        else:
            data = {}
        data.setdefault('resources', {})
        data.setdefault('issued', [])
        return data

    def _save(self) -> None:
        if self.backend_file is None:
            return
        self.backend_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.backend_file, 'w', encoding='utf-8') as f:
            json.dump(self._backend, f, indent=2, sort_keys=True)

    @property
    def resources(self) -> dict[str, dict]:
        with self._mutex:
            return json.loads(json.dumps(self._backend['resources']))

    def apply(self, kind: str, inputs: dict[str, Any], *, node_id: str,
              credential: Optional[CredentialMaterial] = None,
              cancel_event: Optional[threading.Event] = None) -> dict[str, Any]:
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"apply of {node_id} cancelled")

        key = f'{kind}/{node_id}'
        with self._mutex:
            previous = self._backend['resources'].get(key)
            outputs = self._build_outputs(kind, key, inputs, previous)
            self._backend['resources'][key] = outputs
            self._save()

        logger.debug(f"[local] {'Updated' if previous else 'Created'} {key}")
        return dict(outputs)

    def destroy(self, kind: str, outputs: dict[str, Any], *, node_id: str,
                credential: Optional[CredentialMaterial] = None,
                cancel_event: Optional[threading.Event] = None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"destroy of {node_id} cancelled")

        key = f'{kind}/{node_id}'
        with self._mutex:
            removed = self._backend['resources'].pop(key, None)
            self._save()
        if removed is None:
            logger.debug(f"[local] {key} already absent")
        else:
            logger.debug(f"[local] Destroyed {key}")

    def issue_credential(self, purpose: str, *,
                         credential: Optional[CredentialMaterial] = None,
                         auth_outputs: Optional[dict[str, Any]] = None) -> CredentialMaterial:
        now = time.time()
        access_key = secrets.token_hex(20)

        with self._mutex:
            if auth_outputs and auth_outputs.get('access_id'):
                access_id = str(auth_outputs['access_id'])
                # Reset the auth method's key: the old key stops being current
                resource = self._find_auth_method(access_id)
                if resource is None:
                    raise ProviderError(f"Auth method with access id {access_id} not found")
                resource['access_key'] = access_key
                resource['key_reset_at'] = now
            else:
                access_id = f'p-{secrets.token_hex(6)}'

            material = CredentialMaterial(
                access_id=access_id,
                access_key=access_key,
                issued_at=now,
                expires_at=now + self.credential_ttl if self.credential_ttl else None,
                purpose=purpose,
            )
            self._backend['issued'].append({
                'access_id': access_id,
                'fingerprint': material.fingerprint,
                'purpose': purpose,
                'issued_at': now,
            })
            self._save()

        logger.debug(f"[local] Issued {purpose} credential {material.fingerprint}")
        return material

    def _find_auth_method(self, access_id: str) -> Optional[dict]:
        for key, resource in self._backend['resources'].items():
            if key.startswith('auth-method/') and resource.get('access_id') == access_id:
                return resource
        return None

    def _build_outputs(self, kind: str, key: str, inputs: dict[str, Any],
                       previous: Optional[dict]) -> dict[str, Any]:
        previous = previous or {}
        resource_id = str(uuid.uuid5(_NAMESPACE, key))
        outputs: dict[str, Any] = dict(inputs)
        outputs['id'] = resource_id

        if kind == 'auth-method':
            outputs['access_id'] = previous.get('access_id') or f'p-{resource_id[:12]}'
            outputs['access_key'] = previous.get('access_key') or secrets.token_hex(20)
            if 'key_reset_at' in previous:
                outputs['key_reset_at'] = previous['key_reset_at']
        elif kind == 'static-secret':
            version = previous.get('version', 0)
            if previous.get('value') != inputs.get('value'):
                version += 1
            outputs['version'] = version
        elif kind == 'dynamic-secret-producer':
            outputs['access_key_id'] = previous.get('access_key_id') or f'AKIA{resource_id[:16].upper().replace("-", "")}'
            outputs['secret_access_key'] = previous.get('secret_access_key') or secrets.token_hex(20)
        elif kind == 'cloud-resource':
            resource_type = str(inputs.get('type', 'resource'))
            outputs['id'] = f'{resource_type}-{resource_id[:8]}'
            outputs['arn'] = f'arn:local:{resource_type}:{resource_id}'

        return outputs
