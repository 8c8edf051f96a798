"""HTTP provider: REST client for a secrets/cloud provisioning backend.

Routes:
    PUT    /v1/resources/{kind}/{node_id}   body {"inputs": {...}} -> {"outputs": {...}}
    DELETE /v1/resources/{kind}/{node_id}
    POST   /v1/auth/credentials              body {"purpose": ..., "access_id": ...}
"""

import logging
import threading
from typing import Any, Optional

import requests
import urllib3

from common import Cancelled
from manifest_opr.rotation import CredentialMaterial
from providers.base import ProviderError

logger = logging.getLogger(__name__)

# Status codes worth retrying (throttling, transient server errors)
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class HttpProvider:
    """Provider backed by a REST API.

    Args:
        base_url: Backend URL (e.g., https://api.example.com)
        timeout: Per-request timeout in seconds
        verify_tls: Verify the backend TLS certificate
        session: Optional requests.Session (for connection reuse and tests)
    """
    name = 'http'

    def __init__(self, base_url: str, timeout: float = 30.0, verify_tls: bool = True,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = session or requests.Session()
        if not verify_tls:
            # Suppress SSL warnings for self-signed certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _headers(self, credential: Optional[CredentialMaterial]) -> dict[str, str]:
        headers = {'Accept': 'application/json'}
        if credential is not None:
            headers['X-Access-Id'] = credential.access_id
            headers['X-Access-Key'] = credential.access_key
        return headers

    def _request(self, method: str, path: str, credential: Optional[CredentialMaterial],
                 body: Optional[dict] = None,
                 cancel_event: Optional[threading.Event] = None) -> tuple[int, dict]:
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"{method} {path} cancelled")

        url = f'{self.base_url}{path}'
        try:
            resp = self.session.request(
                method,
                url,
                json=body,
                headers=self._headers(credential),
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"Cannot connect to {self.base_url}: {e}", retryable=True)
        except requests.exceptions.Timeout:
            raise ProviderError(f"Timeout after {self.timeout}s: {method} {path}", retryable=True)

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {'data': data}

        if resp.status_code >= 400 and resp.status_code != 404:
            detail = data.get('error') or resp.reason or 'request failed'
            raise ProviderError(
                f"{method} {path} returned HTTP {resp.status_code}: {detail}",
                retryable=resp.status_code in RETRYABLE_STATUS,
            )
        return resp.status_code, data

    def apply(self, kind: str, inputs: dict[str, Any], *, node_id: str,
              credential: Optional[CredentialMaterial] = None,
              cancel_event: Optional[threading.Event] = None) -> dict[str, Any]:
        path = f'/v1/resources/{kind}/{node_id}'
        status, data = self._request('PUT', path, credential, {'inputs': inputs}, cancel_event)
        if status == 404:
            raise ProviderError(f"PUT {path} returned HTTP 404: unknown resource kind '{kind}'")
        logger.debug(f"[http] Applied {kind}/{node_id} (HTTP {status})")
        outputs = data.get('outputs', data)
        return dict(outputs) if isinstance(outputs, dict) else {}

    def destroy(self, kind: str, outputs: dict[str, Any], *, node_id: str,
                credential: Optional[CredentialMaterial] = None,
                cancel_event: Optional[threading.Event] = None) -> None:
        path = f'/v1/resources/{kind}/{node_id}'
        status, _ = self._request('DELETE', path, credential, None, cancel_event)
        if status == 404:
            logger.debug(f"[http] {kind}/{node_id} already absent")

    def issue_credential(self, purpose: str, *,
                         credential: Optional[CredentialMaterial] = None,
                         auth_outputs: Optional[dict[str, Any]] = None) -> CredentialMaterial:
        body: dict[str, Any] = {'purpose': purpose}
        if auth_outputs and auth_outputs.get('access_id'):
            body['access_id'] = auth_outputs['access_id']
        status, data = self._request('POST', '/v1/auth/credentials', credential, body)
        if status == 404:
            raise ProviderError("POST /v1/auth/credentials returned HTTP 404")
        if not data.get('access_id') or not data.get('access_key'):
            raise ProviderError("Credential response missing access_id/access_key")
        return CredentialMaterial.from_dict(data, purpose=purpose)
