"""Tests for the providers package (local and HTTP providers)."""

import json
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from common import Cancelled
from config import ConfigError, DriverConfig, ProviderSettings
from manifest_opr.rotation import CredentialMaterial
from providers import get_provider, is_retryable
from providers.base import Provider, ProviderError
from providers.http import HttpProvider
from providers.local import LocalProvider


class TestLocalProvider:
    """Tests for the simulated backend."""

    def test_outputs_echo_inputs_with_stable_id(self):
        provider = LocalProvider()
        first = provider.apply('generic', {'value': 1}, node_id='a')
        second = provider.apply('generic', {'value': 2}, node_id='a')
        assert first['value'] == 1
        assert second['value'] == 2
        assert first['id'] == second['id']
        assert len(provider.resources) == 1

    def test_auth_method_key_stable_across_reapply(self):
        provider = LocalProvider()
        first = provider.apply('auth-method', {'name': 'app'}, node_id='approle')
        second = provider.apply('auth-method', {'name': 'app'}, node_id='approle')
        assert first['access_id'] == second['access_id']
        assert first['access_key'] == second['access_key']

    def test_static_secret_version_bumps_on_value_change(self):
        provider = LocalProvider()
        assert provider.apply('static-secret', {'path': 'p', 'value': 'x'}, node_id='s')['version'] == 1
        assert provider.apply('static-secret', {'path': 'p', 'value': 'x'}, node_id='s')['version'] == 1
        assert provider.apply('static-secret', {'path': 'p', 'value': 'y'}, node_id='s')['version'] == 2

    def test_cloud_resource_outputs(self):
        outputs = LocalProvider().apply('cloud-resource', {'type': 's3-bucket'}, node_id='b')
        assert outputs['id'].startswith('s3-bucket-')
        assert outputs['arn'].startswith('arn:local:s3-bucket:')

    def test_destroy_absent_succeeds(self):
        provider = LocalProvider()
        provider.destroy('generic', {}, node_id='missing')
        provider.apply('generic', {}, node_id='a')
        provider.destroy('generic', {}, node_id='a')
        provider.destroy('generic', {}, node_id='a')
        assert provider.resources == {}

    def test_cancelled(self):
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            LocalProvider().apply('generic', {}, node_id='a', cancel_event=event)

    def test_issue_credential_fresh_identity(self):
        provider = LocalProvider(credential_ttl=60)
        one = provider.issue_credential('consume')
        two = provider.issue_credential('consume')
        assert one.fingerprint != two.fingerprint
        assert one.expires_at == pytest.approx(one.issued_at + 60)

    def test_issue_credential_resets_auth_method_key(self):
        provider = LocalProvider()
        outputs = provider.apply('auth-method', {'name': 'app'}, node_id='approle')
        material = provider.issue_credential('consume', auth_outputs=outputs)
        assert material.access_id == outputs['access_id']
        assert material.access_key != outputs['access_key']

        reapplied = provider.apply('auth-method', {'name': 'app'}, node_id='approle')
        assert reapplied['access_key'] == material.access_key

    def test_issue_credential_unknown_auth_method(self):
        with pytest.raises(ProviderError, match='not found'):
            LocalProvider().issue_credential('consume', auth_outputs={'access_id': 'nope'})

    def test_backend_file_persists(self, tmp_path):
        backend = tmp_path / 'backend.json'
        LocalProvider(backend_file=backend).apply('generic', {'v': 1}, node_id='a')
        assert 'generic/a' in json.loads(backend.read_text())['resources']
        assert 'generic/a' in LocalProvider(backend_file=backend).resources

    def test_implements_protocol(self):
        assert isinstance(LocalProvider(), Provider)


def _response(status, payload=None, reason=''):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = reason
    resp.content = b'{}' if payload is not None else b''
    resp.json.return_value = payload if payload is not None else {}
    return resp


class TestHttpProvider:
    """Tests for the REST provider (requests mocked)."""

    @pytest.fixture
    def session(self):
        return MagicMock(spec=requests.Session)

    @pytest.fixture
    def provider(self, session):
        return HttpProvider('https://backend.local/', timeout=5, session=session)

    def test_apply_puts_inputs(self, provider, session):
        session.request.return_value = _response(200, {'outputs': {'id': 'x1'}})
        credential = CredentialMaterial(access_id='admin', access_key='k')

        outputs = provider.apply('role', {'name': 'r'}, node_id='reader', credential=credential)

        assert outputs == {'id': 'x1'}
        args, kwargs = session.request.call_args
        assert args == ('PUT', 'https://backend.local/v1/resources/role/reader')
        assert kwargs['json'] == {'inputs': {'name': 'r'}}
        assert kwargs['headers']['X-Access-Id'] == 'admin'
        assert kwargs['headers']['X-Access-Key'] == 'k'
        assert kwargs['timeout'] == 5

    def test_no_credential_headers_without_credential(self, provider, session):
        session.request.return_value = _response(200, {'id': 'x'})
        provider.apply('generic', {}, node_id='a')
        headers = session.request.call_args.kwargs['headers']
        assert 'X-Access-Key' not in headers

    def test_server_error_retryable(self, provider, session):
        session.request.return_value = _response(503, {'error': 'unavailable'})
        with pytest.raises(ProviderError, match='HTTP 503: unavailable') as exc:
            provider.apply('generic', {}, node_id='a')
        assert is_retryable(exc.value)

    def test_client_error_not_retryable(self, provider, session):
        session.request.return_value = _response(400, reason='Bad Request')
        with pytest.raises(ProviderError, match='Bad Request') as exc:
            provider.apply('generic', {}, node_id='a')
        assert not is_retryable(exc.value)

    def test_connection_error_retryable(self, provider, session):
        session.request.side_effect = requests.exceptions.ConnectionError('refused')
        with pytest.raises(ProviderError, match='Cannot connect') as exc:
            provider.apply('generic', {}, node_id='a')
        assert exc.value.retryable

    def test_timeout_retryable(self, provider, session):
        session.request.side_effect = requests.exceptions.Timeout()
        with pytest.raises(ProviderError, match='Timeout') as exc:
            provider.destroy('generic', {}, node_id='a')
        assert exc.value.retryable

    def test_destroy_absent_succeeds(self, provider, session):
        session.request.return_value = _response(404)
        provider.destroy('generic', {'id': 'x'}, node_id='a')
        assert session.request.call_args.args[0] == 'DELETE'

    def test_apply_404_fails(self, provider, session):
        session.request.return_value = _response(404)
        with pytest.raises(ProviderError, match='unknown resource kind'):
            provider.apply('bogus', {}, node_id='a')

    def test_issue_credential(self, provider, session):
        session.request.return_value = _response(200, {'access_id': 'p-1', 'access_key': 'new'})
        material = provider.issue_credential('consume', auth_outputs={'access_id': 'p-1'})
        assert material.access_id == 'p-1'
        assert material.purpose == 'consume'
        assert session.request.call_args.kwargs['json'] == {'purpose': 'consume', 'access_id': 'p-1'}

    def test_issue_credential_incomplete_response(self, provider, session):
        session.request.return_value = _response(200, {'access_id': 'p-1'})
        with pytest.raises(ProviderError, match='missing'):
            provider.issue_credential('consume')

    def test_cancelled_before_request(self, provider, session):
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            provider.apply('generic', {}, node_id='a', cancel_event=event)
        session.request.assert_not_called()

    def test_insecure_tls_disables_warnings(self, session):
        with patch('urllib3.disable_warnings') as mock_disable:
            HttpProvider('https://backend.local', verify_tls=False, session=session)
        mock_disable.assert_called_once()


class TestGetProvider:
    """Tests for provider selection from config."""

    def test_local(self, tmp_path):
        config = DriverConfig(state_dir=tmp_path)
        assert isinstance(get_provider(config), LocalProvider)

    def test_http(self):
        config = DriverConfig(provider=ProviderSettings(name='http', base_url='https://b.local'))
        provider = get_provider(config)
        assert isinstance(provider, HttpProvider)
        assert provider.base_url == 'https://b.local'

    def test_unknown(self):
        config = DriverConfig()
        config.provider = ProviderSettings(name='carrier-pigeon')
        with pytest.raises(ConfigError, match='Unknown provider'):
            get_provider(config)
