#!/usr/bin/env python3
"""Tests for config.py - driver configuration and credentials.

Tests verify:
1. driver.yaml discovery (env var, working directory, defaults)
2. Settings loading with paths relative to the config file
3. Validation errors
4. Named credential loading and saving
"""

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from config import (
    CONFIG_ENV_VAR,
    ConfigError,
    DriverConfig,
    find_config_file,
    load_config,
    load_credential,
    save_credential,
    _parse_yaml,
)
from manifest_opr.rotation import CredentialMaterial


def _write_config(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


class TestFindConfigFile:
    """Test driver.yaml discovery."""

    def test_env_var_takes_precedence(self, tmp_path, monkeypatch):
        config_file = _write_config(tmp_path / 'custom.yaml', {})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(config_file))
        assert find_config_file() == config_file

    def test_env_var_missing_raises(self, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, '/nonexistent/driver.yaml')
        with pytest.raises(ConfigError, match='does not exist'):
            find_config_file()

    def test_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)
        _write_config(tmp_path / 'driver.yaml', {})
        assert find_config_file() == tmp_path / 'driver.yaml'

    def test_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)
        with patch('pathlib.Path.home', return_value=tmp_path / 'home'):
            assert find_config_file() is None


class TestLoadConfig:
    """Test settings loading."""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.chdir(tmp_path)
        with patch('pathlib.Path.home', return_value=tmp_path / 'home'):
            config = load_config()
        assert config.config_file is None
        assert config.parallelism == 4
        assert config.retry.attempts == 3
        assert config.provider.name == 'local'
        assert config.rotation.mode == 'provider'

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_config(str(tmp_path / 'missing.yaml'))

    def test_full_file(self, tmp_path):
        config_file = _write_config(tmp_path / 'driver.yaml', {
            'state_dir': 'states',
            'parallelism': 8,
            'retry': {'attempts': 5, 'base_delay': 0.1},
            'lock': {'ttl': 60},
            'provider': {'name': 'http', 'base_url': 'https://vault.local', 'verify_tls': False},
            'rotation': {'mode': 'file', 'consume_credential': 'app'},
            'credentials_file': '~/creds.yaml',
        })
        config = load_config(str(config_file))

        assert config.state_dir == tmp_path / 'states'
        assert config.parallelism == 8
        assert config.retry.attempts == 5
        assert config.retry.base_delay == 0.1
        assert config.retry.max_delay == 8.0
        assert config.lock_ttl == 60.0
        assert config.provider.base_url == 'https://vault.local'
        assert config.provider.verify_tls is False
        assert config.rotation.consume_credential == 'app'
        assert config.credentials_file == Path(os.path.expanduser('~/creds.yaml'))

    def test_backend_file_default_under_state_dir(self, tmp_path):
        config = DriverConfig(state_dir=tmp_path)
        assert config.backend_file == tmp_path / 'local-backend.json'

    def test_backend_file_relative_to_config(self, tmp_path):
        config_file = _write_config(tmp_path / 'driver.yaml', {
            'provider': {'name': 'local', 'backend_file': 'backend.json'},
        })
        assert DriverConfig(config_file=config_file).backend_file == tmp_path / 'backend.json'


class TestValidation:
    """Test configuration validation errors."""

    @pytest.mark.parametrize('data,message', [
        ({'parallelism': 0}, 'parallelism'),
        ({'retry': {'attempts': 0}}, 'retry.attempts'),
        ({'provider': {'name': 'ftp'}}, "Unknown provider 'ftp'"),
        ({'provider': {'name': 'http'}}, 'base_url is required'),
        ({'rotation': {'mode': 'telepathy'}}, "Unknown rotation mode"),
        ({'provider': {'name': 'local', 'verify_tls': 'false'}}, 'verify_tls must be true or false'),
        ({'provider': {'name': 'local', 'verify_tls': 0}}, 'verify_tls'),
    ])
    def test_invalid(self, tmp_path, data, message):
        config_file = _write_config(tmp_path / 'driver.yaml', data)
        with pytest.raises(ConfigError, match=message):
            DriverConfig(config_file=config_file)

    def test_invalid_yaml(self, tmp_path):
        bad = tmp_path / 'driver.yaml'
        bad.write_text('key: [unclosed')
        with pytest.raises(ConfigError, match='Invalid YAML'):
            _parse_yaml(bad)

    def test_non_dict_yaml(self, tmp_path):
        bad = tmp_path / 'driver.yaml'
        bad.write_text('- a\n- b\n')
        with pytest.raises(ConfigError, match='must be a YAML object'):
            _parse_yaml(bad)


class TestCredentials:
    """Test named credential loading and saving."""

    @pytest.fixture
    def config(self, tmp_path):
        return DriverConfig(state_dir=tmp_path, credentials_file=tmp_path / 'credentials.yaml')

    def test_load(self, config):
        config.credentials_file.write_text(yaml.safe_dump({
            'admin': {'access_id': 'root', 'access_key': 'secret', 'expires_at': 99},
        }))
        material = load_credential(config, 'admin')
        assert material.access_id == 'root'
        assert material.expires_at == 99.0
        assert material.purpose == 'admin'

    def test_not_configured(self, tmp_path):
        with pytest.raises(ConfigError, match='not configured'):
            load_credential(DriverConfig(state_dir=tmp_path), 'admin')

    def test_file_missing(self, config):
        with pytest.raises(ConfigError, match='not found'):
            load_credential(config, 'admin')

    def test_unknown_name_lists_available(self, config):
        config.credentials_file.write_text(yaml.safe_dump({
            'admin': {'access_id': 'root', 'access_key': 'secret'},
        }))
        with pytest.raises(ConfigError, match='Available: admin'):
            load_credential(config, 'consume')

    def test_missing_field(self, config):
        config.credentials_file.write_text(yaml.safe_dump({'admin': {'access_id': 'root'}}))
        with pytest.raises(ConfigError, match='access_key'):
            load_credential(config, 'admin')

    def test_save_then_load(self, config):
        material = CredentialMaterial(access_id='p-1', access_key='fresh', expires_at=500.0)
        path = save_credential(config, 'consume', material)

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        loaded = load_credential(config, 'consume', purpose='consume')
        assert loaded.fingerprint == material.fingerprint
        assert loaded.expires_at == 500.0

    def test_save_keeps_other_entries(self, config):
        config.credentials_file.write_text(yaml.safe_dump({
            'admin': {'access_id': 'root', 'access_key': 'secret'},
        }))
        save_credential(config, 'consume', CredentialMaterial(access_id='p-1', access_key='k'))
        assert load_credential(config, 'admin').access_id == 'root'

    def test_save_not_configured(self, tmp_path):
        with pytest.raises(ConfigError):
            save_credential(DriverConfig(state_dir=tmp_path), 'consume',
                            CredentialMaterial(access_id='a', access_key='b'))
