"""Tests for CLI module (noun-action dispatch and verb handlers)."""

import json
import logging
from unittest.mock import patch

import pytest
import yaml

from cli import main
from conftest import TWO_PHASE_NODES
from manifest_opr.lock import StateLock
from manifest_opr.state import FileStateStore


@pytest.fixture(autouse=True)
def isolated_process_state():
    """Keep the runner's SIGINT handler and root log handlers."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    with patch('manifest_opr.cli._install_interrupt_handler'):
        yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def workspace(tmp_path):
    """driver.yaml, credentials and a two-phase manifest in tmp_path."""
    (tmp_path / 'credentials.yaml').write_text(yaml.safe_dump({
        'admin': {'access_id': 'admin', 'access_key': 'admin-key'},
    }))
    (tmp_path / 'driver.yaml').write_text(yaml.safe_dump({
        'state_dir': 'states',
        'retry': {'attempts': 1, 'base_delay': 0},
        'provider': {'name': 'local'},
        'credentials_file': 'credentials.yaml',
    }))
    (tmp_path / 'demo.yaml').write_text(yaml.safe_dump({
        'schema_version': 1,
        'name': 'demo',
        'nodes': TWO_PHASE_NODES,
    }))
    return tmp_path


def _args(workspace, *extra):
    return ['-M', str(workspace / 'demo.yaml'), '-c', str(workspace / 'driver.yaml'), *extra]


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 0
        assert 'Usage: secrets-iac-driver <noun> <action>' in capsys.readouterr().out

    def test_unknown_command(self, capsys):
        assert main(['frobnicate']) == 1
        assert "Unknown command 'frobnicate'" in capsys.readouterr().out

    def test_version(self, capsys):
        with patch('cli.get_version', return_value='v0.1.0'):
            assert main(['--version']) == 0
        assert capsys.readouterr().out.strip() == 'v0.1.0'

    def test_noun_without_action_lists_actions(self, capsys):
        assert main(['workflow']) == 1
        out = capsys.readouterr().out
        assert 'rotate' in out
        assert 'teardown' in out

    def test_unknown_action(self, capsys):
        assert main(['manifest', 'explode']) == 1
        assert "Unknown manifest action 'explode'" in capsys.readouterr().out

    def test_missing_manifest(self, capsys):
        assert main(['manifest', 'plan']) == 1
        assert '-M/--manifest-file' in capsys.readouterr().err


class TestValidate:
    """Tests for 'manifest validate'."""

    def test_valid(self, workspace, capsys):
        assert main(['manifest', 'validate', *_args(workspace)]) == 0
        assert "Manifest 'demo' is valid (4 nodes; phases: setup, consume)" in capsys.readouterr().out

    def test_json_output(self, workspace, capsys):
        assert main(['manifest', 'validate', *_args(workspace, '--json-output')]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['valid'] is True
        assert data['order'] == ['approle', 'reader', 'db_password', 'bucket']

    def test_cycle_invalid(self, capsys):
        manifest = json.dumps({
            'schema_version': 1,
            'name': 'loop',
            'nodes': [
                {'name': 'a', 'kind': 'generic', 'attributes': {'x': '${b.id}'}},
                {'name': 'b', 'kind': 'generic', 'attributes': {'x': '${a.id}'}},
            ],
        })
        assert main(['manifest', 'validate', '--manifest-json', manifest]) == 1
        assert 'Manifest is invalid' in capsys.readouterr().err


class TestManifestVerbs:
    """Tests for plan, apply and destroy."""

    def test_plan_json(self, workspace, capsys):
        assert main(['manifest', 'plan', *_args(workspace, '--json-output')]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['summary']['create'] == 4

    def test_plan_text(self, workspace, capsys):
        assert main(['manifest', 'plan', *_args(workspace)]) == 0
        assert 'Plan: 4 to create, 0 to update, 0 to delete, 0 unchanged' in capsys.readouterr().out

    def test_apply_refuses_consume_phase(self, workspace, capsys):
        assert main(['manifest', 'apply', *_args(workspace, '--credential', 'admin')]) == 1
        assert "workflow consume" in capsys.readouterr().err

    def test_apply_setup_then_plan(self, workspace, capsys):
        rc = main(['manifest', 'apply', *_args(workspace, '--phase', 'setup', '--credential', 'admin')])
        assert rc == 0
        capsys.readouterr()

        assert main(['manifest', 'plan', *_args(workspace, '--json-output')]) == 0
        summary = json.loads(capsys.readouterr().out)['summary']
        assert summary['noop'] == 2
        assert summary['create'] == 2

    def test_apply_json_redacts_sensitive_outputs(self, workspace, capsys):
        rc = main(['manifest', 'apply', *_args(workspace, '--phase', 'setup', '--json-output')])
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        approle = next(n for n in data['nodes'] if n['name'] == 'approle')
        assert approle['action'] == 'create'
        assert approle['outputs']['access_key'] == '(sensitive)'

    def test_apply_unknown_credential(self, workspace, capsys):
        rc = main(['manifest', 'apply', *_args(workspace, '--phase', 'setup', '--credential', 'nobody')])
        assert rc == 1
        assert "Credential 'nobody' not found" in capsys.readouterr().err

    def test_destroy_aborted_without_confirmation(self, workspace, capsys):
        main(['manifest', 'apply', *_args(workspace, '--phase', 'setup')])
        with patch('builtins.input', return_value='n'):
            assert main(['manifest', 'destroy', *_args(workspace)]) == 1
        assert 'Aborted.' in capsys.readouterr().out

    def test_destroy(self, workspace):
        main(['manifest', 'apply', *_args(workspace, '--phase', 'setup')])
        assert main(['manifest', 'destroy', *_args(workspace, '--yes')]) == 0
        store = FileStateStore(workspace / 'states')
        nodes = store.read('demo/execution')['nodes']
        assert {n['status'] for n in nodes.values()} == {'destroyed'}


class TestWorkflowVerbs:
    """Tests for the workflow noun."""

    def test_run_and_teardown(self, workspace, capsys):
        rc = main(['workflow', 'run', *_args(workspace, '--credential', 'admin',
                                              '--save-credential', '--json-output')])
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['workflow_status'] == 'consume_applied'
        assert 'access_key' not in data['credential']
        saved = yaml.safe_load((workspace / 'credentials.yaml').read_text())
        assert saved['consume']['access_id'] == data['credential']['access_id']

        # The saved material passes the gate on a re-run of consume
        assert main(['workflow', 'consume', *_args(workspace)]) == 0
        capsys.readouterr()

        assert main(['workflow', 'teardown', *_args(workspace, '--yes', '--credential', 'admin')]) == 0
        assert 'Workflow status: uninitialized' in capsys.readouterr().out

    def test_consume_with_setup_credential(self, workspace, capsys):
        assert main(['workflow', 'setup', *_args(workspace, '--credential', 'admin')]) == 0
        assert main(['workflow', 'rotate', *_args(workspace, '--credential', 'admin')]) == 0
        capsys.readouterr()

        assert main(['workflow', 'consume', *_args(workspace, '--credential', 'admin',
                                                  '--json-output')]) == 1
        out = capsys.readouterr().out
        assert json.loads(out)['error'] == 'StaleCredentialReuse'

    def test_consume_without_rotated_credential(self, workspace, capsys):
        assert main(['workflow', 'setup', *_args(workspace, '--credential', 'admin')]) == 0
        capsys.readouterr()
        assert main(['workflow', 'consume', *_args(workspace)]) == 1
        assert "Credential 'consume' not found" in capsys.readouterr().err

    def test_status(self, workspace, capsys):
        main(['workflow', 'setup', *_args(workspace)])
        capsys.readouterr()
        assert main(['workflow', 'status', *_args(workspace)]) == 0
        out = capsys.readouterr().out
        assert "Workflow 'demo': setup_applied" in out
        assert 'approle' in out


class TestLockVerbs:
    """Tests for the lock noun."""

    def test_status_not_locked(self, workspace, capsys):
        assert main(['lock', 'status', *_args(workspace)]) == 0
        assert "Manifest 'demo' is not locked" in capsys.readouterr().out

    def test_conflict_then_release(self, workspace, capsys):
        store = FileStateStore(workspace / 'states')
        StateLock(store, 'demo', owner='someone-else').acquire()

        assert main(['manifest', 'apply', *_args(workspace, '--phase', 'setup')]) == 1
        assert 'someone-else' in capsys.readouterr().err

        assert main(['lock', 'status', *_args(workspace, '--json-output')]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['locked'] is True
        assert data['owner'] == 'someone-else'
        assert 'token' not in data

        assert main(['lock', 'release', *_args(workspace, '--yes')]) == 0
        assert main(['manifest', 'apply', *_args(workspace, '--phase', 'setup')]) == 0
