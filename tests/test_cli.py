#!/usr/bin/env python3
"""Tests for cli.py and stack_opr/cli.py - verb dispatch and handlers.

Tests verify:
1. Top-level usage, --version and unknown verbs
2. validate/plan/apply/destroy/outputs/unlock end to end against the
   local control-plane backend
3. Exit codes (plan returns 2 when changes are pending)
4. Errors surface as one-line "Error: ..." messages with exit code 1
"""

import json
import re
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from cli import VERB_COMMANDS, main
from stack_opr.state import StackState, StateLock


@pytest.fixture
def workspace(tmp_path, site_template):
    """Template file, driver config and state dir for CLI runs."""
    template_path = tmp_path / 'site.json'
    template_path.write_text(json.dumps(site_template))
    config_path = tmp_path / 'driver.yaml'
    config_path.write_text("retry:\n  max_attempts: 2\n  base_delay: 0\n  max_delay: 0\n")
    state_dir = tmp_path / 'states'
    return {
        'template': template_path,
        'config': config_path,
        'state_dir': state_dir,
    }


def _run(verb, workspace, *extra):
    argv = [verb, '--config', str(workspace['config']), '--state-dir', str(workspace['state_dir'])]
    return main(argv + list(extra))


def _apply(workspace, *extra):
    return _run('apply', workspace, '-T', str(workspace['template']), '--skip-preflight', *extra)


class TestMain:
    """Test top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: stack-driver <verb> [options]' in out
        for verb in VERB_COMMANDS:
            assert f'  {verb}' in out

    def test_help(self, capsys):
        assert main(['--help']) == 0
        assert 'Commands:' in capsys.readouterr().out

    @patch('cli.get_version', return_value='v1.2.0')
    def test_version(self, _mock_version, capsys):
        assert main(['--version']) == 0
        assert capsys.readouterr().out.strip() == 'stack-driver v1.2.0'

    def test_unknown_verb(self, capsys):
        assert main(['frobnicate']) == 1
        assert "Unknown command 'frobnicate'" in capsys.readouterr().out


class TestValidate:
    """Test the validate verb."""

    def test_static_website(self, static_website_path, capsys):
        assert main(['validate', '-T', str(static_website_path)]) == 0
        out = capsys.readouterr().out
        assert re.search(r"Template '.*static-website.yaml' is valid \(\d+ resources\)", out)
        assert 'DomainName (Domain Name) [Domain Parameters]: String, required' in out
        assert 'AppendIndexHtml' in out
        assert 'default: Disabled' in out
        assert 'Create order: SiteBucket' in out

    def test_json_output(self, workspace, capsys):
        assert main(['validate', '-T', str(workspace['template']), '--json-output']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['valid'] is True
        assert data['resources'] == ['Bucket', 'Distribution', 'DNSRecord']
        assert data['outputs'] == ['BucketName', 'SiteDomain']
        assert data['parameters'][0]['name'] == 'DomainName'
        assert data['parameters'][0]['required'] is False

    def test_cycle_rejected(self, tmp_path, site_template, capsys):
        site_template['Resources']['Bucket']['DependsOn'] = 'DNSRecord'
        path = tmp_path / 'cyclic.json'
        path.write_text(json.dumps(site_template))

        assert main(['validate', '-T', str(path)]) == 1
        assert capsys.readouterr().err.startswith('Error: ')

    def test_missing_template_file(self, tmp_path, capsys):
        assert main(['validate', '-T', str(tmp_path / 'nope.yaml')]) == 1
        assert 'Template file not found' in capsys.readouterr().err

    def test_template_required(self, capsys):
        assert main(['validate']) == 1
        assert 'specify a template' in capsys.readouterr().err


class TestPlan:
    """Test the plan verb."""

    def test_pending_changes_exit_2(self, workspace, capsys):
        assert _run('plan', workspace, '-T', str(workspace['template'])) == 2
        out = capsys.readouterr().out
        assert 'Stack: site' in out
        assert '+ Bucket' in out
        assert 'Plan: 3 to create, 0 to update, 0 to replace, 0 to delete' in out

    def test_no_changes_after_apply(self, workspace, capsys):
        assert _apply(workspace) == 0
        capsys.readouterr()

        assert _run('plan', workspace, '-T', str(workspace['template'])) == 0
        assert 'No changes. Stack is up to date.' in capsys.readouterr().out

    def test_parameter_change_is_update(self, workspace, capsys):
        assert _apply(workspace) == 0
        capsys.readouterr()

        rc = _run('plan', workspace, '-T', str(workspace['template']), '-p', 'DomainName=blog.example.org')
        assert rc == 2
        out = capsys.readouterr().out
        assert '~ Bucket' in out
        assert '~ DNSRecord' in out

    def test_json_output(self, workspace, capsys):
        assert _run('plan', workspace, '-T', str(workspace['template']), '--json-output') == 2
        data = json.loads(capsys.readouterr().out)
        assert data['stack'] == 'site'
        assert data['summary']['create'] == 3
        assert [c['name'] for c in data['changes']] == ['Bucket', 'Distribution', 'DNSRecord']
        assert data['changes'][1]['waits_for'] == ['Bucket']

    def test_plan_does_not_touch_control_plane(self, workspace):
        _run('plan', workspace, '-T', str(workspace['template']))
        assert not (workspace['state_dir'] / 'control-plane.json').exists()
        assert not (workspace['state_dir'] / 'site' / 'state.lock').exists()

    def test_bad_param_format(self, workspace, capsys):
        assert _run('plan', workspace, '-T', str(workspace['template']), '-p', 'DomainName') == 1
        assert "Invalid --param format 'DomainName'" in capsys.readouterr().err

    def test_unknown_param(self, workspace, capsys):
        assert _run('plan', workspace, '-T', str(workspace['template']), '-p', 'Nope=1') == 1
        assert 'Unknown parameter(s): Nope' in capsys.readouterr().err


class TestApply:
    """Test the apply verb."""

    def test_creates_stack(self, workspace, capsys):
        assert _apply(workspace) == 0
        out = capsys.readouterr().out
        assert 'Apply complete: 3 completed, 0 failed, 0 skipped' in out
        assert 'BucketName = www-example-org' in out

        state = StackState.load('site', workspace['state_dir'])
        assert sorted(state.resources) == ['Bucket', 'DNSRecord', 'Distribution']
        assert not (workspace['state_dir'] / 'site' / 'state.lock').exists()

    def test_explicit_stack_name(self, workspace, capsys):
        assert _apply(workspace, '-s', 'blog') == 0
        assert StackState.load('blog', workspace['state_dir']).resources
        assert StackState.load('site', workspace['state_dir']).is_empty

    def test_dry_run_changes_nothing(self, workspace, capsys):
        assert _apply(workspace, '--dry-run') == 0
        assert StackState.load('site', workspace['state_dir']).is_empty
        assert not (workspace['state_dir'] / 'control-plane.json').exists()

    def test_json_output(self, workspace, capsys):
        assert _apply(workspace, '--json-output') == 0
        data = json.loads(capsys.readouterr().out)
        assert data['success'] is True
        assert data['completed'] == ['Bucket', 'Distribution', 'DNSRecord']
        assert data['outputs']['BucketName'] == 'www-example-org'

    def test_report_dir(self, workspace, tmp_path, capsys):
        assert _apply(workspace, '--report-dir', str(tmp_path / 'reports')) == 0
        names = sorted(p.name for p in (tmp_path / 'reports').iterdir())
        assert [n.rsplit('.', 1)[1] for n in names] == ['json', 'md']

    def test_missing_required_parameter(self, static_website_path, workspace, capsys):
        rc = _run('apply', workspace, '-T', str(static_website_path), '--skip-preflight')
        assert rc == 1
        assert 'Missing value for required parameter(s): HostedZoneId, DomainName' in capsys.readouterr().err

    def test_invalid_concurrency(self, workspace, capsys):
        assert _apply(workspace, '--concurrency', '0') == 1
        assert '--concurrency must be at least 1' in capsys.readouterr().err

    def test_locked_stack(self, workspace, capsys):
        lock = StateLock(workspace['state_dir'], 'site', 'apply')
        lock.acquire()
        try:
            assert _apply(workspace) == 1
        finally:
            lock.release()
        assert capsys.readouterr().err.startswith('Error: ')
        assert StackState.load('site', workspace['state_dir']).is_empty

    def test_preflight_failure(self, workspace, capsys):
        with patch('stack_opr.cli.validate_readiness', return_value=['Control plane unreachable']):
            rc = _run('apply', workspace, '-T', str(workspace['template']))
        assert rc == 1
        err = capsys.readouterr().err
        assert 'Pre-flight validation failed:' in err
        assert 'Control plane unreachable' in err

    def test_preflight_runs_by_default(self, workspace, capsys):
        with patch('stack_opr.cli.validate_readiness', return_value=[]) as mock_ready:
            assert _run('apply', workspace, '-T', str(workspace['template'])) == 0
        mock_ready.assert_called_once()


class TestDestroy:
    """Test the destroy verb."""

    def test_destroy_with_yes(self, workspace, capsys):
        assert _apply(workspace) == 0
        capsys.readouterr()

        assert _run('destroy', workspace, '-s', 'site', '--yes', '--skip-preflight') == 0
        assert 'Destroy complete: 3 completed' in capsys.readouterr().out
        assert StackState.load('site', workspace['state_dir']).is_empty

    @patch('builtins.input', return_value='n')
    def test_prompt_declined(self, mock_input, workspace, capsys):
        assert _apply(workspace) == 0
        capsys.readouterr()

        assert _run('destroy', workspace, '-s', 'site', '--skip-preflight') == 1
        out = capsys.readouterr().out
        assert "destroy 3 resource(s) in stack 'site'" in out
        assert 'Aborted.' in out
        mock_input.assert_called_once_with("Continue? [y/N] ")
        assert len(StackState.load('site', workspace['state_dir']).resources) == 3

    @patch('builtins.input', return_value='y')
    def test_prompt_accepted(self, _mock_input, workspace, capsys):
        assert _apply(workspace) == 0
        assert _run('destroy', workspace, '-s', 'site', '--skip-preflight') == 0
        assert StackState.load('site', workspace['state_dir']).is_empty

    def test_empty_stack(self, workspace, capsys):
        assert _run('destroy', workspace, '-s', 'site', '--yes') == 0
        assert 'Nothing to destroy' in capsys.readouterr().out

    def test_stack_required(self, workspace, capsys):
        assert _run('destroy', workspace, '--yes') == 1
        assert 'specify a stack' in capsys.readouterr().err


class TestOutputs:
    """Test the outputs verb."""

    def test_after_apply(self, workspace, capsys):
        assert _apply(workspace) == 0
        capsys.readouterr()

        assert _run('outputs', workspace, '-s', 'site') == 0
        out = capsys.readouterr().out
        assert 'BucketName = www-example-org' in out
        assert 'SiteDomain = ' in out

    def test_json_output(self, workspace, capsys):
        assert _apply(workspace) == 0
        capsys.readouterr()

        assert _run('outputs', workspace, '-s', 'site', '--json-output') == 0
        data = json.loads(capsys.readouterr().out)
        assert data['stack'] == 'site'
        assert data['outputs']['BucketName'] == 'www-example-org'

    def test_no_outputs(self, workspace, capsys):
        assert _run('outputs', workspace, '-s', 'site') == 0
        assert "Stack 'site' has no outputs." in capsys.readouterr().out


class TestUnlock:
    """Test the unlock verb."""

    def test_removes_lock(self, workspace, capsys):
        StateLock(workspace['state_dir'], 'site', 'apply').acquire()

        assert _run('unlock', workspace, '-s', 'site') == 0
        out = capsys.readouterr().out
        assert "Removed lock on stack 'site'" in out
        assert 'apply' in out
        assert not (workspace['state_dir'] / 'site' / 'state.lock').exists()

    def test_not_locked(self, workspace, capsys):
        assert _run('unlock', workspace, '-s', 'site') == 0
        assert "Stack 'site' is not locked." in capsys.readouterr().out
