import functools
import textwrap

import click.testing
import pytest

from clusterreg import __version__
from clusterreg.cli import main

CONFIG = textwrap.dedent("""
    compute:
      server: https://compute.example
      token: tkn
    hubs:
      - name: hub-a
        server: https://a.example
        namespaces: ["team-a-*"]
      - name: hub-b
        server: https://b.example
    namespaces: ["team-*", "shared"]
""")


@pytest.fixture()
def runner():
    return click.testing.CliRunner()


@pytest.fixture()
def invoke(runner):
    return functools.partial(runner.invoke, main)


@pytest.fixture()
def config_path(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(CONFIG)
    return str(path)


@pytest.fixture()
def real_run(mocker):
    return mocker.patch('clusterreg._core.reactor.running.run')


def test_help_in_root(invoke):
    result = invoke(['--help'])

    assert result.exit_code == 0
    assert 'Usage: clusterreg [OPTIONS]' in result.output
    assert '  run ' in result.output
    assert '  check ' in result.output


def test_help_in_subcommand(invoke, real_run):
    result = invoke(['run', '--help'])

    assert result.exit_code == 0
    assert not real_run.called
    assert '  -c, --config' in result.output
    assert '  -n, --namespace' in result.output
    assert '  -w, --workers' in result.output


def test_version(invoke):
    result = invoke(['--version'])

    assert result.exit_code == 0
    assert str(__version__) in result.output


def test_check_prints_the_servers(invoke, config_path):
    result = invoke(['check', '-c', config_path])

    assert result.exit_code == 0
    assert result.output.splitlines() == [
        'compute: https://compute.example',
        'hub hub-a: https://a.example for team-a-*',
        'hub hub-b: https://b.example for *',
        'namespaces: team-*, shared',
    ]


def test_check_of_absent_config(invoke, tmp_path):
    result = invoke(['check', '-c', str(tmp_path / 'absent.yaml')])

    assert result.exit_code == 2
    assert 'Cannot load the config' in result.output


def test_check_of_invalid_config(invoke, tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('compute: {server: "https://compute.example"}\n')

    result = invoke(['check', '-c', str(path)])

    assert result.exit_code == 2
    assert 'No hubs are configured' in result.output


def test_run_without_config(invoke, real_run):
    result = invoke(['run'])

    assert result.exit_code == 2
    assert not real_run.called


def test_run_with_defaults(invoke, real_run, config_path):
    result = invoke(['run', '-c', config_path])

    assert result.exit_code == 0
    assert real_run.called
    kwargs = real_run.call_args[1]
    assert kwargs['config'].compute.server == 'https://compute.example'
    assert [hub.name for hub in kwargs['config'].hubs] == ['hub-a', 'hub-b']
    assert tuple(kwargs['namespaces']) == ()
    assert kwargs['settings'].queueing.worker_limit is None
    assert kwargs['stop_flag'] is None


def test_run_with_options(invoke, real_run, config_path):
    result = invoke(['run', '-c', config_path, '-n', 'ns1', '--namespace', 'ns2', '-w', '3'])

    assert result.exit_code == 0
    kwargs = real_run.call_args[1]
    assert tuple(kwargs['namespaces']) == ('ns1', 'ns2')
    assert kwargs['settings'].queueing.worker_limit == 3


def test_run_with_options_from_env(invoke, real_run, config_path, monkeypatch):
    monkeypatch.setenv('CLUSTERREG_RUN_WORKER_LIMIT', '5')

    result = invoke(['run', '-c', config_path])

    assert result.exit_code == 0
    assert real_run.call_args[1]['settings'].queueing.worker_limit == 5


@pytest.mark.parametrize('workers', ['0', '-1', 'x'])
def test_run_with_invalid_workers(invoke, real_run, config_path, workers):
    result = invoke(['run', '-c', config_path, '-w', workers])

    assert result.exit_code == 2
    assert not real_run.called
