import pytest
import yaml
from click.testing import CliRunner

from dockyard.CLI.main import cli
from dockyard.RUNTIME.memory import InMemoryRuntime


@pytest.fixture
def compose_file(tmp_path):
    compose_content = {
        'services': {
            'db': {'image': 'postgres', 'volumes': ['data:/var/lib/postgresql/data']},
            'web': {'image': 'nginx', 'depends_on': ['db'], 'ports': ['8080:80']},
        },
        'volumes': {'data': {}},
    }
    path = tmp_path / "docker-compose.yml"
    with open(path, 'w') as f:
        yaml.dump(compose_content, f)
    return str(path)


def invoke(runtime, *args):
    runner = CliRunner()
    return runner.invoke(cli, ['--log-level', 'error', *args], obj={'runtime': runtime})


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'Start services' in result.output


def test_cli_up_no_file():
    result = invoke(InMemoryRuntime(), '-f', 'non_existent.yml', 'up')
    assert result.exit_code == 2
    assert 'Error: non_existent.yml not found.' in result.output


def test_cli_up_ps_down(compose_file):
    runtime = InMemoryRuntime()

    result = invoke(runtime, '-f', compose_file, '-p', 'shop', 'up', '-d')
    assert result.exit_code == 0, result.output
    assert 'healthy' in result.output
    assert set(runtime.containers) == {'shop-db-1', 'shop-web-1'}

    result = invoke(runtime, '-f', compose_file, '-p', 'shop', 'ps')
    assert result.exit_code == 0
    lines = [line.split() for line in result.output.splitlines()]
    assert ['db', 'running', 'shop-db-1'] in lines
    assert ['web', 'running', 'shop-web-1'] in lines

    result = invoke(runtime, '-f', compose_file, '-p', 'shop', 'down')
    assert result.exit_code == 0, result.output
    assert runtime.containers == {}
    assert 'volume shop_data: preserved' in result.output

    result = invoke(runtime, '-f', compose_file, '-p', 'shop', 'down', '--purge-volumes')
    assert result.exit_code == 0
    assert runtime.volumes == {}


def test_cli_partial_failure_exit_code(compose_file):
    runtime = InMemoryRuntime()
    runtime.fail_create('shop-web-1')

    result = invoke(runtime, '-f', compose_file, '-p', 'shop', 'up', '--detach')

    assert result.exit_code == 1
    assert 'failed' in result.output


def test_cli_runtime_unavailable(compose_file):
    runtime = InMemoryRuntime()
    runtime.available = False

    result = invoke(runtime, '-f', compose_file, 'up', '-d')
    assert result.exit_code == 2
    assert 'unavailable' in result.output


def test_cli_cycle_is_fatal(tmp_path):
    path = tmp_path / "docker-compose.yml"
    path.write_text("services:\n  a: {image: x, depends_on: [b]}\n  b: {image: x, depends_on: [a]}\n")

    result = invoke(InMemoryRuntime(), '-f', str(path), 'config')

    assert result.exit_code == 2
    assert 'a -> b -> a' in result.output


def test_cli_logs(compose_file):
    runtime = InMemoryRuntime()
    invoke(runtime, '-f', compose_file, '-p', 'shop', 'up', '-d')
    runtime.emit_log('shop-db-1', 'ready\n')
    runtime.emit_log('shop-web-1', 'GET /\n')

    result = invoke(runtime, '-f', compose_file, '-p', 'shop', 'logs', 'db')
    assert result.exit_code == 0
    assert 'db | ready' in result.output
    assert 'GET /' not in result.output

    result = invoke(runtime, '-f', compose_file, '-p', 'shop', 'logs', 'cache')
    assert result.exit_code == 2


def test_cli_config(compose_file):
    result = invoke(InMemoryRuntime(), '-f', compose_file, '-p', 'shop', 'config')
    assert result.exit_code == 0
    config = yaml.safe_load(result.output)
    assert config['name'] == 'shop'
    assert config['services']['web']['depends_on'] == ['db']


def test_cli_attached_up_keeps_failure_exit_code(tmp_path):
    path = tmp_path / "docker-compose.yml"
    path.write_text("services:\n  web: {image: nginx}\n")
    runtime = InMemoryRuntime()
    runtime.fail_create('shop-web-1')

    result = invoke(runtime, '-f', str(path), '-p', 'shop', 'up')

    assert result.exit_code == 1, result.output
    assert 'Stopping services...' in result.output
    assert runtime.containers == {}
