import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from main import __version__, main

ENV_VARS = ('PORT', 'PATHPROXY_HOST', 'CACHE_STORE_URL', 'S3_ENDPOINT_URL', 'METRICS_STORE_URL',
            'PATHPROXY_PUBLIC_HOST', 'PATHPROXY_LOG_FILE', 'PATHPROXY_CONFIG')


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class FakeManager:
    instances = []
    result = True

    def __init__(self, config):
        self.config = config
        self.last_error_details = 'Port 8686 is already in use'
        FakeManager.instances.append(self)

    def run(self):
        return FakeManager.result


@pytest.fixture
def fake_manager():
    FakeManager.instances = []
    FakeManager.result = True
    with patch('core.proxy_manager.ProxyManager', FakeManager), patch('main.setup_logging'):
        yield FakeManager


def test_version():
    result = CliRunner().invoke(main, ['--version'])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_options_reach_config(fake_manager):
    result = CliRunner().invoke(main, [
        '--port', '9100',
        '--bind', '127.0.0.1',
        '--store-url', 's3://proxy-cache/edge',
        '--s3-endpoint', 'http://localhost:4566',
        '--debug',
    ])
    assert result.exit_code == 0, result.output

    config = fake_manager.instances[0].config
    assert config.get('server.port') == 9100
    assert config.get('server.host') == '127.0.0.1'
    assert config.cache_store_url == 's3://proxy-cache/edge'
    assert config.metrics_store_url == 's3://proxy-cache/edge'
    assert config.get('cache.s3_endpoint') == 'http://localhost:4566'
    assert config.get('logging.level') == 'DEBUG'


def test_environment_variables(fake_manager):
    result = CliRunner().invoke(main, [], env={'PORT': '9200', 'METRICS_STORE_URL': 's3://stats'})
    assert result.exit_code == 0, result.output
    config = fake_manager.instances[0].config
    assert config.get('server.port') == 9200
    assert config.metrics_store_url == 's3://stats'


def test_config_file(fake_manager, tmp_path):
    path = tmp_path / 'pathproxy.json'
    path.write_text(json.dumps({'server': {'port': 9300}, 'metrics': {'reset_clears_cache': True}}))

    result = CliRunner().invoke(main, ['--config', str(path)])
    assert result.exit_code == 0, result.output
    config = fake_manager.instances[0].config
    assert config.get('server.port') == 9300
    assert config.get('metrics.reset_clears_cache') is True


def test_invalid_config_file(fake_manager, tmp_path):
    path = tmp_path / 'pathproxy.json'
    path.write_text('{')
    result = CliRunner().invoke(main, ['--config', str(path)])
    assert result.exit_code == 1
    assert 'Invalid config file' in result.output
    assert fake_manager.instances == []


def test_start_failure_exits_non_zero(fake_manager):
    fake_manager.result = False
    result = CliRunner().invoke(main, [])
    assert result.exit_code == 1
    assert 'Port 8686 is already in use' in result.output
