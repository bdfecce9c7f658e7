"""
Shared fixtures: configuration in tmp_path and fake upstream hosts.

Fake upstreams are real aiohttp applications started with ``aiohttp_server``;
their base URLs are plugged into the ``upstream`` config section so the proxy
rewrites and routes to them exactly as it would to the real site.
"""

import pytest

from core.config_manager import ConfigManager
from core.cookie_jar import CookieJar
from core.proxy.rewrite_rules import RewriteRuleTable

UNREACHABLE = 'http://127.0.0.1:1'


def base_url(server) -> str:
    return f"http://{server.host}:{server.port}"


@pytest.fixture
def config(tmp_path):
    cfg = ConfigManager(tmp_path / 'config.json')
    cfg.set('persistence.enabled', False)
    return cfg


@pytest.fixture
def upstream_config(config):
    """Upstream section with the real site defaults"""
    return config.get_upstream_config()


@pytest.fixture
def rules(upstream_config):
    return RewriteRuleTable.from_config(upstream_config)


@pytest.fixture
def jar():
    return CookieJar()


def point_upstreams(config, content, static=None, tracking=None, auth=None):
    """Направляет секцию upstream на локальные тестовые серверы"""
    config.set('upstream', {
        'content_host': content,
        'auth_host': auth or content,
        'content_aliases': [],
        'static_host': static or UNREACHABLE,
        'static_aliases': [],
        'tracking_hosts': tracking or {},
        'stub_prefixes': ['/svc/shreddit/'],
        'verify_path': '/api/me.json',
    })
    return config
