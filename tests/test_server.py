import json

import pytest
import requests
import yaml
from fastapi.testclient import TestClient

import server

PROXIES = [
    {'name': '🇭🇰 香港 01', 'type': 'ss', 'server': 'a', 'port': 1, 'cipher': 'aes-128-gcm', 'password': 'x'},
    {'name': '台湾 01', 'type': 'ss', 'server': 'b', 'port': 2, 'cipher': 'aes-128-gcm', 'password': 'x'},
    {'name': '剩余流量：10 GB', 'type': 'ss', 'server': 'c', 'port': 3, 'cipher': 'aes-128-gcm', 'password': 'x'},
]


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(server, 'CONFIG_FILE', str(tmp_path / 'config.json'))
    return TestClient(server.app)


def set_token(token):
    config = server.load_config()
    config['auth']['sub_token'] = token
    server.save_config(config)


def group_names(config):
    return [g['name'] for g in config['proxy-groups']]


# ==================== Settings ====================

def test_load_config_defaults(client):
    config = server.load_config()
    assert config['auth'] == {'sub_token': ''}
    assert config['arguments']['threshold'] == 0


def test_load_config_fills_missing_keys(client):
    with open(server.CONFIG_FILE, 'w', encoding='utf-8') as f:
        json.dump({'arguments': {'landing': True}}, f)
    config = server.load_config()
    assert config['arguments']['landing'] is True
    assert config['arguments']['fakeip'] is False
    assert config['auth']['sub_token'] == ''


def test_load_config_broken_file(client):
    with open(server.CONFIG_FILE, 'w', encoding='utf-8') as f:
        f.write('{not json')
    assert server.load_config() == server.default_config()


def test_arguments_roundtrip(client):
    assert client.get('/api/arguments').json()['landing'] is False
    response = client.put('/api/arguments', json={'landing': True, 'threshold': 2})
    assert response.status_code == 200
    stored = client.get('/api/arguments').json()
    assert stored['landing'] is True and stored['threshold'] == 2 and stored['quic'] is False


# ==================== Auth ====================

def test_token_required_when_configured(client):
    set_token('s3cret')
    assert client.get('/api/arguments').status_code == 401
    assert client.get('/api/arguments', params={'token': 'wrong'}).status_code == 401
    assert client.get('/api/arguments', params={'token': 's3cret'}).status_code == 200
    assert client.get('/api/arguments', headers={'Authorization': 'Bearer s3cret'}).status_code == 200


def test_regenerate_token(client):
    token = client.post('/api/auth/regenerate-token').json()['token']
    assert token
    assert client.get('/api/arguments').status_code == 401
    assert client.get('/api/arguments', params={'token': token}).status_code == 200


# ==================== Override ====================

def test_override_json(client):
    response = client.post('/api/override', json={'proxies': PROXIES, 'arguments': {'fakeip': 'true'}})
    assert response.status_code == 200
    body = response.json()
    assert body['missing'] == []
    config = body['config']
    assert [p['name'] for p in config['proxies']] == ['🇭🇰 香港 01', '台湾 01']
    assert config['dns']['enhanced-mode'] == 'fake-ip'
    assert '香港节点' in group_names(config)


def test_override_uses_stored_arguments(client):
    client.put('/api/arguments', json={'landing': True})
    config = client.post('/api/override', json={'proxies': PROXIES}).json()['config']
    assert '落地节点' in group_names(config)

    config = client.post('/api/override', json={'proxies': PROXIES, 'arguments': {'landing': 'false'}}).json()['config']
    assert '落地节点' not in group_names(config)


def test_override_without_valid_nodes(client):
    response = client.post('/api/override', json={'proxies': [PROXIES[2]]})
    assert response.status_code == 422


def test_override_file_upload(client):
    content = yaml.dump({'proxies': PROXIES}, allow_unicode=True)
    response = client.post(
        '/api/override/file',
        files={'file': ('sub.yaml', content.encode('utf-8'), 'text/yaml')},
        data={'arguments': 'full=true&quic=true'},
    )
    assert response.status_code == 200
    config = yaml.safe_load(response.text)
    assert config['mixed-port'] == 7890
    assert config['rules'][0] != server.ConfigOverride().apply({'proxies': PROXIES})['rules'][0]


def test_override_file_unrecognized(client):
    response = client.post('/api/override/file', files={'file': ('sub.txt', b'hello world', 'text/plain')})
    assert response.status_code == 400


# ==================== Subscription ====================

def test_sub_endpoint(client, monkeypatch):
    calls = []

    def fake_fetch(url):
        calls.append(url)
        return yaml.dump({'proxies': PROXIES}, allow_unicode=True), {'upload': 1, 'download': 2, 'total': 3, 'expire': 4}

    monkeypatch.setattr(server, 'fetch_subscription', fake_fetch)
    response = client.get('/sub', params={'url': 'https://up.example.com/s', 'loadbalance': 'true', 'compact': 'true'})
    assert response.status_code == 200
    assert calls == ['https://up.example.com/s']
    assert response.headers['subscription-userinfo'] == 'upload=1; download=2; total=3; expire=4'
    assert '\n  - {"name":"🇭🇰 香港 01"' in response.text

    config = yaml.safe_load(response.text)
    hk = next(g for g in config['proxy-groups'] if g['name'] == '香港节点')
    assert hk['type'] == 'load-balance'
    assert next(g for g in config['proxy-groups'] if g['name'] == 'Bilibili')['proxies'] == ['全球直连', '台湾节点', '香港节点']


def test_sub_upstream_failure(client, monkeypatch):
    def fake_fetch(url):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(server, 'fetch_subscription', fake_fetch)
    response = client.get('/sub', params={'url': 'https://up.example.com/s'})
    assert response.status_code == 502


def test_sub_upstream_without_nodes(client, monkeypatch):
    monkeypatch.setattr(server, 'fetch_subscription', lambda url: ('<html></html>', {}))
    response = client.get('/sub', params={'url': 'https://up.example.com/s'})
    assert response.status_code == 422


def test_sub_requires_token(client, monkeypatch):
    set_token('abc')
    monkeypatch.setattr(server, 'fetch_subscription', lambda url: (yaml.dump({'proxies': PROXIES}), {}))
    assert client.get('/sub', params={'url': 'https://up.example.com/s'}).status_code == 401
    assert client.get('/sub', params={'url': 'https://up.example.com/s', 'token': 'abc'}).status_code == 200


def test_sub_compact_with_non_json_values(client, monkeypatch):
    upstream = "proxies:\n  - {name: HK 01, type: ss, server: a, port: 1, cipher: aes-128-gcm, password: 2024-01-01}\n"
    monkeypatch.setattr(server, 'fetch_subscription', lambda url: (upstream, {}))
    for compact in ('true', 'false'):
        response = client.get('/sub', params={'url': 'https://up.example.com/s', 'compact': compact})
        assert response.status_code == 200
        assert str(yaml.safe_load(response.text)['proxies'][0]['password']) == '2024-01-01'


def test_override_file_not_utf8(client):
    response = client.post('/api/override/file', files={'file': ('sub.yaml', b'\xff\xfe\x80proxies', 'text/yaml')})
    assert response.status_code == 400
    assert response.json()['detail'] == "File is not UTF-8 text"
