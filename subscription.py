"""
Subscription input handling
Fetch subscription content and turn Clash YAML, base64 or share link lists into a proxies list
"""

import base64
import binascii
import json
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

import requests
import yaml

logger = logging.getLogger(__name__)

USER_AGENT = 'clash-verge/v2.0.0 mihomo Platform/windows'


# ==================== SubscriptionParser ====================

class SubscriptionParser:
    """Parse various subscription formats to Clash config"""

    @staticmethod
    def decode_base64(content: str) -> str:
        """Safely decode Base64 (standard or urlsafe, padding optional)"""
        content = content.strip().replace('-', '+').replace('_', '/')
        missing_padding = len(content) % 4
        if missing_padding:
            content += '=' * (4 - missing_padding)
        try:
            return base64.b64decode(content).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return ""

    @staticmethod
    def _query(query: str) -> Dict[str, str]:
        return {k: v[0] for k, v in parse_qs(query).items()}

    @staticmethod
    def _remark(fragment: str, default: str) -> str:
        return unquote(fragment) if fragment else default

    @staticmethod
    def parse_vmess(link: str) -> Optional[dict]:
        """Parse vmess:// link (base64 JSON body)"""
        try:
            v = json.loads(SubscriptionParser.decode_base64(link[len('vmess://'):]) or 'null')
            if not isinstance(v, dict):
                return None
            proxy = {
                'name': v.get('ps') or 'vmess',
                'type': 'vmess',
                'server': v.get('add'),
                'port': int(v.get('port')),
                'uuid': v.get('id'),
                'alterId': int(v.get('aid') or 0),
                'cipher': v.get('scy') or 'auto',
                'udp': True,
            }
            if v.get('net') == 'ws':
                ws_opts = {'path': v.get('path') or '/'}
                if v.get('host'):
                    ws_opts['headers'] = {'Host': v['host']}
                proxy['network'] = 'ws'
                proxy['ws-opts'] = ws_opts
            if v.get('tls') == 'tls':
                proxy['tls'] = True
                if v.get('sni'):
                    proxy['servername'] = v['sni']
            return proxy
        except (TypeError, ValueError):
            return None

    @staticmethod
    def parse_ss(link: str) -> Optional[dict]:
        """Parse ss:// link, SIP002 or fully base64 encoded"""
        try:
            parts = urlsplit(link)
            name = SubscriptionParser._remark(parts.fragment, 'ss')
            if '@' in parts.netloc:
                userinfo, _ = parts.netloc.rsplit('@', 1)
                userinfo = unquote(userinfo)
                if ':' not in userinfo:
                    userinfo = SubscriptionParser.decode_base64(userinfo)
                server, port = parts.hostname, parts.port
            else:
                decoded = SubscriptionParser.decode_base64(parts.netloc)
                if '@' not in decoded:
                    return None
                userinfo, host_port = decoded.rsplit('@', 1)
                server, port = host_port.rsplit(':', 1)
            if ':' not in userinfo or not server:
                return None
            cipher, password = userinfo.split(':', 1)
            return {
                'name': name,
                'type': 'ss',
                'server': server,
                'port': int(port),
                'cipher': cipher,
                'password': password,
                'udp': True,
            }
        except (TypeError, ValueError):
            return None

    @staticmethod
    def parse_trojan(link: str) -> Optional[dict]:
        """Parse trojan:// link"""
        try:
            parts = urlsplit(link)
            if not parts.username or not parts.hostname:
                return None
            params = SubscriptionParser._query(parts.query)
            proxy = {
                'name': SubscriptionParser._remark(parts.fragment, 'trojan'),
                'type': 'trojan',
                'server': parts.hostname,
                'port': int(parts.port),
                'password': unquote(parts.username),
                'udp': True,
                'skip-cert-verify': params.get('allowInsecure') == '1',
            }
            if params.get('sni'):
                proxy['sni'] = params['sni']
            return proxy
        except (TypeError, ValueError):
            return None

    @staticmethod
    def parse_vless(link: str) -> Optional[dict]:
        """Parse vless:// link with ws / grpc transport and tls / reality security"""
        try:
            parts = urlsplit(link)
            if not parts.username or not parts.hostname:
                return None
            params = SubscriptionParser._query(parts.query)
            network = params.get('type', 'tcp')
            proxy = {
                'name': SubscriptionParser._remark(parts.fragment, 'vless'),
                'type': 'vless',
                'server': parts.hostname,
                'port': int(parts.port),
                'uuid': parts.username,
                'udp': True,
                'network': network,
            }
            if network == 'ws':
                ws_opts = {'path': params.get('path', '/')}
                if params.get('host'):
                    ws_opts['headers'] = {'Host': params['host']}
                proxy['ws-opts'] = ws_opts
            elif network == 'grpc' and params.get('serviceName'):
                proxy['grpc-opts'] = {'grpc-service-name': params['serviceName']}

            security = params.get('security', '')
            if security in ('tls', 'reality'):
                proxy['tls'] = True
                if params.get('sni'):
                    proxy['servername'] = params['sni']
                if params.get('fp'):
                    proxy['client-fingerprint'] = params['fp']
                if params.get('flow'):
                    proxy['flow'] = params['flow']
            if security == 'reality':
                reality_opts = {}
                if params.get('pbk'):
                    reality_opts['public-key'] = params['pbk']
                if params.get('sid'):
                    reality_opts['short-id'] = params['sid']
                proxy['reality-opts'] = reality_opts
            return proxy
        except (TypeError, ValueError):
            return None

    @staticmethod
    def parse_hysteria2(link: str) -> Optional[dict]:
        """Parse hysteria2:// or hy2:// link"""
        try:
            parts = urlsplit(link)
            if not parts.username or not parts.hostname:
                return None
            params = SubscriptionParser._query(parts.query)
            proxy = {
                'name': SubscriptionParser._remark(parts.fragment, 'hy2'),
                'type': 'hysteria2',
                'server': parts.hostname,
                'port': int(parts.port or 443),
                'password': unquote(parts.netloc.rsplit('@', 1)[0]),
                'udp': True,
            }
            if params.get('sni'):
                proxy['sni'] = params['sni']
            if 'insecure' in params:
                proxy['skip-cert-verify'] = params['insecure'] == '1'
            if params.get('obfs'):
                proxy['obfs'] = params['obfs']
            if params.get('obfs-password'):
                proxy['obfs-password'] = params['obfs-password']
            return proxy
        except (TypeError, ValueError):
            return None

    PARSERS = {
        'vmess://': 'parse_vmess',
        'ss://': 'parse_ss',
        'trojan://': 'parse_trojan',
        'vless://': 'parse_vless',
        'hysteria2://': 'parse_hysteria2',
        'hy2://': 'parse_hysteria2',
    }

    @staticmethod
    def parse_link(line: str) -> Optional[dict]:
        """Parse a single share link or one-line JSON node"""
        line = line.strip()
        for prefix, method in SubscriptionParser.PARSERS.items():
            if line.startswith(prefix):
                return getattr(SubscriptionParser, method)(line)
        if line.startswith('{') and line.endswith('}'):
            try:
                node = json.loads(line)
            except ValueError:
                return None
            if isinstance(node, dict) and 'name' in node and 'type' in node:
                return node
        return None

    @staticmethod
    def _load_yaml(content: str) -> Optional[dict]:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError:
            return None
        if isinstance(data, dict) and 'proxies' in data:
            if not isinstance(data['proxies'], list):
                data['proxies'] = []
            return data
        return None

    @staticmethod
    def parse_content(content: str) -> dict:
        """Try YAML, then base64 YAML, then a (base64) share link list"""
        if not content or not content.strip():
            return {}

        data = SubscriptionParser._load_yaml(content)
        if data is not None:
            return data

        decoded = SubscriptionParser.decode_base64(content)
        if decoded and 'proxies:' in decoded:
            data = SubscriptionParser._load_yaml(decoded)
            if data is not None:
                return data

        for text in (decoded, content):
            proxies = SubscriptionParser.parse_links(text)
            if proxies:
                return {'proxies': proxies}
        return {}

    @staticmethod
    def parse_links(text: str) -> List[dict]:
        proxies = []
        for line in (text or '').splitlines():
            if not line.strip():
                continue
            proxy = SubscriptionParser.parse_link(line)
            if proxy:
                proxies.append(proxy)
            else:
                logger.debug("Skipping unparsable line: %.40s", line)
        return proxies


# ==================== ProxyFilter ====================

class ProxyFilter:
    """Proxy node filter - filter out provider info nodes"""

    INVALID_KEYWORDS = [
        '剩余流量', '套餐到期', '距离下次重置', '建议', '官网', '未到期',
        '剩余', '到期', '重置', '过期时间',
    ]

    @staticmethod
    def is_valid_proxy(proxy) -> bool:
        """Check if proxy node is valid (not an info node)"""
        if not isinstance(proxy, dict) or not proxy.get('name'):
            return False
        name = str(proxy['name'])
        return not any(keyword in name for keyword in ProxyFilter.INVALID_KEYWORDS)

    @staticmethod
    def filter_proxies(proxies: List[dict]) -> List[dict]:
        """Filter invalid proxy nodes, keep only valid ones"""
        if not proxies:
            return []
        valid = [p for p in proxies if ProxyFilter.is_valid_proxy(p)]
        if len(valid) != len(proxies):
            logger.info("Dropped %d info nodes", len(proxies) - len(valid))
        return valid


# ==================== Fetching ====================

def parse_subscription_info(headers: dict) -> dict:
    info = {'upload': 0, 'download': 0, 'total': 0, 'expire': 0}
    userinfo = ''
    for key, value in headers.items():
        if key.lower() == 'subscription-userinfo':
            userinfo = value
            break
    for part in userinfo.split(';'):
        if '=' not in part:
            continue
        key, val = part.split('=', 1)
        try:
            info[key.strip().lower()] = int(float(val.strip()))
        except ValueError:
            continue
    return info


def format_subscription_info(info: dict) -> str:
    return '; '.join(f"{key}={info.get(key, 0)}" for key in ('upload', 'download', 'total', 'expire'))


def fetch_subscription(url: str, timeout: int = 30) -> Tuple[str, dict]:
    """Download a subscription, return its text and traffic info"""
    headers = {'User-Agent': USER_AGENT, 'Accept': '*/*'}
    logger.info("Fetching subscription: %s", urlsplit(url).netloc)
    response = requests.get(url, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response.text, parse_subscription_info(dict(response.headers))
