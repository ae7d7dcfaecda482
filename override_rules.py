"""
Clash Override Rules
Classify proxy nodes by region, build proxy groups and assemble a complete mihomo routing config

Supported arguments:
- loadbalance: country groups use load-balance instead of url-test (default false)
- landing:     enable landing / residential node groups (default false)
- ipv6:        enable IPv6 (default false)
- full:        emit the full kernel config header (default false)
- keepalive:   enable tcp keep-alive (default false)
- fakeip:      DNS in fake-ip mode, redir-host otherwise (default false)
- quic:        allow QUIC traffic on UDP 443 (default false)
- threshold:   hide country groups with fewer nodes than this (default 0)

Example: loadbalance=true&landing=true&fakeip=true&threshold=2
"""

import copy
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import yaml

logger = logging.getLogger(__name__)

NODE_SUFFIX = "节点"


# ==================== Argument Parsing ====================

def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true" or value == "1"
    return False


def parse_number(value, default: int = 0) -> int:
    """Leading integer of value, like parseInt; default when there is none"""
    if value is None:
        return default
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    match = re.match(r'\s*([+-]?\d+)', str(value))
    return int(match.group(1)) if match else default


def parse_arguments(query: str) -> Dict[str, str]:
    """Parse 'a=1&b=2' style argument string"""
    if not query:
        return {}
    return dict(parse_qsl(query.lstrip('?'), keep_blank_values=True))


@dataclass
class FeatureFlags:
    load_balance: bool = False
    landing: bool = False
    ipv6_enabled: bool = False
    full_config: bool = False
    keep_alive_enabled: bool = False
    fake_ip_enabled: bool = False
    quic_enabled: bool = False
    country_threshold: int = 0


# Argument name -> FeatureFlags attribute
FLAG_ARGUMENTS = {
    'loadbalance': 'load_balance',
    'landing': 'landing',
    'ipv6': 'ipv6_enabled',
    'full': 'full_config',
    'keepalive': 'keep_alive_enabled',
    'fakeip': 'fake_ip_enabled',
    'quic': 'quic_enabled',
}


def build_feature_flags(args: Optional[Dict[str, Any]]) -> FeatureFlags:
    args = args or {}
    values = {attr: parse_bool(args.get(key)) for key, attr in FLAG_ARGUMENTS.items()}
    values['country_threshold'] = parse_number(args.get('threshold'), 0)
    return FeatureFlags(**values)


# ==================== Group Names ====================

class ProxyGroups:
    SELECT = "节点选择"
    MANUAL = "手动切换"
    FALLBACK = "自动切换"
    DIRECT = "全球直连"
    LANDING = "落地节点"
    LOW_COST = "低倍率节点"
    FRONT = "前置代理"
    AD_BLOCK = "广告拦截"
    GLOBAL = "GLOBAL"


# Policies understood by the proxy engine itself
BUILTIN_POLICIES = {'DIRECT', 'REJECT', 'REJECT-DROP', 'PASS', 'COMPATIBLE', 'GLOBAL'}

ICON_BASE = "https://gcore.jsdelivr.net/gh/Koolson/Qure@master/IconSet/Color"
ICON_MIRROR = "https://cdn.jsdmirror.com/gh/Koolson/Qure@master/IconSet/Color"
ICON_OVERRIDE = "https://gcore.jsdelivr.net/gh/powerfullz/override-rules@master/icons"

TEST_URL = "https://cp.cloudflare.com/generate_204"


# ==================== NodeClassifier ====================

class NodeClassifier:
    """Classify proxy nodes into countries, landing and low-cost nodes"""

    LANDING_PATTERN = "家宽|家庭|家庭宽带|商宽|商业宽带|星链|Starlink|落地"
    LOW_COST_PATTERN = r"0\.[0-5]|低倍率|省流|大流量|实验性"

    # Country -> filter pattern and icon, first match wins
    COUNTRIES = {
        '香港': {
            'pattern': "(?i)香港|港|HK|hk|Hong Kong|HongKong|hongkong|🇭🇰",
            'icon': f"{ICON_BASE}/Hong_Kong.png",
        },
        '澳门': {
            'pattern': "(?i)澳门|MO|Macau|🇲🇴",
            'icon': f"{ICON_BASE}/Macao.png",
        },
        '台湾': {
            'pattern': "(?i)台|新北|彰化|TW|Taiwan|🇹🇼",
            'icon': f"{ICON_BASE}/Taiwan.png",
        },
        '狮城': {
            'pattern': "(?i)新加坡|坡|狮城|SG|Singapore|🇸🇬",
            'icon': f"{ICON_BASE}/Singapore.png",
        },
        '日本': {
            'pattern': "(?i)日本|川日|东京|大阪|泉日|埼玉|沪日|深日|JP|Japan|🇯🇵",
            'icon': f"{ICON_BASE}/Japan.png",
        },
        '韩国': {
            'pattern': "(?i)KR|Korea|KOR|首尔|韩|韓|🇰🇷",
            'icon': f"{ICON_BASE}/Korea.png",
        },
        '美国': {
            'pattern': "(?i)美国|美|US|United States|🇺🇸",
            'icon': f"{ICON_BASE}/United_States.png",
        },
        '枫叶': {
            'pattern': "(?i)加拿大|Canada|CA|🇨🇦",
            'icon': f"{ICON_BASE}/Canada.png",
        },
        '英国': {
            'pattern': "(?i)英国|United Kingdom|UK|伦敦|London|🇬🇧",
            'icon': f"{ICON_BASE}/United_Kingdom.png",
        },
        '袋鼠': {
            'pattern': "(?i)澳洲|澳大利亚|AU|Australia|🇦🇺",
            'icon': f"{ICON_BASE}/Australia.png",
        },
        '德国': {
            'pattern': "(?i)德国|德|DE|Germany|🇩🇪",
            'icon': f"{ICON_BASE}/Germany.png",
        },
        '法国': {
            'pattern': "(?i)法国|法|FR|France|🇫🇷",
            'icon': f"{ICON_BASE}/France.png",
        },
        '毛子': {
            'pattern': "(?i)俄罗斯|俄|RU|Russia|🇷🇺",
            'icon': f"{ICON_BASE}/Russia.png",
        },
        '泰国': {
            'pattern': "(?i)泰国|泰|TH|Thailand|🇹🇭",
            'icon': f"{ICON_BASE}/Thailand.png",
        },
        '印度': {
            'pattern': "(?i)印度|IN|India|🇮🇳",
            'icon': f"{ICON_BASE}/India.png",
        },
        '大马': {
            'pattern': "(?i)马来西亚|马来|MY|Malaysia|🇲🇾",
            'icon': f"{ICON_BASE}/Malaysia.png",
        },
    }

    _landing_re = re.compile(LANDING_PATTERN, re.IGNORECASE)
    _low_cost_re = re.compile(LOW_COST_PATTERN, re.IGNORECASE)
    _country_re = {
        country: re.compile(meta['pattern'][len('(?i)'):], re.IGNORECASE)
        for country, meta in COUNTRIES.items()
    }

    @staticmethod
    def node_name(proxy: dict) -> str:
        return str(proxy.get('name') or '')

    @staticmethod
    def is_landing(name: str) -> bool:
        return bool(NodeClassifier._landing_re.search(name))

    @staticmethod
    def is_low_cost(name: str) -> bool:
        return bool(NodeClassifier._low_cost_re.search(name))

    @staticmethod
    def identify_country(name: str) -> Optional[str]:
        """Return the first country whose pattern matches the node name"""
        for country, regex in NodeClassifier._country_re.items():
            if regex.search(name):
                return country
        return None

    @staticmethod
    def has_low_cost(proxies: List[dict]) -> bool:
        return any(
            NodeClassifier.is_low_cost(NodeClassifier.node_name(p))
            for p in proxies if isinstance(p, dict)
        )

    @staticmethod
    def parse_countries(proxies: List[dict]) -> List['CountryCount']:
        """Count regular nodes per country, in first-seen order

        Landing nodes are isolated. Low-cost nodes are dropped by every
        country group's exclude-filter, so they must not keep an otherwise
        empty group alive.
        """
        counts: Dict[str, int] = {}
        for proxy in proxies:
            if not isinstance(proxy, dict):
                continue
            name = NodeClassifier.node_name(proxy)
            if NodeClassifier.is_landing(name) or NodeClassifier.is_low_cost(name):
                continue
            country = NodeClassifier.identify_country(name)
            if country:
                counts[country] = counts.get(country, 0) + 1
        return [CountryCount(country, count) for country, count in counts.items()]


@dataclass
class CountryCount:
    country: str
    count: int


def get_country_group_names(country_info: List[CountryCount], min_count: int) -> List[str]:
    return [item.country + NODE_SUFFIX for item in country_info if item.count >= min_count]


def strip_node_suffix(group_names: List[str]) -> List[str]:
    return [name[:-len(NODE_SUFFIX)] if name.endswith(NODE_SUFFIX) else name for name in group_names]


# ==================== Candidate Lists ====================

def build_list(*elements) -> list:
    """Flatten one level and drop falsy entries"""
    result = []
    for element in elements:
        if isinstance(element, (list, tuple)):
            result.extend(e for e in element if e)
        elif element:
            result.append(element)
    return result


@dataclass
class BaseLists:
    default_proxies: List[str]
    default_proxies_direct: List[str]
    default_selector: List[str]
    default_fallback: List[str]


def build_base_lists(landing: bool, low_cost: bool, country_group_names: List[str]) -> BaseLists:
    # Candidates of the main selector group
    default_selector = build_list(
        ProxyGroups.FALLBACK,
        landing and ProxyGroups.LANDING,
        country_group_names,
        low_cost and ProxyGroups.LOW_COST,
        ProxyGroups.MANUAL,
        "DIRECT",
    )

    default_proxies = build_list(
        ProxyGroups.SELECT,
        country_group_names,
        low_cost and ProxyGroups.LOW_COST,
        ProxyGroups.MANUAL,
        ProxyGroups.DIRECT,
    )

    # Direct first
    default_proxies_direct = build_list(
        ProxyGroups.DIRECT,
        country_group_names,
        low_cost and ProxyGroups.LOW_COST,
        ProxyGroups.SELECT,
        ProxyGroups.MANUAL,
    )

    default_fallback = build_list(
        landing and ProxyGroups.LANDING,
        country_group_names,
        low_cost and ProxyGroups.LOW_COST,
        ProxyGroups.MANUAL,
        "DIRECT",
    )

    return BaseLists(default_proxies, default_proxies_direct, default_selector, default_fallback)


# ==================== Static Tables ====================

def _provider(behavior: str, fmt: str, url: str, path: str) -> dict:
    return {'type': 'http', 'behavior': behavior, 'format': fmt, 'interval': 86400, 'url': url, 'path': path}


ACL4SSR_CDN = "https://testingcf.jsdelivr.net/gh/ACL4SSR/ACL4SSR@master/Clash"
ACL4SSR_RAW = "https://raw.githubusercontent.com/ACL4SSR/ACL4SSR/master/Clash"
OVERRIDE_CDN = "https://gcore.jsdelivr.net/gh/powerfullz/override-rules@master/ruleset"
METACUBEX_RAW = "https://raw.githubusercontent.com/MetaCubeX/meta-rules-dat/refs/heads/meta/geo/geosite/classical"

RULE_PROVIDERS = {
    'LocalAreaNetwork': _provider('classical', 'text', f"{ACL4SSR_CDN}/LocalAreaNetwork.list", "./ruleset/ACL4SSR/LocalAreaNetwork.list"),
    'ADBlock': _provider('domain', 'mrs', "https://adrules.top/adrules-mihomo.mrs", "./ruleset/ADBlock.mrs"),
    'BanAD': _provider('classical', 'text', f"{ACL4SSR_CDN}/BanAD.list", "./ruleset/ACL4SSR/BanAD.list"),
    'BanProgramAD': _provider('classical', 'text', f"{ACL4SSR_CDN}/BanProgramAD.list", "./ruleset/ACL4SSR/BanProgramAD.list"),
    'ChinaDomain': _provider('classical', 'text', f"{ACL4SSR_RAW}/ChinaDomain.list", "./ruleset/ACL4SSR/ChinaDomain.list"),
    'ChinaCompanyIp': _provider('classical', 'text', f"{ACL4SSR_CDN}/ChinaCompanyIp.list", "./ruleset/ACL4SSR/ChinaCompanyIp.list"),
    'Download': _provider('classical', 'text', f"{ACL4SSR_CDN}/Download.list", "./ruleset/ACL4SSR/Download.list"),
    'ProxyGFWlist': _provider('classical', 'text', f"{ACL4SSR_CDN}/ProxyGFWlist.list", "./ruleset/ACL4SSR/ProxyGFWlist.list"),
    'OpenAI': _provider('classical', 'yaml', f"{METACUBEX_RAW}/openai.yaml", "./ruleset/MetaCubeX/OpenAI.yaml"),
    'Gemini': _provider('classical', 'yaml', f"{METACUBEX_RAW}/google-gemini.yaml", "./ruleset/MetaCubeX/Gemini.yaml"),
    'AI': _provider('classical', 'text', f"{ACL4SSR_RAW}/Ruleset/AI.list", "./ruleset/ACL4SSR/AI.list"),
    'TikTok': _provider('classical', 'text', f"{OVERRIDE_CDN}/TikTok.list", "./ruleset/powerfullz/TikTok.list"),
    'Telegram': _provider('classical', 'text', f"{ACL4SSR_RAW}/Telegram.list", "./ruleset/ACL4SSR/Telegram.list"),
    'SteamCN': _provider('classical', 'text', f"{ACL4SSR_CDN}/Ruleset/SteamCN.list", "./ruleset/ACL4SSR/SteamCN.list"),
    'SteamFix': _provider('classical', 'text', f"{OVERRIDE_CDN}/SteamFix.list", "./ruleset/powerfullz/SteamFix.list"),
    'Epic': _provider('classical', 'text', f"{ACL4SSR_CDN}/Ruleset/Epic.list", "./ruleset/ACL4SSR/Epic.list"),
    'GoogleFCM': _provider('classical', 'text', f"{ACL4SSR_RAW}/Ruleset/GoogleFCM.list", "./ruleset/ACL4SSR/GoogleFCM.list"),
    'GoogleCN': _provider('classical', 'text', f"{ACL4SSR_CDN}/GoogleCN.list", "./ruleset/ACL4SSR/GoogleCN.list"),
    'AdditionalFilter': _provider('classical', 'text', f"{OVERRIDE_CDN}/AdditionalFilter.list", "./ruleset/powerfullz/AdditionalFilter.list"),
    'Crypto': _provider('classical', 'text', f"{OVERRIDE_CDN}/Crypto.list", "./ruleset/powerfullz/Crypto.list"),
    'Bing': _provider('classical', 'text', f"{ACL4SSR_RAW}/Bing.list", "./ruleset/ACL4SSR/Bing.list"),
    'OneDrive': _provider('classical', 'text', f"{ACL4SSR_RAW}/OneDrive.list", "./ruleset/ACL4SSR/OneDrive.list"),
    'Microsoft': _provider('classical', 'text', f"{ACL4SSR_RAW}/Microsoft.list", "./ruleset/ACL4SSR/Microsoft.list"),
    'Apple': _provider('classical', 'text', f"{ACL4SSR_RAW}/Apple.list", "./ruleset/ACL4SSR/Apple.list"),
}

BASE_RULES = [
    f"RULE-SET,ADBlock,{ProxyGroups.AD_BLOCK}",
    f"RULE-SET,AdditionalFilter,{ProxyGroups.AD_BLOCK}",
    f"RULE-SET,BanAD,{ProxyGroups.AD_BLOCK}",
    f"RULE-SET,BanProgramAD,{ProxyGroups.AD_BLOCK}",
    "RULE-SET,Crypto,Crypto",
    "RULE-SET,TikTok,TikTok",
    "RULE-SET,Telegram,Telegram",
    "RULE-SET,Bing,Bing",
    "RULE-SET,OneDrive,OneDrive",
    "RULE-SET,Microsoft,Microsoft",
    "RULE-SET,Apple,Apple",
    "RULE-SET,Epic,Games",
    "RULE-SET,OpenAI,AI服务",
    "RULE-SET,Gemini,AI服务",
    "RULE-SET,AI,AI服务",

    "GEOSITE,CATEGORY-AI-!CN,AI服务",
    "GEOSITE,Category-Games,Games",
    "GEOSITE,Steam,Steam",
    "GEOSITE,GitHub,GitHub",
    "GEOSITE,Telegram,Telegram",
    "GEOSITE,YouTube,YouTube",
    "GEOSITE,Google,Google",
    "GEOSITE,Netflix,Netflix",
    "GEOSITE,Spotify,Spotify",
    "GEOSITE,Bilibili,Bilibili",
    "GEOSITE,category-pt,PT站点",

    "GEOIP,Netflix,Netflix,no-resolve",
    "GEOIP,Telegram,Telegram,no-resolve",

    f"RULE-SET,LocalAreaNetwork,{ProxyGroups.DIRECT}",
    f"RULE-SET,SteamCN,{ProxyGroups.DIRECT}",
    f"RULE-SET,SteamFix,{ProxyGroups.DIRECT}",
    f"RULE-SET,GoogleFCM,{ProxyGroups.DIRECT}",
    f"RULE-SET,ChinaDomain,{ProxyGroups.DIRECT}",
    f"RULE-SET,ChinaCompanyIp,{ProxyGroups.DIRECT}",
    f"RULE-SET,Download,{ProxyGroups.DIRECT}",
    f"GEOSITE,GOOGLE-PLAY@CN,{ProxyGroups.DIRECT}",
    f"GEOSITE,CN,{ProxyGroups.DIRECT}",
    f"GEOSITE,PRIVATE,{ProxyGroups.DIRECT}",
    f"GEOSITE,Microsoft@CN,{ProxyGroups.DIRECT}",
    f"GEOIP,CN,{ProxyGroups.DIRECT}",
    f"GEOIP,PRIVATE,{ProxyGroups.DIRECT}",
    f"RULE-SET,GoogleCN,{ProxyGroups.DIRECT}",

    f"DOMAIN,services.googleapis.cn,{ProxyGroups.SELECT}",
    f"GEOSITE,GFW,{ProxyGroups.SELECT}",
    f"RULE-SET,ProxyGFWlist,{ProxyGroups.SELECT}",
    f"MATCH,{ProxyGroups.SELECT}",
]

QUIC_REJECT_RULE = "AND,((DST-PORT,443),(NETWORK,UDP)),REJECT"

SNIFFER_CONFIG = {
    'sniff': {
        'TLS': {'ports': [443, 8443]},
        'HTTP': {'ports': [80, 8080, 8880]},
        'QUIC': {'ports': [443, 8443]},
    },
    'override-destination': False,
    'enable': True,
    'force-dns-mapping': True,
    'skip-domain': [
        "Mijia Cloud",
        "dlg.io.mi.com",
        "+.push.apple.com",
    ],
}

FAKE_IP_FILTER = [
    "geosite:private",
    "geosite:connectivity-check",
    "geosite:cn",
    "Mijia Cloud",
    "dlg.io.mi.com",
    "localhost.ptlogin2.qq.com",
    "*.icloud.com",
    "*.stun.*.*",
    "*.stun.*.*.*",
]

GEOX_URL = {
    'geoip': "https://gcore.jsdelivr.net/gh/Loyalsoldier/v2ray-rules-dat@release/geoip.dat",
    'geosite': "https://gcore.jsdelivr.net/gh/Loyalsoldier/v2ray-rules-dat@release/geosite.dat",
    'mmdb': "https://gcore.jsdelivr.net/gh/Loyalsoldier/geoip@release/Country.mmdb",
    'asn': "https://gcore.jsdelivr.net/gh/Loyalsoldier/geoip@release/GeoLite2-ASN.mmdb",
}


def build_rules(quic_enabled: bool) -> List[str]:
    rules = list(BASE_RULES)
    if not quic_enabled:
        # Block QUIC so browsers fall back to TCP when UDP is throttled
        rules.insert(0, QUIC_REJECT_RULE)
    return rules


def build_dns_config(mode: str, ipv6: bool, fake_ip_filter: Optional[List[str]] = None) -> dict:
    config = {
        'enable': True,
        'ipv6': ipv6,
        'prefer-h3': True,
        'enhanced-mode': mode,
        'default-nameserver': ["119.29.29.29", "223.5.5.5"],
        'nameserver': [
            "system",
            "223.5.5.5",
            "119.29.29.29",
            "180.184.1.1",
            "114.114.114.114",
        ],
        'fallback': [
            "quic://dns0.eu",
            "https://dns.cloudflare.com/dns-query",
            "https://dns.sb/dns-query",
            "tcp://208.67.222.222",
            "tcp://8.26.56.2",
        ],
        'proxy-server-nameserver': [
            "https://dns.alidns.com/dns-query",
            "tls://dot.pub",
        ],
    }
    if fake_ip_filter:
        config['fake-ip-filter'] = list(fake_ip_filter)
    return config


def build_full_header(flags: FeatureFlags) -> dict:
    """Kernel settings for running the output directly"""
    return {
        'mixed-port': 7890,
        'redir-port': 7892,
        'tproxy-port': 7893,
        'routing-mark': 7894,
        'allow-lan': True,
        'ipv6': flags.ipv6_enabled,
        'mode': 'rule',
        'unified-delay': True,
        'tcp-concurrent': True,
        'find-process-mode': 'off',
        'log-level': 'info',
        'geodata-loader': 'standard',
        'external-controller': ':9999',
        'disable-keep-alive': not flags.keep_alive_enabled,
        'profile': {'store-selected': True},
    }


# ==================== ProxyGroupGenerator ====================

class ProxyGroupGenerator:
    """Generate proxy-groups config"""

    # Application groups sharing the default candidate list, in display order
    SERVICE_GROUPS = [
        ('AI服务', f"{ICON_OVERRIDE}/chatgpt.png"),
        ('Telegram', f"{ICON_BASE}/Telegram.png"),
        ('YouTube', f"{ICON_BASE}/YouTube.png"),
        ('Bilibili', f"{ICON_BASE}/bilibili.png"),
        ('Netflix', f"{ICON_BASE}/Netflix.png"),
        ('Spotify', f"{ICON_BASE}/Spotify.png"),
        ('TikTok', f"{ICON_BASE}/TikTok.png"),
        ('Crypto', f"{ICON_MIRROR}/Cryptocurrency_3.png"),
        ('GitHub', f"{ICON_MIRROR}/GitHub.png"),
        ('Bing', f"{ICON_MIRROR}/Microsoft.png"),
        ('OneDrive', f"{ICON_MIRROR}/OneDrive.png"),
        ('Microsoft', f"{ICON_MIRROR}/Microsoft.png"),
        ('Apple', f"{ICON_MIRROR}/Apple.png"),
        ('Google', f"{ICON_OVERRIDE}/Google.png"),
        ('Steam', f"{ICON_MIRROR}/Steam.png"),
        ('Games', f"{ICON_MIRROR}/Game.png"),
    ]

    @staticmethod
    def landing_filter() -> str:
        return "(?i)" + NodeClassifier.LANDING_PATTERN

    @staticmethod
    def low_cost_filter() -> str:
        return "(?i)" + NodeClassifier.LOW_COST_PATTERN

    @staticmethod
    def country_groups(countries: List[str], landing: bool, load_balance: bool) -> List[dict]:
        groups = []
        exclude = NodeClassifier.LOW_COST_PATTERN
        if landing:
            exclude = f"{ProxyGroupGenerator.landing_filter()}|{exclude}"
        group_type = 'load-balance' if load_balance else 'url-test'

        for country in countries:
            meta = NodeClassifier.COUNTRIES.get(country)
            if not meta:
                continue
            group = {
                'name': country + NODE_SUFFIX,
                'icon': meta['icon'],
                'include-all': True,
                'filter': meta['pattern'],
                'exclude-filter': exclude,
                'type': group_type,
            }
            if not load_balance:
                group.update({
                    'url': TEST_URL,
                    'interval': 60,
                    'tolerance': 20,
                    'lazy': False,
                })
            groups.append(group)
        return groups

    @staticmethod
    def bilibili_proxies(countries: List[str], lists: BaseLists) -> List[str]:
        """Hong Kong and Taiwan only when both exist, direct-first otherwise"""
        if '台湾' in countries and '香港' in countries:
            return [ProxyGroups.DIRECT, '台湾' + NODE_SUFFIX, '香港' + NODE_SUFFIX]
        return list(lists.default_proxies_direct)

    @staticmethod
    def generate_groups(countries: List[str], lists: BaseLists, flags: FeatureFlags, low_cost: bool) -> List[dict]:
        """Generate complete proxy-groups config, GLOBAL last"""
        groups = [
            {
                'name': ProxyGroups.SELECT,
                'icon': f"{ICON_BASE}/Proxy.png",
                'type': 'select',
                'proxies': list(lists.default_selector),
            },
            {
                'name': ProxyGroups.MANUAL,
                'icon': "https://gcore.jsdelivr.net/gh/shindgewongxj/WHATSINStash@master/icon/select.png",
                'include-all': True,
                'type': 'select',
            },
        ]

        if flags.landing:
            # Landing and fallback would loop back through the front proxy
            front = [
                name for name in lists.default_selector
                if name not in (ProxyGroups.LANDING, ProxyGroups.FALLBACK)
            ]
            groups.append({
                'name': ProxyGroups.FRONT,
                'icon': f"{ICON_BASE}/Area.png",
                'type': 'select',
                'include-all': True,
                'exclude-filter': ProxyGroupGenerator.landing_filter(),
                'proxies': front,
            })
            groups.append({
                'name': ProxyGroups.LANDING,
                'icon': f"{ICON_BASE}/Airport.png",
                'type': 'select',
                'include-all': True,
                'filter': ProxyGroupGenerator.landing_filter(),
            })

        groups.append({
            'name': ProxyGroups.FALLBACK,
            'icon': f"{ICON_BASE}/Bypass.png",
            'type': 'fallback',
            'url': TEST_URL,
            'proxies': list(lists.default_fallback),
            'interval': 180,
            'tolerance': 20,
            'lazy': False,
        })

        bilibili = ProxyGroupGenerator.bilibili_proxies(countries, lists)
        for name, icon in ProxyGroupGenerator.SERVICE_GROUPS:
            groups.append({
                'name': name,
                'icon': icon,
                'type': 'select',
                'proxies': bilibili if name == 'Bilibili' else list(lists.default_proxies),
            })

        groups.append({
            'name': 'PT站点',
            'icon': f"{ICON_MIRROR}/Download.png",
            'type': 'select',
            'proxies': list(lists.default_proxies_direct),
        })
        groups.append({
            'name': ProxyGroups.AD_BLOCK,
            'icon': f"{ICON_BASE}/AdBlack.png",
            'type': 'select',
            'proxies': ['REJECT', 'REJECT-DROP', ProxyGroups.DIRECT],
        })
        groups.append({
            'name': ProxyGroups.DIRECT,
            'icon': f"{ICON_BASE}/Direct.png",
            'type': 'select',
            'proxies': ['DIRECT', ProxyGroups.SELECT],
        })

        if low_cost:
            groups.append({
                'name': ProxyGroups.LOW_COST,
                'icon': f"{ICON_BASE}/Lab.png",
                'type': 'url-test',
                'url': TEST_URL,
                'include-all': True,
                'filter': ProxyGroupGenerator.low_cost_filter(),
            })

        groups.extend(ProxyGroupGenerator.country_groups(countries, flags.landing, flags.load_balance))

        # Compatibility group for clients that expose GLOBAL
        groups.append({
            'name': ProxyGroups.GLOBAL,
            'icon': f"{ICON_BASE}/Global.png",
            'include-all': True,
            'type': 'select',
            'proxies': [g['name'] for g in groups],
        })
        return groups


# ==================== Reference Check ====================

def _rule_target(rule: str) -> Optional[str]:
    """Policy of a rule line; None for rules that carry no group"""
    parts = [p.strip() for p in rule.split(',')]
    if parts[0] == 'AND' or parts[0] == 'OR' or parts[0] == 'NOT':
        return parts[-1]
    if parts[0] == 'MATCH':
        return parts[1] if len(parts) > 1 else None
    if len(parts) < 3:
        return None
    if parts[-1] == 'no-resolve':
        return parts[-2]
    return parts[2]


def find_missing_references(config: dict) -> List[str]:
    """Names referenced by groups or rules that nothing in the config defines"""
    groups = config.get('proxy-groups') or []
    nodes = {NodeClassifier.node_name(p) for p in config.get('proxies') or [] if isinstance(p, dict)}
    group_names = {g.get('name') for g in groups}
    providers = set((config.get('rule-providers') or {}).keys())
    known = BUILTIN_POLICIES | group_names | nodes

    missing = []
    for group in groups:
        for name in group.get('proxies') or []:
            if name not in known and name not in missing:
                missing.append(name)

    for rule in config.get('rules') or []:
        parts = [p.strip() for p in rule.split(',')]
        if parts[0] == 'RULE-SET' and len(parts) > 1 and parts[1] not in providers:
            ref = f"RULE-SET:{parts[1]}"
            if ref not in missing:
                missing.append(ref)
        target = _rule_target(rule)
        if target and target not in known and target not in missing:
            missing.append(target)
    return missing


# ==================== ConfigOverride ====================

class ConfigOverride:
    """Override main class"""

    def __init__(self, flags: Optional[FeatureFlags] = None):
        self.flags = flags or FeatureFlags()

    @classmethod
    def from_arguments(cls, args: Optional[Dict[str, Any]]) -> 'ConfigOverride':
        return cls(build_feature_flags(args))

    def dns_config(self) -> dict:
        if self.flags.fake_ip_enabled:
            return build_dns_config('fake-ip', self.flags.ipv6_enabled, FAKE_IP_FILTER)
        return build_dns_config('redir-host', self.flags.ipv6_enabled)

    def apply(self, config: dict) -> dict:
        """Build the overridden config from the proxies of config"""
        if not isinstance(config, dict) or not isinstance(config.get('proxies'), list):
            logger.error("No proxies found in config")
            return config

        proxies = config.get('proxies') or []
        result = {'proxies': proxies}

        country_info = NodeClassifier.parse_countries(proxies)
        low_cost = NodeClassifier.has_low_cost(proxies)
        country_group_names = get_country_group_names(country_info, self.flags.country_threshold)
        countries = strip_node_suffix(country_group_names)
        logger.info(
            "Nodes: %d, countries: %s, low cost: %s",
            len(proxies), ', '.join(f"{c.country}={c.count}" for c in country_info) or '-', low_cost
        )

        lists = build_base_lists(self.flags.landing, low_cost, country_group_names)
        proxy_groups = ProxyGroupGenerator.generate_groups(countries, lists, self.flags, low_cost)

        if self.flags.full_config:
            result.update(build_full_header(self.flags))

        result.update({
            'proxy-groups': proxy_groups,
            'rule-providers': copy.deepcopy(RULE_PROVIDERS),
            'rules': build_rules(self.flags.quic_enabled),
            'sniffer': copy.deepcopy(SNIFFER_CONFIG),
            'dns': self.dns_config(),
            'geodata-mode': True,
            'geox-url': dict(GEOX_URL),
        })
        return result


def main(config: dict, args: Optional[Dict[str, Any]] = None) -> dict:
    """Entry point with the override script signature"""
    return ConfigOverride.from_arguments(args).apply(config)


# ==================== Output ====================

def dump_config(config: dict) -> str:
    return yaml.dump(config, allow_unicode=True, sort_keys=False, default_flow_style=False, width=float("inf"))


def dump_config_compact(config: dict) -> str:
    """Block YAML with one JSON flow mapping per proxy and per group"""
    parts = []
    rest = {k: v for k, v in config.items() if k not in ('proxies', 'proxy-groups')}
    header = {k: v for k, v in rest.items() if k not in ('rule-providers', 'rules', 'sniffer', 'dns', 'geodata-mode', 'geox-url')}
    suffix = {k: v for k, v in rest.items() if k not in header}

    if header:
        parts.append(dump_config(header))
    for key in ('proxies', 'proxy-groups'):
        if key not in config:
            continue
        lines = [f'{key}:']
        for item in config[key] or []:
            lines.append(f'  - {json.dumps(item, ensure_ascii=False, separators=(",", ":"), default=str)}')
        parts.append('\n'.join(lines) + '\n')
    if suffix:
        parts.append(dump_config(suffix))
    return '\n'.join(parts)


# ==================== Main Entry ====================

if __name__ == '__main__':
    import argparse
    import sys

    from subscription import ProxyFilter, SubscriptionParser

    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(description="Apply the override rules to a subscription file")
    parser.add_argument('input', help="subscription file: Clash YAML, base64 or share links")
    parser.add_argument('-o', '--output', help="output file, stdout when omitted")
    parser.add_argument('--args', default='', help="arguments, e.g. 'landing=true&threshold=2'")
    parser.add_argument('--compact', action='store_true', help="one line per proxy and group")
    options = parser.parse_args()

    try:
        with open(options.input, 'r', encoding='utf-8') as f:
            content = f.read()
    except OSError as e:
        print(f"Error: Cannot read {options.input}: {e}")
        sys.exit(1)

    source = SubscriptionParser.parse_content(content)
    if not source.get('proxies'):
        print(f"Error: {options.input} has no proxy nodes")
        sys.exit(1)
    source['proxies'] = ProxyFilter.filter_proxies(source['proxies'])

    result = main(source, parse_arguments(options.args))
    output = dump_config_compact(result) if options.compact else dump_config(result)

    if options.output:
        with open(options.output, 'w', encoding='utf-8') as f:
            f.write(output)
        print(f"Config saved to: {options.output}")
    else:
        sys.stdout.write(output)
