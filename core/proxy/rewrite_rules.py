# core/proxy/rewrite_rules.py
"""
Таблица правил перезаписи URL.

Одна таблица используется и сервером (перезапись HTML, маршрутизация входящих
путей обратно на upstream), и клиентским скриптом перехвата (см.
interception_script.py), поэтому новый upstream хост добавляется только здесь.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# Символ после префикса, при котором совпадение НЕ считается границей хоста
# (https://reddit.com.evil.example, https://reddit.com:8443)
HOST_CHAR_CLASS = r'[\w.\-:@]'

# Пути логина/авторизации идут на "текущий" хост, а не на old.*
AUTH_PATH_MARKERS = ('/login', '/auth')


class RouteKind(str, Enum):
    CONTENT = "content"
    STATIC = "static"
    TRACKING = "tracking"


@dataclass(frozen=True)
class RewriteRule:
    upstream: str       # https://www.redditstatic.com
    proxy_prefix: str   # /proxy-static ('' = корень прокси)
    kind: RouteKind
    canonical: bool = False  # используется для обратного разрешения proxy -> upstream


@dataclass(frozen=True)
class ResolvedTarget:
    kind: RouteKind
    url: str
    rule: RewriteRule


def _join(proxy_prefix: str, rest: str) -> str:
    result = proxy_prefix + rest
    if not result.startswith('/'):
        result = '/' + result
    return result


def is_auth_path(path: str) -> bool:
    """Путь относится к логину/авторизации (query string не учитывается)"""
    path_only = path.split('?', 1)[0]
    return any(marker in path_only for marker in AUTH_PATH_MARKERS)


class RewriteRuleTable:
    """Упорядоченный набор правил upstream-префикс -> proxy-префикс"""

    def __init__(self, rules: Iterable[RewriteRule], auth_upstream: Optional[str] = None):
        rules = list(rules)

        seen: Dict[str, RewriteRule] = {}
        for rule in rules:
            if rule.upstream in seen:
                raise ValueError(f"Duplicate upstream prefix in rewrite table: {rule.upstream}")
            seen[rule.upstream] = rule

        # Длинный префикс первым
        self.rules: List[RewriteRule] = sorted(rules, key=lambda r: len(r.upstream), reverse=True)
        self._by_upstream = seen
        self.auth_upstream = auth_upstream

        self._canonical = sorted(
            (r for r in rules if r.canonical),
            key=lambda r: len(r.proxy_prefix),
            reverse=True,
        )
        if not any(r.kind == RouteKind.CONTENT for r in self._canonical):
            raise ValueError("Rewrite table needs a canonical content rule")

        alternation = '|'.join(re.escape(r.upstream) for r in self.rules)
        self._url_pattern = re.compile(f'(?:{alternation})(?!{HOST_CHAR_CLASS})')

        logger.debug(f"RewriteRuleTable: {len(self.rules)} rules")

    @classmethod
    def from_config(cls, upstream: Dict) -> "RewriteRuleTable":
        """Строит таблицу из секции 'upstream' конфигурации"""
        rules: List[RewriteRule] = []
        known = set()

        def add(url: str, prefix: str, kind: RouteKind, canonical: bool = False):
            url = url.rstrip('/')
            if url in known:
                return
            known.add(url)
            rules.append(RewriteRule(url, prefix, kind, canonical))

        add(upstream['content_host'], '', RouteKind.CONTENT, canonical=True)
        if upstream.get('auth_host'):
            add(upstream['auth_host'], '', RouteKind.CONTENT)
        for alias in upstream.get('content_aliases', []):
            add(alias, '', RouteKind.CONTENT)

        if upstream.get('static_host'):
            add(upstream['static_host'], '/proxy-static', RouteKind.STATIC, canonical=True)
            for alias in upstream.get('static_aliases', []):
                add(alias, '/proxy-static', RouteKind.STATIC)

        for name, url in upstream.get('tracking_hosts', {}).items():
            add(url, f'/tracking/{name}', RouteKind.TRACKING, canonical=True)

        auth_host = upstream.get('auth_host') or upstream['content_host']
        return cls(rules, auth_upstream=auth_host.rstrip('/'))

    # ── upstream -> proxy ───────────────────────────────────────────────

    def match(self, url: str) -> Optional[RewriteRule]:
        """Правило с самым длинным совпадающим upstream-префиксом"""
        if not isinstance(url, str):
            return None
        m = self._url_pattern.match(url)
        if not m:
            return None
        return self._by_upstream[m.group(0)]

    def rewrite_url(self, url: str) -> str:
        """Абсолютный upstream URL -> путь прокси; остальное без изменений"""
        rule = self.match(url)
        if rule is None:
            return url
        return _join(rule.proxy_prefix, url[len(rule.upstream):])

    def rewrite_text(self, text: str) -> str:
        """Глобальная замена всех абсолютных upstream URL в тексте"""

        def replace(m: re.Match) -> str:
            rule = self._by_upstream[m.group(0)]
            next_char = text[m.end():m.end() + 1]
            if rule.proxy_prefix or next_char == '/':
                return rule.proxy_prefix
            return '/'

        return self._url_pattern.sub(replace, text)

    # ── proxy -> upstream ───────────────────────────────────────────────

    def resolve(self, path: str, use_auth_host: bool = False) -> ResolvedTarget:
        """
        Разрешает путь прокси (с query string) в абсолютный upstream URL

        Args:
            path: Путь прокси, например /proxy-static/app.js?v=1
            use_auth_host: Для content-маршрута использовать auth хост

        Returns:
            ResolvedTarget
        """
        for rule in self._canonical:
            prefix = rule.proxy_prefix
            if prefix and not (path == prefix or path.startswith(prefix + '/') or path.startswith(prefix + '?')):
                continue

            rest = path[len(prefix):]
            if not rest.startswith('/'):
                rest = '/' + rest

            base = rule.upstream
            if rule.kind == RouteKind.CONTENT and use_auth_host and self.auth_upstream:
                base = self.auth_upstream
            return ResolvedTarget(rule.kind, base + rest, rule)

        # Недостижимо: канонический content-правило с префиксом '' совпадает всегда
        raise LookupError(f"No rewrite rule for path {path}")

    # ── общие данные для клиентского скрипта ────────────────────────────

    def proxy_prefixes(self, kind: RouteKind) -> List[str]:
        prefixes = []
        for rule in self.rules:
            if rule.kind == kind and rule.proxy_prefix not in prefixes:
                prefixes.append(rule.proxy_prefix)
        return prefixes

    def to_client_rules(self) -> List[Dict[str, str]]:
        """Правила в порядке проверки (длинный префикс первым) для JS"""
        return [
            {'upstream': r.upstream, 'proxy': r.proxy_prefix, 'kind': r.kind.value}
            for r in self.rules
        ]
