# core/proxy/content_rewriter.py
"""Классификация и перезапись ответов upstream"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from multidict import CIMultiDict

from core.cookie_jar import CookieJar
from core.errors import UpstreamUnexpectedContent
from core.proxy.forwarder import UpstreamResponse
from core.proxy.interception_script import SCRIPT_MARKER, build_interception_script
from core.proxy.rewrite_rules import RewriteRuleTable

logger = logging.getLogger(__name__)


class ContentKind(str, Enum):
    HTML = "html"
    JSON = "json"
    OTHER = "other"


# Тип контента статики по расширению пути
STATIC_CONTENT_TYPES = {
    '.js': 'application/javascript; charset=utf-8',
    '.css': 'text/css; charset=utf-8',
    '.json': 'application/json',
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.gif': 'image/gif',
    '.svg': 'image/svg+xml',
}

# Заголовки upstream, которые не передаются браузеру
DROPPED_HEADERS = {
    'content-encoding', 'content-length', 'transfer-encoding', 'connection',
    'keep-alive', 'set-cookie', 'x-frame-options', 'content-security-policy',
    'content-security-policy-report-only', 'strict-transport-security',
    'access-control-allow-origin', 'access-control-allow-credentials',
    'access-control-allow-methods', 'access-control-allow-headers',
    'access-control-expose-headers', 'alt-svc',
}

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS, HEAD',
    'Access-Control-Allow-Headers': (
        'Content-Type, Authorization, x-modhash, X-Modhash, X-CSRF-Token, Accept, '
        'Accept-Language, Content-Language, Cache-Control, User-Agent, Cookie'
    ),
    'Access-Control-Expose-Headers': 'Set-Cookie, x-modhash, X-Modhash',
    'Access-Control-Allow-Credentials': 'true',
}

STATIC_CACHE_CONTROL = 'public, max-age=31536000'


@dataclass
class OutboundResponse:
    status: int
    headers: CIMultiDict
    body: bytes


def classify(content_type: str) -> ContentKind:
    content_type = (content_type or '').lower()
    if 'text/html' in content_type or 'application/xhtml' in content_type:
        return ContentKind.HTML
    if 'json' in content_type:
        return ContentKind.JSON
    return ContentKind.OTHER


def infer_static_content_type(path: str) -> Optional[str]:
    """Тип контента по расширению пути (query string игнорируется)"""
    path_only = path.split('?', 1)[0].lower()
    for ext, content_type in STATIC_CONTENT_TYPES.items():
        if path_only.endswith(ext):
            return content_type
    return None


def looks_like_html(body: bytes) -> bool:
    head = body[:64].lstrip().lower()
    return head.startswith(b'<!doctype html') or head.startswith(b'<html')


def browser_cookie(raw: str) -> str:
    """Set-Cookie для браузера: без Domain (host-only на нашем origin) и без SameSite=None"""
    rewritten = re.sub(r';\s*Domain=[^;]*', '', raw, flags=re.IGNORECASE)
    rewritten = re.sub(r';\s*SameSite=None', '', rewritten, flags=re.IGNORECASE)
    return rewritten


class ResponseRewriter:
    """Перезапись ответов upstream для отдачи браузеру"""

    # Проходы по HTML выполняются строго в этом порядке:
    # CSP и телеметрия удаляются до вставки скрипта, вставка выполняется один раз
    _CSP_META_PATTERN = re.compile(
        r'<meta\s+http-equiv=["\']Content-Security-Policy(?:-Report-Only)?["\'][^>]*>',
        re.IGNORECASE,
    )
    _TELEMETRY_SCRIPT_PATTERN = re.compile(r'<script[^>]*sentry[^>]*>[\s\S]*?</script>', re.IGNORECASE)
    _TELEMETRY_INLINE_PATTERN = re.compile(r'window\.sentryLoaded[^;]*;', re.IGNORECASE)
    _HEAD_PATTERN = re.compile(r'<head(?:\s[^>]*)?>', re.IGNORECASE)
    _HTML_PATTERN = re.compile(r'<html(?:\s[^>]*)?>', re.IGNORECASE)

    def __init__(self, rules: RewriteRuleTable, jar: CookieJar, session_param: Optional[str] = None):
        """
        Args:
            rules: Таблица правил перезаписи URL
            jar: Cookie jar, куда попадают Set-Cookie от upstream
            session_param: Имя query-параметра сессии (для скрипта перехвата)
        """
        self.rules = rules
        self.jar = jar
        self.script = build_interception_script(rules, session_param)

    def rewrite(self, upstream: UpstreamResponse, session_key: Optional[str],
                asset_path: Optional[str] = None) -> OutboundResponse:
        """
        Перезаписывает ответ upstream

        Args:
            upstream: Буферизованный ответ upstream
            session_key: Сессия для сохранения cookie (None = cookie не сохраняются)
            asset_path: Путь запроса статики; включает определение типа
                по расширению и проверку на подмену HTML страницей ошибки

        Returns:
            OutboundResponse

        Raises:
            UpstreamUnexpectedContent: HTML вместо ожидаемого ресурса статики
        """
        headers = self.rewrite_headers(upstream.headers)

        if session_key is not None:
            for cookie in self.capture_cookies(upstream.set_cookies, session_key):
                headers.add('Set-Cookie', cookie)

        content_type = upstream.content_type
        if asset_path is not None:
            content_type = self._check_asset(upstream, asset_path)
            headers['Cache-Control'] = STATIC_CACHE_CONTROL

        kind = classify(content_type)
        body = upstream.body

        if kind == ContentKind.HTML:
            html = self.decode(upstream.body, upstream.headers.get('Content-Type', ''))
            body = self.rewrite_html(html).encode('utf-8')
            content_type = 'text/html; charset=utf-8'
        elif kind == ContentKind.JSON:
            # JSON отдается байт в байт
            content_type = content_type or 'application/json'

        headers['Content-Type'] = content_type or 'application/octet-stream'

        logger.debug(f"Rewritten {upstream.url}: {kind.value}, {len(body)} bytes")
        return OutboundResponse(status=upstream.status, headers=headers, body=body)

    # ── cookies ─────────────────────────────────────────────────────────

    def capture_cookies(self, raw_cookies: List[str], session_key: str) -> List[str]:
        """Сохраняет Set-Cookie в jar и возвращает версии для браузера"""
        if not raw_cookies:
            return []

        accepted = self.jar.merge(session_key, raw_cookies)
        logger.info(f"🍪 Captured {accepted} cookies for session: {session_key}")
        return [browser_cookie(raw) for raw in raw_cookies]

    # ── headers ─────────────────────────────────────────────────────────

    def rewrite_headers(self, upstream_headers: CIMultiDict) -> CIMultiDict:
        headers = CIMultiDict()
        for key, value in upstream_headers.items():
            if key.lower() in DROPPED_HEADERS:
                continue
            if key.lower() == 'location':
                value = self.rules.rewrite_url(value)
            headers.add(key, value)

        headers.update(CORS_HEADERS)
        headers['X-Frame-Options'] = 'ALLOWALL'
        return headers

    # ── static assets ───────────────────────────────────────────────────

    def _check_asset(self, upstream: UpstreamResponse, asset_path: str) -> str:
        inferred = infer_static_content_type(asset_path)
        declared = upstream.content_type

        got_html = looks_like_html(upstream.body) or classify(declared) == ContentKind.HTML
        if got_html and classify(inferred or '') != ContentKind.HTML:
            logger.warning(f"⚠️ Got HTML response for static asset: {upstream.url}")
            raise UpstreamUnexpectedContent(upstream.url, inferred or declared or 'asset', 'text/html')

        return inferred or declared

    # ── HTML ────────────────────────────────────────────────────────────

    @staticmethod
    def decode(body: bytes, content_type: str) -> str:
        match = re.search(r'charset=([\w-]+)', content_type or '', re.IGNORECASE)
        encoding = match.group(1) if match else 'utf-8'
        try:
            return body.decode(encoding, errors='replace')
        except LookupError:
            return body.decode('utf-8', errors='replace')

    def rewrite_html(self, html: str) -> str:
        html = self.strip_csp_meta(html)
        html = self.strip_telemetry(html)
        html = self.rewrite_urls(html)
        html = self.inject_script(html)
        return html

    def strip_csp_meta(self, html: str) -> str:
        return self._CSP_META_PATTERN.sub('', html)

    def strip_telemetry(self, html: str) -> str:
        html = self._TELEMETRY_SCRIPT_PATTERN.sub('', html)
        return self._TELEMETRY_INLINE_PATTERN.sub('', html)

    def rewrite_urls(self, html: str) -> str:
        return self.rules.rewrite_text(html)

    def inject_script(self, html: str) -> str:
        """
        Вставляет скрипт перехвата первым элементом <head>

        Повторно не вставляет, если тег скрипта уже есть. Без <head> создает
        его после <html> (или в начале документа).
        """
        if f'<script {SCRIPT_MARKER}' in html:
            return html

        injection = self.script + '<meta name="referrer" content="no-referrer">'

        match = self._HEAD_PATTERN.search(html)
        if match:
            return html[:match.end()] + injection + html[match.end():]

        head = f'<head>{injection}</head>'
        match = self._HTML_PATTERN.search(html)
        if match:
            return html[:match.end()] + head + html[match.end():]
        return head + html
