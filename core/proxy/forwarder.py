# core/proxy/forwarder.py
"""Построение и выполнение исходящих запросов к upstream"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlencode

from aiohttp import ClientError, ClientSession, ClientTimeout, DummyCookieJar, TCPConnector
from multidict import CIMultiDict

from core.cookie_jar import CookieJar
from core.errors import UpstreamUnreachable
from core.proxy.rewrite_rules import ResolvedTarget, RewriteRuleTable, is_auth_path

logger = logging.getLogger(__name__)

BODYLESS_METHODS = ('GET', 'HEAD')


@dataclass
class UpstreamRequest:
    """Описание исходящего запроса, строится заново для каждого входящего"""
    method: str
    path: str                                   # путь прокси с query string
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    body: Optional[bytes] = None                # сырое тело (text/plain и т.п.)
    form: Optional[Sequence[Tuple[str, str]]] = None  # поля формы для перекодирования
    session_key: Optional[str] = None           # None = без cookie
    follow_redirects: bool = True
    timeout: Optional[float] = None


@dataclass
class UpstreamResponse:
    status: int
    headers: CIMultiDict
    body: bytes
    url: str

    @property
    def content_type(self) -> str:
        return self.headers.get('Content-Type', '')

    @property
    def set_cookies(self) -> List[str]:
        return self.headers.getall('Set-Cookie', [])


class UpstreamForwarder:
    def __init__(self, rules: RewriteRuleTable, jar: CookieJar,
                 user_agent: str, accept_language: str = 'en-US,en;q=0.9',
                 timeout: float = 30):
        """
        Args:
            rules: Таблица правил (обратное разрешение proxy -> upstream)
            jar: Cookie jar сессий
            user_agent: Фиксированный User-Agent браузера
            accept_language: Значение Accept-Language
            timeout: Общий таймаут запроса по умолчанию, сек
        """
        self.rules = rules
        self.jar = jar
        self.user_agent = user_agent
        self.accept_language = accept_language
        self.timeout = timeout

        # Upstream требует same-origin Referer
        self.referer = (rules.auth_upstream or '').rstrip('/') + '/'

        self.connector = None
        self.session = None

    async def initialize(self):
        """Инициализация connection pool"""
        if self.connector is None:
            self.connector = TCPConnector(
                limit=100,
                limit_per_host=30,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                enable_cleanup_closed=True,
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(total=self.timeout, connect=10),
                # Cookie ведет только наш jar
                cookie_jar=DummyCookieJar(),
            )

    async def cleanup(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    def resolve_target(self, request: UpstreamRequest) -> ResolvedTarget:
        # Проверка auth-пути до разрешения хоста
        use_auth_host = is_auth_path(request.path)
        return self.rules.resolve(request.path, use_auth_host=use_auth_host)

    def build_headers(self, request: UpstreamRequest) -> CIMultiDict:
        headers = CIMultiDict()
        headers['User-Agent'] = self.user_agent
        headers['Accept-Language'] = self.accept_language
        headers['Referer'] = self.referer

        accept = request.headers.get('Accept')
        if accept:
            headers['Accept'] = accept

        if request.session_key is not None:
            cookie_header = self.jar.to_header_value(request.session_key)
            if cookie_header:
                headers['Cookie'] = cookie_header

        return headers

    def build_body(self, request: UpstreamRequest, headers: CIMultiDict) -> Optional[bytes]:
        if request.method.upper() in BODYLESS_METHODS:
            return None

        if request.form:
            headers['Content-Type'] = 'application/x-www-form-urlencoded'
            return urlencode(list(request.form)).encode('utf-8')

        # Сырой текст уходит как есть, вместе с исходным Content-Type
        if request.body:
            content_type = request.headers.get('Content-Type')
            if content_type:
                headers['Content-Type'] = content_type
            return request.body
        return None

    async def forward(self, request: UpstreamRequest) -> UpstreamResponse:
        """
        Выполняет один запрос к upstream (без повторов)

        Raises:
            UpstreamUnreachable: сетевая ошибка, DNS, таймаут
        """
        target = self.resolve_target(request)
        return await self.fetch(target.url, request)

    async def fetch(self, url: str, request: UpstreamRequest) -> UpstreamResponse:
        """Запрос на уже разрешенный абсолютный URL"""
        headers = self.build_headers(request)
        body = self.build_body(request, headers)

        extra = {}
        if request.timeout:
            extra['timeout'] = ClientTimeout(total=request.timeout)

        logger.debug(
            f"📡 {request.method} {url}\n"
            f"   Session: {request.session_key}\n"
            f"   Cookies: {'yes' if 'Cookie' in headers else 'no'}\n"
            f"   Redirects: {'follow' if request.follow_redirects else 'manual'}"
        )

        await self.initialize()

        try:
            async with self.session.request(
                method=request.method,
                url=url,
                headers=headers,
                data=body,
                allow_redirects=request.follow_redirects,
                **extra,
            ) as upstream_response:
                content = await upstream_response.read()
                return UpstreamResponse(
                    status=upstream_response.status,
                    headers=CIMultiDict(upstream_response.headers),
                    body=content,
                    url=str(upstream_response.url),
                )

        except asyncio.TimeoutError as e:
            logger.error(f"❌ Таймаут upstream: {url}")
            raise UpstreamUnreachable(url, "timeout") from e

        except ClientError as e:
            logger.error(f"❌ Upstream недоступен: {url} ({e})")
            raise UpstreamUnreachable(url, str(e) or type(e).__name__) from e
