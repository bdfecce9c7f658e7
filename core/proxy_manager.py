# proxy_manager.py
import asyncio
import logging
import threading
import time
from typing import Optional

from aiohttp import web
from multidict import CIMultiDict

from core.config_manager import ConfigManager, get_config
from core.cookie_jar import CookieJar
from core.credential_importer import CredentialImporter, import_credentials
from core.errors import PersistenceWriteFailed, UpstreamUnexpectedContent, UpstreamUnreachable
from core.jar_store import CookieJarStore
from core.proxy.content_rewriter import CORS_HEADERS, OutboundResponse, ResponseRewriter
from core.proxy.forwarder import UpstreamForwarder, UpstreamRequest
from core.proxy.rewrite_rules import RewriteRuleTable, RouteKind
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)

HEALTH_PATH = '/proxy-health'
CREDENTIALS_PATH = '/proxy-auth/login'
POPUP_PREFIX = '/popup'
TRACKING_ROOT = '/tracking/'

# Заголовки, которые popup не передает браузеру
POPUP_DROPPED_HEADERS = {'content-encoding', 'content-length', 'transfer-encoding', 'connection', 'keep-alive'}

FORM_CONTENT_TYPES = ('application/x-www-form-urlencoded', 'multipart/form-data')


class ScrollerProxy:
    def __init__(self, config: ConfigManager, jar: CookieJar,
                 store: Optional[CookieJarStore] = None,
                 importer: Optional[CredentialImporter] = None):
        """
        Args:
            config: Конфигурация (секции proxy, upstream, credentials)
            jar: Cookie jar сессий (один на процесс)
            store: Хранилище jar на диске (None = без сохранения)
            importer: Импорт cookie из браузера (None = из конфигурации)
        """
        self.config = config
        self.jar = jar
        self.store = store

        proxy_config = config.get_proxy_config()
        upstream_config = config.get_upstream_config()

        self.default_session = proxy_config.get('default_session', 'default')
        self.session_param = proxy_config.get('session_param', '_session')
        self.tracking_timeout = proxy_config.get('tracking_timeout', 3)
        self.verify_path = upstream_config.get('verify_path', '/api/me.json')
        self.stub_prefixes = tuple(upstream_config.get('stub_prefixes', []))

        self.rules = RewriteRuleTable.from_config(upstream_config)
        self.forwarder = UpstreamForwarder(
            self.rules,
            jar,
            user_agent=proxy_config['user_agent'],
            accept_language=proxy_config.get('accept_language', 'en-US,en;q=0.9'),
            timeout=proxy_config.get('request_timeout', 30),
        )
        self.rewriter = ResponseRewriter(self.rules, jar, session_param=self.session_param)

        if importer is None:
            credentials = config.get_credentials_config()
            importer = CredentialImporter(
                credentials['cookie_db'],
                host_pattern=credentials.get('host_pattern', '%reddit.com'),
                cookie_name=credentials.get('cookie_name', 'reddit_session'),
                signature=credentials.get('token_signature', 'eyJ'),
            )
        self.importer = importer
        self.credentials_session = config.get('credentials.session', self.default_session)

        # Статистика
        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'errors': 0
        }

    async def initialize(self):
        await self.forwarder.initialize()

    async def cleanup(self):
        """Очистка ресурсов"""
        await self.forwarder.cleanup()

    # ── маршрутизация ───────────────────────────────────────────────────

    async def router(self, request: web.Request) -> web.StreamResponse:
        """Маршрутизация всех запросов"""
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            response = await self._dispatch(request)
            self.stats['total_responses'] += 1
            return response

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ HTTP Error: {e}", exc_info=True)
            return web.Response(text=f"Proxy error: {str(e)}", status=500, headers=CORS_HEADERS)

        finally:
            self.stats['active_connections'] -= 1

    async def _dispatch(self, request: web.Request) -> web.StreamResponse:
        path = request.path

        if request.method == 'OPTIONS':
            return self.handle_preflight(request)
        if path == HEALTH_PATH:
            return self.handle_health(request)
        if path == CREDENTIALS_PATH:
            return await self.handle_credentials(request)
        if path == POPUP_PREFIX or path.startswith(POPUP_PREFIX + '/'):
            return await self.handle_popup(request)
        if self.stub_prefixes and path.startswith(self.stub_prefixes):
            return self.handle_stub(request)

        kind = self.rules.resolve(path).kind
        if kind == RouteKind.STATIC:
            return await self.handle_static(request)
        if kind == RouteKind.TRACKING or path.startswith(TRACKING_ROOT):
            return await self.handle_tracking(request)
        return await self.handle_content(request)

    # ── служебные маршруты ──────────────────────────────────────────────

    def handle_preflight(self, request: web.Request) -> web.Response:
        return web.Response(status=204, headers=CORS_HEADERS)

    def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'ok',
            'service': 'scroller',
            'sessions': len(self.jar),
            'stats': self.get_full_stats(),
        })

    def handle_stub(self, request: web.Request) -> web.Response:
        return web.json_response({}, headers=CORS_HEADERS)

    async def handle_credentials(self, request: web.Request) -> web.Response:
        """Импорт cookie из браузера + проверка на upstream"""
        result = await import_credentials(
            self.importer,
            self.forwarder,
            self.jar,
            self.credentials_session,
            verify_path=self.verify_path,
        )
        if result.ok:
            self.persist_jar()
        return web.json_response(result.to_dict(), headers=CORS_HEADERS)

    # ── основные маршруты ───────────────────────────────────────────────

    async def handle_content(self, request: web.Request) -> web.Response:
        """Проксирование страниц и API upstream с перезаписью"""
        session_key = request.query.get(self.session_param) or self.default_session
        upstream_request = await self.build_upstream_request(
            request,
            path=self._strip_session_param(request),
            session_key=session_key,
        )

        logger.info(f"📡 Proxying: {request.method} {upstream_request.path} [Session: {session_key}]")

        try:
            upstream = await self.forwarder.forward(upstream_request)
        except UpstreamUnreachable as e:
            self.stats['errors'] += 1
            return self._error_response(502, f"Upstream unreachable: {e.reason}")

        outbound = self.rewriter.rewrite(upstream, session_key)
        if upstream.set_cookies:
            self.persist_jar()
        return self._to_web_response(outbound)

    async def handle_static(self, request: web.Request) -> web.Response:
        """Статика (JS/CSS/картинки) с проверкой типа контента"""
        upstream_request = UpstreamRequest(method='GET', path=request.path_qs)
        logger.debug(f"📦 Proxying static: {request.path_qs}")

        try:
            upstream = await self.forwarder.forward(upstream_request)
            outbound = self.rewriter.rewrite(upstream, None, asset_path=request.path)
        except UpstreamUnreachable as e:
            self.stats['errors'] += 1
            return self._error_response(502, f"Static proxy error: {e.reason}")
        except UpstreamUnexpectedContent as e:
            self.stats['errors'] += 1
            return self._error_response(500, f"Invalid response from upstream for {e.url}")

        return self._to_web_response(outbound)

    async def handle_tracking(self, request: web.Request) -> web.Response:
        """Телеметрия: ошибки upstream никогда не доходят до страницы"""
        if self.rules.resolve(request.path).kind != RouteKind.TRACKING:
            return web.Response(status=204, headers=CORS_HEADERS)

        upstream_request = await self.build_upstream_request(request, path=request.path_qs, session_key=None)
        upstream_request.timeout = self.tracking_timeout

        try:
            upstream = await self.forwarder.forward(upstream_request)
        except UpstreamUnreachable as e:
            logger.debug(f"📊 Tracking request failed (OK to ignore): {e.reason}")
            return web.Response(status=204, headers=CORS_HEADERS)

        headers = CIMultiDict(CORS_HEADERS)
        headers['Content-Type'] = 'application/json'
        if 200 <= upstream.status < 300:
            return web.Response(status=upstream.status, body=upstream.body or b'{}', headers=headers)
        return web.Response(status=upstream.status, body=b'{}', headers=headers)

    async def handle_popup(self, request: web.Request) -> web.Response:
        """Окно логина: чистый passthrough без перезаписи и без следования редиректам"""
        path = request.path_qs[len(POPUP_PREFIX):] or '/'
        if not path.startswith('/'):
            path = '/' + path

        upstream_request = await self.build_upstream_request(request, path=path, session_key=self.default_session)
        upstream_request.follow_redirects = False
        url = self.rules.auth_upstream + path

        logger.info(f"📱 Popup proxy: {url}")

        try:
            upstream = await self.forwarder.fetch(url, upstream_request)
        except UpstreamUnreachable as e:
            self.stats['errors'] += 1
            return self._error_response(502, f"Upstream unreachable: {e.reason}")

        if upstream.set_cookies:
            accepted = self.jar.merge(self.default_session, upstream.set_cookies)
            logger.info(f"🍪 Captured {accepted} cookies from login")
            self.persist_jar()

        headers = CIMultiDict()
        for key, value in upstream.headers.items():
            if key.lower() not in POPUP_DROPPED_HEADERS:
                headers.add(key, value)
        headers['Access-Control-Allow-Origin'] = '*'

        return web.Response(status=upstream.status, body=upstream.body, headers=headers)

    # ── вспомогательные ─────────────────────────────────────────────────

    async def build_upstream_request(self, request: web.Request, path: str,
                                     session_key: Optional[str]) -> UpstreamRequest:
        """Описание исходящего запроса из входящего"""
        upstream_request = UpstreamRequest(
            method=request.method,
            path=path,
            headers=CIMultiDict(request.headers),
            session_key=session_key,
        )

        if request.method in ('GET', 'HEAD') or not request.body_exists:
            return upstream_request

        content_type = request.content_type
        if content_type in FORM_CONTENT_TYPES:
            form = await request.post()
            upstream_request.form = [
                (key, value) for key, value in form.items() if isinstance(value, str)
            ]
        elif content_type == 'application/json':
            upstream_request.form = await self._json_fields(request)
            if upstream_request.form is None:
                upstream_request.body = await request.read()
        else:
            upstream_request.body = await request.read()

        return upstream_request

    @staticmethod
    async def _json_fields(request: web.Request):
        """JSON-объект -> поля формы; все остальное (массив, невалидный JSON) -> None"""
        try:
            data = await request.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        return [
            (str(key), value if isinstance(value, str) else str(value))
            for key, value in data.items()
        ]

    def _strip_session_param(self, request: web.Request) -> str:
        if self.session_param not in request.query:
            return request.path_qs
        query = request.rel_url.query.copy()
        query.popall(self.session_param)
        return str(request.rel_url.with_query(query))

    @staticmethod
    def _error_response(status: int, message: str) -> web.Response:
        return web.Response(
            text=message,
            status=status,
            content_type='text/plain',
            headers=CORS_HEADERS,
        )

    @staticmethod
    def _to_web_response(outbound: OutboundResponse) -> web.Response:
        return web.Response(status=outbound.status, body=outbound.body, headers=outbound.headers)

    def persist_jar(self):
        """Запись jar на диск в фоне; ошибка только логируется"""
        if self.store is None:
            return

        snapshot = self.jar.snapshot()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.store.write, snapshot)
        future.add_done_callback(self._on_persisted)

    @staticmethod
    def _on_persisted(future: asyncio.Future):
        if future.cancelled():
            return
        error = future.exception()
        if isinstance(error, PersistenceWriteFailed):
            logger.error(f"❌ {error}")
        elif error is not None:
            logger.error(f"❌ Unexpected cookie store error: {error}")

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors']
        }


def create_app(proxy: ScrollerProxy) -> web.Application:
    """aiohttp приложение с единым маршрутом на роутер прокси"""

    async def on_startup(app):
        await proxy.initialize()

    async def on_cleanup(app):
        await proxy.cleanup()

    app = web.Application()
    app.router.add_route('*', '/{path:.*}', proxy.router)
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


class ProxyManager:
    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config or get_config()
        self.is_running = False
        self.host = self.config.get('proxy.host', '0.0.0.0')
        self.local_port = self.config.get('proxy.port', 5177)

        self.jar = CookieJar()
        persistence_path = self.config.get_persistence_path()
        self.store = CookieJarStore(persistence_path) if persistence_path else None

        self.proxy = None
        self.runner = None
        self.site = None
        self.loop = None
        self.thread = None

        # Error tracking
        self.last_error_type = None  # Тип последней ошибки: 'port', 'server'
        self.last_error_details = None

    def start(self) -> bool:
        """
        Запуск прокси сервера в отдельном потоке

        Returns:
            bool: True если успешно запущен
        """
        if self.is_running:
            logger.warning("⚠️ Прокси уже запущен")
            return False

        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        if self.store:
            self.store.load_into(self.jar)

        self.thread = threading.Thread(target=self._run_server, daemon=True)
        self.thread.start()

        # Ждём запуска (максимум 5 секунд)
        for _ in range(50):
            if self.is_running or self.last_error_type:
                break
            time.sleep(0.1)

        if not self.is_running:
            logger.error("❌ Прокси не запустился за отведенное время")
            return False

        logger.info(f"✅ Proxy server started on http://{self.host}:{self.local_port}")
        return True

    def _run_server(self):
        """Запускает сервер в отдельном event loop"""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)

            self.loop.run_until_complete(self._start_server())
            if self.is_running:
                self.loop.run_forever()

        except Exception as e:
            logger.error(f"❌ Ошибка в event loop: {e}")
            self.is_running = False
        finally:
            if self.loop:
                self.loop.close()

    async def _start_server(self):
        """Асинхронный запуск сервера"""
        try:
            self.proxy = ScrollerProxy(self.config, self.jar, store=self.store)

            app = create_app(self.proxy)
            self.runner = web.AppRunner(app, access_log=None)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, host=self.host, port=self.local_port)
            await self.site.start()

            self.is_running = True
            logger.info(f"✅ Сервер успешно запущен на порту {self.local_port}")

        except OSError as e:
            logger.error(f"❌ Ошибка запуска сервера: {e}")
            self.last_error_type = 'server'
            self.last_error_details = str(e)
            self.is_running = False

    def stop(self):
        """Остановка прокси сервера"""
        if not self.is_running:
            logger.warning("⚠️ Прокси не запущен")
            return

        logger.info("🛑 Stopping proxy...")
        self.is_running = False

        if self.loop and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
            try:
                future.result(timeout=5)
            except Exception as e:
                logger.error(f"❌ Ошибка при остановке сервера: {e}")
            self.loop.call_soon_threadsafe(self.loop.stop)

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        if self.store:
            try:
                self.store.save(self.jar)
            except PersistenceWriteFailed as e:
                logger.error(f"❌ {e}")

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}\n"
                f"   Active connections: {stats.get('active', 0)}"
            )

        logger.info("✅ Proxy stopped")

    async def _stop_server(self):
        """Асинхронная остановка сервера"""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.debug("✅ Сервер успешно остановлен")

    def get_status(self):
        """Возвращает статус прокси"""
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.local_port,
            'sessions': len(self.jar),
            'persistence': str(self.store.path) if self.store else None,
        }

        if self.last_error_type:
            status['error'] = {'type': self.last_error_type, 'details': self.last_error_details}

        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()

        return status
