# main.py
import sys
import json
import time
import asyncio
import logging
import argparse


def setup_logging(verbose: bool = False):
    """Настраивает логирование ДО всех операций с ротацией"""
    from core.config_manager import get_app_data_dir
    from logging.handlers import RotatingFileHandler

    app_data_dir = get_app_data_dir()
    logs_dir = app_data_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    log_file = logs_dir / "scroller_proxy.log"

    # Ротирующий обработчик: макс 5MB, 5 резервных копий
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[console_handler, file_handler]
    )


logger = logging.getLogger(__name__)


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Необработанное исключение:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="scroller-proxy",
        description="Local rewriting proxy for browsing a remote site inside an embedded frame",
    )
    parser.add_argument('--config', help="Path to config.json (default: app data dir)")
    parser.add_argument('--host', help="Listen address (overrides proxy.host)")
    parser.add_argument('--port', type=int, help="Listen port (overrides proxy.port)")
    parser.add_argument('-v', '--verbose', action='store_true', help="Debug logging")

    subparsers = parser.add_subparsers(dest='command')
    subparsers.add_parser('serve', help="Run the proxy server (default)")

    import_parser = subparsers.add_parser(
        'import-credentials',
        help="Import the session cookie from the local browser and verify it",
    )
    import_parser.add_argument('--cookie-db', help="Path to the browser cookie database")
    import_parser.add_argument('--session', help="Session key to store the cookie under")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = 'serve'
    return args


def load_config(args):
    from core.config_manager import ConfigManager, get_config

    config = ConfigManager(args.config) if args.config else get_config()
    if args.host:
        config.config['proxy']['host'] = args.host
    if args.port:
        config.config['proxy']['port'] = args.port
    return config


def serve(config) -> int:
    """Запуск прокси до Ctrl+C"""
    from core.proxy_manager import ProxyManager

    proxy_manager = ProxyManager(config)
    if not proxy_manager.start():
        status = proxy_manager.get_status()
        error = status.get('error', {})
        logger.error(f"❌ Не удалось запустить прокси: {error.get('details', 'unknown error')}")
        return 1

    logger.info(f"🌐 Open http://127.0.0.1:{proxy_manager.local_port}/ in the frame. Ctrl+C to stop")

    try:
        while proxy_manager.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("🛑 Получен сигнал остановки")
    finally:
        proxy_manager.stop()

    return 0


async def run_import(config, session_key=None):
    """Разовый импорт cookie из браузера с проверкой на upstream"""
    from core.cookie_jar import CookieJar
    from core.credential_importer import import_credentials
    from core.errors import PersistenceWriteFailed
    from core.jar_store import CookieJarStore
    from core.proxy_manager import ScrollerProxy

    jar = CookieJar()
    persistence_path = config.get_persistence_path()
    store = CookieJarStore(persistence_path) if persistence_path else None
    if store:
        store.load_into(jar)

    proxy = ScrollerProxy(config, jar, store=store)
    session_key = session_key or proxy.credentials_session

    try:
        result = await import_credentials(
            proxy.importer,
            proxy.forwarder,
            jar,
            session_key,
            verify_path=proxy.verify_path,
        )
    finally:
        await proxy.cleanup()

    if result.ok and store:
        try:
            store.save(jar)
        except PersistenceWriteFailed as e:
            logger.error(f"❌ {e}")
    return result


def import_credentials_command(config, args) -> int:
    if args.cookie_db:
        config.config['credentials']['cookie_db'] = args.cookie_db

    result = asyncio.run(run_import(config, args.session))
    print(json.dumps(result.to_dict(), ensure_ascii=False))
    return 0 if result.ok else 1


def main(argv=None):
    """Основная функция приложения"""
    args = parse_args(argv)

    # НАСТРАИВАЕМ ЛОГИРОВАНИЕ САМЫМ ПЕРВЫМ ДЕЛОМ
    setup_logging(args.verbose)
    setup_exception_handler()

    logger.info("🚀 Запуск Scroller Proxy")

    config = load_config(args)

    if args.command == 'import-credentials':
        return import_credentials_command(config, args)
    return serve(config)


if __name__ == "__main__":
    sys.exit(main())
