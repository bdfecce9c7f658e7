import json
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


def get_app_data_dir() -> Path:
    """Возвращает путь для хранения данных приложения"""
    env_dir = os.getenv('SCROLLER_DATA_DIR')
    if env_dir:
        app_data_dir = Path(env_dir)
    elif os.name == 'nt':  # Windows
        appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
        app_data_dir = appdata_dir / 'ScrollerProxy'
    else:  # Linux/Mac
        app_data_dir = Path.home() / '.config' / 'scroller-proxy'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


def get_default_cookie_db() -> Path:
    """Путь к базе cookie браузера по умолчанию (Brave, затем Chrome/Chromium)"""
    home = Path.home()
    candidates = [
        home / '.config' / 'BraveSoftware' / 'Brave-Browser' / 'Default' / 'Cookies',
        home / '.config' / 'google-chrome' / 'Default' / 'Cookies',
        home / '.config' / 'chromium' / 'Default' / 'Cookies',
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        """Возвращает путь к файлу конфигурации"""
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Возвращает конфигурацию по умолчанию"""
        return {
            'proxy': {
                'host': '0.0.0.0',
                'port': 5177,
                'default_session': 'default',
                'session_param': '_session',
                'user_agent': (
                    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 '
                    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
                ),
                'accept_language': 'en-US,en;q=0.9',
                'request_timeout': 30,
                'tracking_timeout': 3,
            },

            'upstream': {
                'content_host': 'https://old.reddit.com',
                'auth_host': 'https://www.reddit.com',
                'content_aliases': ['https://reddit.com'],
                'static_host': 'https://www.redditstatic.com',
                'static_aliases': ['https://redditstatic.com'],
                'tracking_hosts': {
                    'w3-reporting': 'https://w3-reporting.reddit.com',
                    'error': 'https://error-tracking.reddit.com',
                    'rlcdn': 'https://id.rlcdn.com',
                },
                'stub_prefixes': ['/svc/shreddit/'],
                'verify_path': '/api/me.json',
            },

            'persistence': {
                'enabled': True,
                'path': None,  # None = <app data>/cookies.json
            },

            'credentials': {
                'cookie_db': None,  # None = автоопределение
                'host_pattern': '%reddit.com',
                'cookie_name': 'reddit_session',
                'token_signature': 'eyJ',
                'session': 'default',
            },
        }

    def _load_config(self) -> Dict[str, Any]:
        """Загружает конфигурацию из файла"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    # Объединяем с дефолтными значениями
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Ошибка загрузки конфига: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Рекурсивное объединение словарей"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        """Сохраняет конфигурацию в файл"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info("Конфигурация сохранена")
            return True
        except OSError as e:
            logger.error(f"Ошибка сохранения конфига: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Получает значение по ключу (dot notation)"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Устанавливает значение по ключу (dot notation)"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def get_proxy_config(self) -> Dict[str, Any]:
        """Возвращает настройки прокси"""
        return self.get('proxy', {})

    def get_upstream_config(self) -> Dict[str, Any]:
        """Возвращает настройки upstream хостов"""
        return self.get('upstream', {})

    def get_credentials_config(self) -> Dict[str, Any]:
        """Возвращает настройки импорта учетных данных"""
        config = dict(self.get('credentials', {}))
        if not config.get('cookie_db'):
            config['cookie_db'] = str(get_default_cookie_db())
        return config

    def get_persistence_path(self) -> Optional[Path]:
        """Путь к файлу cookie jar или None если сохранение отключено"""
        if not self.get('persistence.enabled', False):
            return None
        path = self.get('persistence.path')
        if path:
            return Path(path)
        return self.config_path.parent / 'cookies.json'

    def reset_to_defaults(self) -> bool:
        """Сбрасывает настройки к значениям по умолчанию"""
        self.config = self._get_default_config()
        return self.save()


# Синглтон для глобального доступа
_config_instance = None


def get_config() -> ConfigManager:
    """Возвращает глобальный экземпляр ConfigManager"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager()
    return _config_instance
