# core/cookie_jar.py
"""
Хранилище cookie по сессиям.

Каждому ключу сессии соответствует упорядоченный список пар name=value,
который уходит наружу как заголовок ``Cookie``. Хранятся только имя и
значение. Атрибуты Set-Cookie (Path, Expires, Domain...) отбрасываются, сам
jar ничего не просрочивает.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CookiePair:
    name: str
    value: str

    def to_header(self) -> str:
        return f"{self.name}={self.value}"


def parse_cookie_pair(raw: str) -> Optional[CookiePair]:
    """
    Извлекает пару name=value из строки Set-Cookie (или из "name=value")

    - берется только текст до первой ';'
    - value может содержать '=' (делим по первому '=')
    - пустое значение допустимо: "a=" -> CookiePair('a', '')
    - токен без '=' или с пустым именем игнорируется (None)

    Args:
        raw: Строка Set-Cookie

    Returns:
        CookiePair или None
    """
    if not raw:
        return None

    token = raw.split(';', 1)[0].strip()
    if '=' not in token:
        return None

    name, value = token.split('=', 1)
    name = name.strip()
    if not name:
        return None

    return CookiePair(name, value.strip())


class CookieJar:
    """Потокобезопасное хранилище cookie по ключу сессии"""

    def __init__(self):
        self._sessions: Dict[str, List[CookiePair]] = {}
        # Сервер крутится в отдельном потоке, get_status() и CLI читают из основного
        self._lock = threading.RLock()

    def get(self, session_key: str) -> List[CookiePair]:
        """Возвращает копию cookie сессии (создает пустую сессию при первом обращении)"""
        with self._lock:
            return list(self._sessions.setdefault(session_key, []))

    def merge(self, session_key: str, raw_cookies: Iterable[str]) -> int:
        """
        Объединяет Set-Cookie строки с cookie сессии

        Существующее имя обновляется на месте, новое добавляется в конец.

        Returns:
            int: Количество принятых cookie
        """
        accepted = 0
        with self._lock:
            pairs = self._sessions.setdefault(session_key, [])
            for raw in raw_cookies:
                pair = parse_cookie_pair(raw)
                if pair is None:
                    logger.debug(f"🍪 Skipping malformed cookie: {raw[:60]!r}")
                    continue

                for index, existing in enumerate(pairs):
                    if existing.name == pair.name:
                        pairs[index] = pair
                        break
                else:
                    pairs.append(pair)
                accepted += 1
        return accepted

    def set(self, session_key: str, name: str, value: str):
        """Устанавливает одну cookie (используется при импорте учетных данных)"""
        self.merge(session_key, [f"{name}={value}"])

    def to_header_value(self, session_key: str) -> str:
        """Значение заголовка Cookie для сессии ('' если cookie нет)"""
        return '; '.join(pair.to_header() for pair in self.get(session_key))

    def remove(self, session_key: str, name: str) -> bool:
        """Удаляет cookie из сессии. Returns: True если cookie была"""
        with self._lock:
            pairs = self._sessions.setdefault(session_key, [])
            for index, existing in enumerate(pairs):
                if existing.name == name:
                    del pairs[index]
                    return True
        return False

    def sessions(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def snapshot(self) -> Dict[str, List[str]]:
        """Плоское представление {session: ["name=value", ...]} для сохранения"""
        with self._lock:
            return {
                key: [pair.to_header() for pair in pairs]
                for key, pairs in self._sessions.items()
            }

    def load(self, data: Dict[str, List[str]]) -> int:
        """
        Загружает снимок, сохраненный snapshot()

        Returns:
            int: Общее количество загруженных cookie
        """
        total = 0
        for session_key, raw_pairs in data.items():
            if not isinstance(raw_pairs, list):
                logger.warning(f"⚠️ Skipping session {session_key!r}: expected list, got {type(raw_pairs).__name__}")
                continue
            total += self.merge(str(session_key), [str(raw) for raw in raw_pairs])
        return total

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __bool__(self) -> bool:
        # пустой jar остается валидным объектом, а не "нет jar"
        return True
