# core/jar_store.py
"""Сохранение cookie jar на диск"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List

from core.cookie_jar import CookieJar
from core.errors import PersistenceWriteFailed

logger = logging.getLogger(__name__)


class CookieJarStore:
    """JSON файл вида {session: ["name=value", ...]}"""

    def __init__(self, path):
        self.path = Path(path)

    def read(self) -> Dict[str, List[str]]:
        """Читает файл. Отсутствующий или поврежденный файл не фатален -> {}"""
        if not self.path.exists():
            logger.info(f"🍪 Cookie store not found, starting empty: {self.path}")
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"❌ Ошибка чтения cookie store {self.path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"❌ Cookie store {self.path} has unexpected format, ignoring")
            return {}

        return data

    def load_into(self, jar: CookieJar) -> int:
        """Загружает сохраненные cookie в jar и логирует количество"""
        data = self.read()
        total = jar.load(data)
        if data:
            logger.info(f"🍪 Loaded {total} cookies for {len(data)} session(s) from {self.path}")
            for session_key in data:
                logger.debug(f"   {session_key}: {len(jar.get(session_key))} cookies")
        return total

    def write(self, snapshot: Dict[str, List[str]]):
        """
        Атомарно записывает снимок jar

        Raises:
            PersistenceWriteFailed: при любой ошибке записи
        """
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(snapshot, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceWriteFailed(f"Cannot write {self.path}: {e}") from e

    def save(self, jar: CookieJar):
        self.write(jar.snapshot())
