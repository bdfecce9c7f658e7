# core/credential_importer.py
"""
Импорт сессионной cookie upstream из локального браузера на базе Chromium.

Chromium на Linux (без keyring) шифрует значения cookie фиксированным ключом:
AES-128-CBC, IV из 16 пробелов, ключ = PBKDF2-HMAC-SHA1("peanuts",
"saltysalt", 1 итерация, 16 байт), значение начинается с "v10". Новые версии
дописывают перед открытым текстом бинарный дайджест, поэтому сам токен ищется
по сигнатуре (JWT начинается с "eyJ").

Импортированная cookie считается рабочей только после живого запроса к
upstream. Иначе в jar возвращается прежнее значение.
"""

import asyncio
import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.cookie_jar import CookieJar, CookiePair
from core.errors import (
    CookieNotFound,
    CredentialExtractionFailed,
    CredentialVerificationFailed,
    DatabaseNotFound,
    DecryptionFailed,
    SignatureNotFound,
    UnsupportedEncryptionVersion,
    UpstreamUnreachable,
)
from core.proxy.forwarder import UpstreamForwarder, UpstreamRequest

logger = logging.getLogger(__name__)

CHROMIUM_PASSWORD = b'peanuts'
CHROMIUM_SALT = b'saltysalt'
CHROMIUM_IV = b' ' * 16
CHROMIUM_KEY_LENGTH = 16
CHROMIUM_ITERATIONS = 1
ENCRYPTION_PREFIX = b'v10'

_TRAILING_CONTROL = re.compile(r'[\x00-\x1f]+$')


def derive_key(password: bytes = CHROMIUM_PASSWORD, salt: bytes = CHROMIUM_SALT) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=CHROMIUM_KEY_LENGTH,
        salt=salt,
        iterations=CHROMIUM_ITERATIONS,
    )
    return kdf.derive(password)


def decrypt_cookie_value(encrypted: bytes, signature: str = 'eyJ') -> str:
    """
    Расшифровывает значение v10 и возвращает токен, начинающийся с ``signature``

    Raises:
        UnsupportedEncryptionVersion: значение не начинается с "v10"
        DecryptionFailed: неверная длина блока или padding (чужой ключ, битые данные)
        SignatureNotFound: в открытом тексте нет сигнатуры токена
    """
    prefix = bytes(encrypted[:3])
    if prefix != ENCRYPTION_PREFIX:
        raise UnsupportedEncryptionVersion(
            f"Unsupported cookie encryption: {prefix.decode('ascii', errors='replace')!r}"
        )

    decryptor = Cipher(algorithms.AES(derive_key()), modes.CBC(CHROMIUM_IV)).decryptor()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        padded = decryptor.update(bytes(encrypted[3:])) + decryptor.finalize()
        raw = unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionFailed(f"Cookie decryption failed: {e}") from e

    start = raw.find(signature.encode('ascii'))
    if start < 0:
        raise SignatureNotFound(f"Could not find token signature {signature!r} in decrypted cookie")

    value = raw[start:].decode('utf-8', errors='replace')
    return _TRAILING_CONTROL.sub('', value)


@dataclass
class CredentialResult:
    ok: bool
    username: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {'ok': True, 'username': self.username}
        return {'ok': False, 'error': self.error, 'kind': self.kind}


class CredentialImporter:
    def __init__(self, cookie_db, host_pattern: str = '%reddit.com',
                 cookie_name: str = 'reddit_session', signature: str = 'eyJ'):
        """
        Args:
            cookie_db: Путь к SQLite базе cookie браузера
            host_pattern: Шаблон LIKE для host_key
            cookie_name: Имя cookie сессии upstream
            signature: Начало токена в расшифрованном значении
        """
        self.cookie_db = Path(cookie_db)
        self.host_pattern = host_pattern
        self.cookie_name = cookie_name
        self.signature = signature

    def _read_row(self):
        # immutable=1: браузер может держать базу открытой
        uri = self.cookie_db.resolve().as_uri() + '?immutable=1'
        try:
            connection = sqlite3.connect(uri, uri=True)
            try:
                return connection.execute(
                    "SELECT encrypted_value, value FROM cookies "
                    "WHERE host_key LIKE ? AND name = ? LIMIT 1",
                    (self.host_pattern, self.cookie_name),
                ).fetchone()
            finally:
                connection.close()
        except sqlite3.Error as e:
            raise CredentialExtractionFailed(f"Cannot read cookie database {self.cookie_db}: {e}") from e

    def extract(self) -> CookiePair:
        """
        Читает и расшифровывает cookie сессии

        Raises:
            CredentialExtractionFailed (и подклассы)
        """
        if not self.cookie_db.exists():
            raise DatabaseNotFound(f"Browser cookie database not found: {self.cookie_db}")

        row = self._read_row()
        if row is None:
            raise CookieNotFound(
                f"{self.cookie_name} cookie not found in browser database. Are you logged in?"
            )

        encrypted, plain = row
        if encrypted:
            value = decrypt_cookie_value(encrypted, self.signature)
        elif plain:
            value = plain
        else:
            raise CookieNotFound(f"{self.cookie_name} cookie is empty in browser database")

        logger.info(f"🔐 Got {self.cookie_name} ({len(value)} chars)")
        return CookiePair(self.cookie_name, value)


def extract_username(body: bytes) -> Optional[str]:
    """Имя пользователя из ответа /api/me.json (маркер успешной авторизации)"""
    try:
        data = json.loads(body.decode('utf-8', errors='replace'))
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    inner = data.get('data')
    if isinstance(inner, dict) and inner.get('name'):
        return str(inner['name'])
    return None


async def verify_credential(forwarder: UpstreamForwarder, session_key: str,
                            verify_path: str = '/api/me.json') -> str:
    """
    Проверяет cookie сессии запросом к upstream (редиректы не следуются)

    Returns:
        str: Имя пользователя

    Raises:
        CredentialVerificationFailed
    """
    request = UpstreamRequest(
        method='GET',
        path=verify_path,
        session_key=session_key,
        follow_redirects=False,
    )
    try:
        response = await forwarder.forward(request)
    except UpstreamUnreachable as e:
        raise CredentialVerificationFailed(f"Cannot verify session: {e.reason}") from e

    username = extract_username(response.body) if response.status == 200 else None
    if not username:
        logger.warning(
            f"⚠️ Cookie extracted but did not authenticate\n"
            f"   Status: {response.status}\n"
            f"   Response: {response.body[:200]!r}"
        )
        raise CredentialVerificationFailed(
            "Cookie is expired or invalid. Log into the site in your browser first."
        )
    return username


async def import_credentials(importer: CredentialImporter, forwarder: UpstreamForwarder,
                             jar: CookieJar, session_key: str,
                             verify_path: str = '/api/me.json') -> CredentialResult:
    """
    Извлекает cookie из браузера, кладет в jar и проверяет на upstream

    При неудачной проверке в jar возвращается прежнее значение cookie (или
    cookie удаляется, если ее не было).
    """
    logger.info(f"🔐 Extracting {importer.cookie_name} from {importer.cookie_db}...")

    try:
        loop = asyncio.get_running_loop()
        pair = await loop.run_in_executor(None, importer.extract)
    except CredentialExtractionFailed as e:
        logger.error(f"❌ Auto-login error: {e}")
        return CredentialResult(ok=False, error=str(e), kind=e.kind)

    previous = next((p for p in jar.get(session_key) if p.name == pair.name), None)
    jar.set(session_key, pair.name, pair.value)

    try:
        username = await verify_credential(forwarder, session_key, verify_path)
    except CredentialVerificationFailed as e:
        if previous is not None:
            jar.set(session_key, previous.name, previous.value)
        else:
            jar.remove(session_key, pair.name)
        return CredentialResult(ok=False, error=str(e), kind=e.kind)

    logger.info(f"✅ Session verified for user: {username}")
    logger.info(f"🍪 Total stored cookies: {len(jar.get(session_key))}")
    return CredentialResult(ok=True, username=username)
