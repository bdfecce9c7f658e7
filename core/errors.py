# core/errors.py
"""Иерархия исключений прокси"""


class ScrollerProxyError(Exception):
    """Базовое исключение прокси"""


class UpstreamUnreachable(ScrollerProxyError):
    """Сетевая ошибка, DNS или таймаут при обращении к upstream"""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Upstream unreachable: {url} ({reason})")


class UpstreamUnexpectedContent(ScrollerProxyError):
    """Upstream вернул контент не того типа (например, HTML вместо JS/CSS)"""

    def __init__(self, url: str, expected: str, received: str):
        self.url = url
        self.expected = expected
        self.received = received
        super().__init__(f"Unexpected content from {url}: expected {expected}, got {received}")


class CredentialExtractionFailed(ScrollerProxyError):
    """Не удалось извлечь cookie из локального браузера"""

    kind = "extraction_failed"


class DatabaseNotFound(CredentialExtractionFailed):
    kind = "database_not_found"


class CookieNotFound(CredentialExtractionFailed):
    kind = "cookie_not_found"


class UnsupportedEncryptionVersion(CredentialExtractionFailed):
    kind = "unsupported_encryption_version"


class DecryptionFailed(CredentialExtractionFailed):
    kind = "decryption_failed"


class SignatureNotFound(CredentialExtractionFailed):
    kind = "signature_not_found"


class CredentialVerificationFailed(ScrollerProxyError):
    """Извлеченный cookie не прошел проверку на upstream"""

    kind = "verification_failed"


class PersistenceWriteFailed(ScrollerProxyError):
    """Ошибка записи cookie jar на диск (не фатальная)"""
