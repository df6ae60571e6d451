# core/proxy/errors.py
"""Исключения конвейера обработки запросов"""

import logging

logger = logging.getLogger(__name__)


class ProxyError(Exception):
    """Базовый класс всех ошибок конвейера"""


class InvalidTargetUrl(ProxyError):
    """Путь запроса не содержит пригодного целевого URL"""


class OriginError(ProxyError):
    """Origin недоступен или не ответил"""


class OriginUnreachable(OriginError):
    pass


class OriginTimeout(OriginError):
    pass


class StreamInterrupted(ProxyError):
    """Передача прервана после отправки заголовков"""

    def __init__(self, message: str, response=None):
        super().__init__(message)
        self.response = response


class BestEffortError(ProxyError):
    """Сбой побочного вызова, который не должен ронять запрос"""


class CacheUnavailable(BestEffortError):
    pass


class MetricsUnavailable(BestEffortError):
    pass


async def attempt(awaitable, what: str, default=None):
    """
    Выполняет необязательную операцию; ошибку логирует и подавляет.

    Args:
        awaitable: корутина кэша или счётчиков
        what: короткая подпись для строки лога
        default: значение, возвращаемое при сбое

    Returns:
        Результат операции или default при BestEffortError
    """
    try:
        return await awaitable
    except BestEffortError as e:
        logger.warning(f"{what} failed: {e}")
        return default
