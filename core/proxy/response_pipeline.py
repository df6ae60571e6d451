# core/proxy/response_pipeline.py
"""Заголовки, учёт байтов и время жизни кэша для проксируемых ответов"""

import logging
import re
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# Hop-by-hop или пересчитываются прокси
DROPPED_RESPONSE_HEADERS = ('transfer-encoding', 'connection', 'keep-alive', 'set-cookie', 'cache-control')

CORS_ALLOW_METHODS = 'GET,POST,PUT,PATCH,DELETE,OPTIONS,HEAD'
CORS_EXPOSE_HEADERS = (
    'Content-Length,Content-Range,Content-Type,Accept-Ranges,'
    'X-Cache,X-Cache-Remaining,X-Proxy-Response-Time'
)

_CONTENT_RANGE = re.compile(r'bytes (\d+)-(\d+)/(?:\d+|\*)')


def cors_headers(request_headers: Mapping[str, str]) -> Dict[str, str]:
    """Разрешающий CORS: любой origin, заголовки из запроса (или *)"""
    return {
        'Access-Control-Allow-Origin': '*',
        'Access-Control-Allow-Methods': CORS_ALLOW_METHODS,
        'Access-Control-Allow-Headers': request_headers.get('Access-Control-Request-Headers') or '*',
        'Access-Control-Expose-Headers': CORS_EXPOSE_HEADERS,
    }


def filter_response_headers(headers) -> Dict[str, str]:
    """
    Копирует заголовки origin без отбрасываемых, одно значение на имя

    Повторяющиеся заголовки (Link, Vary, ...) склеиваются через запятую
    под первым встреченным написанием имени.
    """
    response_headers = {}
    names = {}
    for key, value in headers.items():
        key_lower = key.lower()
        if key_lower in DROPPED_RESPONSE_HEADERS:
            continue
        if key_lower in names:
            name = names[key_lower]
            response_headers[name] = f"{response_headers[name]}, {value}"
        else:
            names[key_lower] = key
            response_headers[key] = value
    return response_headers


def is_cacheable_status(status: int) -> bool:
    """2xx, кроме 206 Partial Content"""
    return 200 <= status <= 299 and status != 206


def bytes_transferred(status: int, headers: Mapping[str, str]) -> int:
    """
    Размер тела, заявленный origin

    Для 206 считается диапазон из Content-Range, для остальных -
    Content-Length; если ничего не заявлено, 0.
    """
    content_range = headers.get('Content-Range')
    if status == 206 and content_range:
        match = _CONTENT_RANGE.search(content_range)
        if match:
            return int(match.group(2)) - int(match.group(1)) + 1
        return 0
    content_length = headers.get('Content-Length')
    if content_length:
        try:
            return max(0, int(content_length))
        except ValueError:
            return 0
    return 0


def dynamic_cache_duration(response_time_ms: float) -> int:
    """Чем медленнее origin, тем дольше кэшируется ответ"""
    if response_time_ms < 200:
        return 60
    if response_time_ms < 800:
        return 300
    if response_time_ms < 3000:
        return 600
    return 1800


def cache_control(ttl_seconds: int) -> str:
    return f"public, s-maxage={ttl_seconds}, stale-while-revalidate={ttl_seconds}"


class CacheTee:
    """
    Второй потребитель потокового тела: копия для записи в кэш

    Копия отбрасывается, как только превышает max_bytes: большой ответ
    по-прежнему передаётся потоком, но в памяти не держится.
    """

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self._chunks = []
        self._size = 0
        self.overflowed = False

    def feed(self, chunk: bytes) -> None:
        if self.overflowed:
            return
        self._size += len(chunk)
        if self._size > self.max_bytes:
            logger.debug(f"Body exceeds {self.max_bytes} bytes, not caching")
            self.overflowed = True
            self._chunks = []
            return
        self._chunks.append(chunk)

    def body(self) -> Optional[bytes]:
        if self.overflowed:
            return None
        return b''.join(self._chunks)
