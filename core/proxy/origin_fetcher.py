# core/proxy/origin_fetcher.py
"""Исходящие запросы к целевому origin"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, ServerTimeoutError, TCPConnector

from core.proxy.errors import OriginTimeout, OriginUnreachable

logger = logging.getLogger(__name__)

# До origin доходят только эти входящие заголовки
ALLOWED_REQUEST_HEADERS = (
    'accept', 'accept-encoding', 'accept-language',
    'user-agent', 'dnt', 'content-type', 'content-length',
    'range',
)


def filter_request_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Оставляет разрешённые заголовки, имена в нижнем регистре"""
    outgoing = {}
    for key, value in headers.items():
        key_lower = key.lower()
        if key_lower in ALLOWED_REQUEST_HEADERS and value:
            outgoing[key_lower] = value
    return outgoing


class OriginResponse:
    """Статус и заголовки ответа origin плюс ещё не прочитанный поток тела"""

    def __init__(self, response, elapsed_ms: int):
        self._response = response
        self.status = response.status
        self.headers = response.headers
        self.url = str(response.url)
        self.elapsed_ms = elapsed_ms

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        return self._response.content.iter_chunked(chunk_size)

    async def read(self) -> bytes:
        return await self._response.read()


class OriginFetcher:
    def __init__(self, max_concurrent: int = 50, request_timeout: float = 30,
                 connect_timeout: float = 10, read_timeout: float = 60):
        """
        Args:
            max_concurrent: максимум одновременных запросов к origin
            request_timeout: сколько секунд ждать заголовков ответа origin
            connect_timeout: таймаут установки соединения в секундах
            read_timeout: максимальная пауза между двумя чтениями тела
        """
        self.request_timeout = request_timeout
        self.timeout = ClientTimeout(total=None, connect=connect_timeout, sock_read=read_timeout)

        # Пул соединений, создаётся лениво внутри работающего event loop
        self.connector = None
        self.session = None

        self.connection_semaphore = asyncio.Semaphore(max_concurrent)

    async def initialize(self):
        """Создаёт пул соединений"""
        if self.connector is None:
            self.connector = TCPConnector(
                limit=100,
                limit_per_host=50,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                force_close=False,
                enable_cleanup_closed=True
            )

        if self.session is None:
            # Байты передаются как есть: без распаковки и без неявного
            # Accept-Encoding, которого клиент не отправлял
            self.session = ClientSession(
                connector=self.connector,
                timeout=self.timeout,
                auto_decompress=False,
                skip_auto_headers=('Accept-Encoding',),
            )

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    @asynccontextmanager
    async def fetch(self, method: str, url: str, headers: Mapping[str, str],
                    body: Optional[bytes] = None, identity: bool = False):
        """
        Выполняет запрос и отдаёт OriginResponse; соединение с origin
        освобождается при выходе из блока и закрывается при выходе с ошибкой

        Args:
            method: HTTP-метод входящего запроса
            url: целевой URL
            headers: заголовки входящего запроса (фильтруются здесь)
            body: полное тело запроса, None для GET/HEAD
            identity: запросить у origin несжатое тело

        Raises:
            OriginTimeout: заголовки ответа не пришли за request_timeout
            OriginUnreachable: ошибка соединения или протокола
        """
        await self.initialize()

        outgoing = filter_request_headers(headers)
        if identity:
            outgoing['accept-encoding'] = 'identity'
        if method.upper() in ('GET', 'HEAD'):
            body = None

        async with self.connection_semaphore:
            start = time.monotonic()
            try:
                response = await asyncio.wait_for(
                    self.session.request(
                        method=method,
                        url=url,
                        headers=outgoing,
                        data=body,
                        allow_redirects=True,
                    ),
                    timeout=self.request_timeout,
                )
            except (ServerTimeoutError, asyncio.TimeoutError) as e:
                raise OriginTimeout(f"Origin did not respond within {self.request_timeout}s: {url}") from e
            except ClientError as e:
                raise OriginUnreachable(f"{type(e).__name__}: {e}") from e

            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.debug(f"Origin response: {response.status} {url} ({elapsed_ms}ms)")

            try:
                yield OriginResponse(response, elapsed_ms)
            except BaseException:
                response.close()
                raise
            else:
                response.release()
