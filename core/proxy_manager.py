# proxy_manager.py
import asyncio
import logging
import signal

from aiohttp import web
from multidict import CIMultiDict

from core.config_manager import ConfigManager
from core.proxy.cache_manager import CacheEntry, MemoryCacheStore, S3CacheStore
from core.proxy.content_rewriter import ContentRewriter
from core.proxy.errors import (
    InvalidTargetUrl,
    MetricsUnavailable,
    OriginError,
    StreamInterrupted,
    attempt,
)
from core.proxy.metrics import (
    CACHE_HITS,
    COUNTERS,
    GIT_REQUESTS,
    PROXIED_BYTES,
    TOTAL_REQUESTS,
    MemoryMetrics,
    S3Metrics,
)
from core.proxy.origin_fetcher import OriginFetcher
from core.proxy.response_pipeline import (
    CacheTee,
    bytes_transferred,
    cache_control,
    cors_headers,
    dynamic_cache_duration,
    filter_response_headers,
    is_cacheable_status,
)
from core.proxy.s3_client import parse_store_url
from core.proxy.url_resolver import classify, resolve_target_url
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)

STATS_PATH = '/api/stats'


class PathProxy:
    def __init__(self, cache_store, metrics, fetcher, rewriter=None,
                 max_cache_body_bytes=10 * 1024 * 1024, chunk_size=64 * 1024,
                 rewrite_header='X-Vercel-Rewritten-Url', reset_clears_cache=False):
        """
        Args:
            cache_store: CacheStore, общий для всех инстансов
            metrics: MetricsSink для счётчиков запросов
            fetcher: OriginFetcher для исходящих запросов
            rewriter: ContentRewriter для CSS веб-шрифтов
            max_cache_body_bytes: тела больше этого размера передаются, но не кэшируются
            chunk_size: размер чанка при потоковой передаче
            rewrite_header: заголовок с исходным путём от вышестоящего rewrite-слоя
            reset_clears_cache: сброс статистики также очищает кэш
        """
        self.cache_store = cache_store
        self.metrics = metrics
        self.fetcher = fetcher
        self.rewriter = rewriter or ContentRewriter()
        self.max_cache_body_bytes = max_cache_body_bytes
        self.chunk_size = chunk_size
        self.rewrite_header = rewrite_header
        self.reset_clears_cache = reset_clears_cache

    async def on_startup(self, app):
        await self.fetcher.initialize()
        await self.metrics.start()

    async def on_cleanup(self, app):
        await self.fetcher.cleanup()
        await self.metrics.close()
        await self.cache_store.close()

    async def router(self, request):
        """Маршрутизация: CORS preflight, API статистики, health, проксирование"""
        if request.method == 'OPTIONS':
            return web.Response(status=204, headers=cors_headers(request.headers))

        if request.path.startswith(STATS_PATH):
            return await self.handle_stats(request)

        if request.path == '/health':
            return web.json_response({'status': 'ok'})

        return await self.handle_http(request)

    async def handle_stats(self, request):
        cors = cors_headers(request.headers)

        if request.method == 'POST' and request.path.endswith('/reset'):
            try:
                await self.metrics.reset()
            except MetricsUnavailable as e:
                logger.error(f"Stats reset error: {e}")
                return web.json_response(
                    {'error': 'Failed to reset stats.', 'details': str(e)},
                    status=500,
                    headers=cors
                )
            if self.reset_clears_cache:
                await attempt(self.cache_store.drop_all(), 'Cache purge')
            return web.json_response({'message': 'Stats have been reset successfully.'}, headers=cors)

        if request.method == 'GET':
            try:
                stats_data = await self.metrics.read()
            except MetricsUnavailable as e:
                logger.error(f"Stats read error: {e}")
                return web.json_response(
                    {'error': 'Failed to read stats.', 'details': str(e)},
                    status=500,
                    headers=cors
                )
            stats = {name: int(stats_data.get(name) or 0) for name in COUNTERS}
            return web.json_response(stats, headers=cors)

        headers = {'Allow': 'GET, POST'}
        headers.update(cors)
        return web.Response(status=405, text='Method Not Allowed', headers=headers)

    async def handle_http(self, request):
        """Проксирует один запрос: URL, классификация, кэш, origin, ответ"""
        await attempt(self.metrics.increment(TOTAL_REQUESTS), 'Stats increment')

        raw_path = request.headers.get(self.rewrite_header) or request.raw_path
        try:
            target_url = resolve_target_url(raw_path)
        except InvalidTargetUrl as e:
            logger.info(f"Rejected: {e}")
            return web.Response(
                status=400,
                text='Bad Request: Please provide a valid URL to proxy.',
                headers=cors_headers(request.headers)
            )

        logger.info(f"[INFO] Attempting to proxy URL: {target_url}")

        classification = classify(request.method, target_url, request.headers)
        if classification.is_git_request:
            await attempt(self.metrics.increment(GIT_REQUESTS), 'Stats increment')

        if classification.is_cachable:
            cached = await attempt(self.cache_store.get(target_url), 'Cache lookup')
            if cached is not None:
                entry, remaining = cached
                return await self._serve_cached(request, target_url, entry, remaining)

        try:
            return await self._proxy_to_origin(request, target_url, classification)

        except OriginError as e:
            logger.error(f"Proxy Error: {e}")
            return self._error_response(request, e)

        except StreamInterrupted as e:
            logger.warning(f"Proxy stream error: {e}")
            return e.response

        except Exception as e:
            logger.error(f"Proxy Error: {e}", exc_info=True)
            return self._error_response(request, e)

    def _error_response(self, request, error):
        return web.json_response(
            {'error': 'Proxy encountered an error.', 'details': str(error)},
            status=500,
            headers=cors_headers(request.headers)
        )

    async def _serve_cached(self, request, target_url, entry, remaining):
        await attempt(self.metrics.increment(CACHE_HITS), 'Stats increment')
        logger.info(f"[CACHE HIT] {request.path_qs} - TTL: {remaining}s")

        headers = CIMultiDict(entry.headers)
        headers.popall('Content-Length', None)
        headers['X-Cache'] = 'HIT'
        headers['X-Cache-Remaining'] = f"{remaining}s"
        headers['X-Proxy-Response-Time'] = '0ms'
        # Внешний edge-кэш может хранить ответ оставшуюся часть TTL
        if remaining > 0:
            headers['Cache-Control'] = cache_control(remaining)

        body = entry.body
        if self.rewriter.should_rewrite(target_url, headers.get('Content-Type'), entry.status):
            body = self._rewrite_css(request, body, headers)

        headers.update(cors_headers(request.headers))
        return web.Response(status=entry.status, body=body, headers=headers)

    def _rewrite_css(self, request, body, headers):
        """Переписывает URL шрифтов в теле; заголовки правятся на месте"""
        try:
            rewritten = self.rewriter.rewrite_body(body, request.headers)
        except UnicodeDecodeError as e:
            logger.error(f"Font CSS processing error: {e}")
            return body
        headers['Content-Type'] = 'text/css; charset=utf-8'
        headers.popall('Content-Length', None)
        return rewritten

    async def _proxy_to_origin(self, request, target_url, classification):
        body = None
        if request.method not in ('GET', 'HEAD'):
            body = await request.read()

        identity = self.rewriter.is_font_css_request(target_url)

        async with self.fetcher.fetch(request.method, target_url, request.headers, body, identity=identity) as origin:
            duration = origin.elapsed_ms
            response_time = f"{duration}ms"

            if classification.is_git_request:
                logger.info(f"[GIT PROXY] {request.method} {request.path_qs} - {origin.status} - {response_time}")
            elif classification.is_cachable:
                logger.info(f"[CACHE MISS] {request.method} {request.path_qs} - Response Time: {response_time}")
            else:
                logger.info(f"[PROXY] {request.method} {request.path_qs} - {origin.status} - {response_time}")

            stored_headers = filter_response_headers(origin.headers)
            headers = CIMultiDict(stored_headers)
            headers['X-Proxy-Response-Time'] = response_time
            if classification.is_cachable:
                headers['X-Cache'] = 'MISS'

            transferred = bytes_transferred(origin.status, origin.headers)
            if transferred > 0:
                await attempt(self.metrics.increment(PROXIED_BYTES, transferred), 'Stats increment')

            ttl = None
            if classification.is_cachable and is_cacheable_status(origin.status):
                ttl = dynamic_cache_duration(duration)
                logger.info(f"[DYNAMIC CACHE] Origin Time: {duration}ms, Caching for: {ttl}s")
                headers['Cache-Control'] = cache_control(ttl)

            headers.update(cors_headers(request.headers))

            if self.rewriter.should_rewrite(target_url, origin.headers.get('Content-Type'), origin.status):
                try:
                    content = await origin.read()
                except Exception as e:
                    raise OriginError(f"Reading stylesheet failed: {e}") from e
                if ttl is not None:
                    # В кэш идёт исходный CSS; переписывание зависит от хоста запроса
                    entry = CacheEntry(status=origin.status, headers=stored_headers, body=content)
                    await attempt(self.cache_store.put(target_url, entry, ttl), 'Cache write')
                content = self._rewrite_css(request, content, headers)
                return web.Response(status=origin.status, body=content, headers=headers)

            return await self._stream(request, origin, headers, target_url, stored_headers, ttl)

    async def _stream(self, request, origin, headers, target_url, stored_headers, ttl):
        """
        Передаёт тело origin клиенту по чанкам; кэшируемые тела копируются
        в ограниченный буфер и пишутся в кэш после полной передачи
        """
        tee = CacheTee(self.max_cache_body_bytes) if ttl is not None else None

        response = web.StreamResponse(status=origin.status, headers=headers)
        await response.prepare(request)

        try:
            async for chunk in origin.iter_chunks(self.chunk_size):
                await response.write(chunk)
                if tee is not None:
                    tee.feed(chunk)
            await response.write_eof()
        except Exception as e:
            # Заголовки уже отправлены: рвём соединение, клиент увидит обрыв
            if request.transport is not None:
                request.transport.close()
            raise StreamInterrupted(f"{target_url}: {type(e).__name__}: {e}", response) from e

        if tee is not None:
            content = tee.body()
            if content is not None:
                entry = CacheEntry(status=origin.status, headers=stored_headers, body=content)
                await attempt(self.cache_store.put(target_url, entry, ttl), 'Cache write')

        return response


def build_cache_store(config: ConfigManager):
    scheme, bucket, prefix = parse_store_url(config.cache_store_url)
    if scheme == 's3':
        logger.info(f"Cache store: s3://{bucket}/{prefix}")
        return S3CacheStore(bucket, prefix, endpoint_url=config.get('cache.s3_endpoint'))
    if scheme == 'memory':
        logger.info("Cache store: in-process memory")
        return MemoryCacheStore(maxsize=config.get('cache.memory_maxsize', 1024))
    raise ValueError(f"Unsupported cache store: {config.cache_store_url}")


def build_metrics(config: ConfigManager):
    scheme, bucket, prefix = parse_store_url(config.metrics_store_url)
    if scheme == 's3':
        logger.info(f"Metrics store: s3://{bucket}/{prefix}")
        return S3Metrics(
            bucket,
            prefix,
            endpoint_url=config.get('cache.s3_endpoint'),
            flush_interval=config.get('metrics.flush_interval', 5),
        )
    if scheme == 'memory':
        return MemoryMetrics()
    raise ValueError(f"Unsupported metrics store: {config.metrics_store_url}")


def build_proxy(config: ConfigManager, cache_store=None, metrics=None, fetcher=None) -> PathProxy:
    """Собирает PathProxy из конфига; любую зависимость можно передать явно"""
    return PathProxy(
        cache_store=cache_store if cache_store is not None else build_cache_store(config),
        metrics=metrics if metrics is not None else build_metrics(config),
        fetcher=fetcher or OriginFetcher(
            max_concurrent=config.get('origin.max_concurrent', 50),
            request_timeout=config.get('origin.request_timeout', 30),
            connect_timeout=config.get('origin.connect_timeout', 10),
            read_timeout=config.get('origin.read_timeout', 60),
        ),
        rewriter=ContentRewriter(fallback_host=config.get('proxy.public_host', '')),
        max_cache_body_bytes=config.get('cache.max_body_bytes', 10 * 1024 * 1024),
        chunk_size=config.get('origin.chunk_size', 64 * 1024),
        rewrite_header=config.get('proxy.rewrite_header', 'X-Vercel-Rewritten-Url'),
        reset_clears_cache=bool(config.get('metrics.reset_clears_cache', False)),
    )


def create_app(proxy: PathProxy) -> web.Application:
    app = web.Application()
    app.router.add_route('*', '/{path:.*}', proxy.router)
    app.on_startup.append(proxy.on_startup)
    app.on_cleanup.append(proxy.on_cleanup)
    return app


class ProxyManager:
    def __init__(self, config: ConfigManager):
        self.config = config
        self.host = config.get('server.host', '0.0.0.0')
        self.local_port = int(config.get('server.port', 8686))
        self.is_running = False
        self.proxy = None
        self.runner = None
        self.site = None
        self._stop_event = None

        # Отслеживание ошибок
        self.last_error_details = None

    def check_port(self) -> bool:
        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            self.last_error_details = port_message
            logger.error(f"❌ {port_message}")
        return port_available

    def run(self) -> bool:
        """
        Запускает прокси до SIGINT/SIGTERM

        Returns:
            bool: False, если сервер не удалось запустить
        """
        if not self.check_port():
            return False
        try:
            return asyncio.run(self._serve())
        except KeyboardInterrupt:
            return True

    async def _serve(self) -> bool:
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except (NotImplementedError, RuntimeError):
                # В event loop под Windows нет обработчиков сигналов
                pass

        await self._start_server()
        if not self.is_running:
            return False
        try:
            await self._stop_event.wait()
        finally:
            await self._stop_server()
        return True

    def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def _start_server(self):
        try:
            self.proxy = build_proxy(self.config)
            app = create_app(self.proxy)

            self.runner = web.AppRunner(app, access_log=None)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, host=self.host, port=self.local_port)
            await self.site.start()

            self.is_running = True
            logger.info(f"✅ Proxy server is running on http://{self.host}:{self.local_port}")
            logger.info(f"📦 Cache store: {self.config.cache_store_url}")

        except Exception as e:
            self.last_error_details = str(e)
            logger.error(f"❌ Failed to start server: {e}")
            self.is_running = False
            if self.runner:
                await self.runner.cleanup()
                self.runner = None

    async def _stop_server(self):
        logger.info("🛑 Stopping proxy...")
        self.is_running = False
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.info("✅ Proxy stopped and cleaned up successfully")
