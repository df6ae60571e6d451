# core/proxy/metrics.py
"""Счётчики запросов (всего запросов, попадания в кэш, git-запросы, переданные байты)"""

import asyncio
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from core.proxy.errors import MetricsUnavailable
from core.proxy.s3_client import S3ClientFactory

logger = logging.getLogger(__name__)

TOTAL_REQUESTS = 'totalRequests'
CACHE_HITS = 'cacheHits'
GIT_REQUESTS = 'gitRequests'
PROXIED_BYTES = 'proxiedBytes'

COUNTERS = (TOTAL_REQUESTS, CACHE_HITS, GIT_REQUESTS, PROXIED_BYTES)


def empty_counts() -> Dict[str, int]:
    return {name: 0 for name in COUNTERS}


class MetricsSink:
    """Плоское хранилище счётчиков: increment / read / reset"""

    async def start(self) -> None:
        pass

    async def increment(self, counter: str, n: int = 1) -> None:
        raise NotImplementedError

    async def read(self) -> Dict[str, int]:
        raise NotImplementedError

    async def reset(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryMetrics(MetricsSink):
    """Счётчики одного процесса"""

    def __init__(self):
        self._lock = threading.Lock()
        self.stats = empty_counts()

    async def increment(self, counter: str, n: int = 1) -> None:
        with self._lock:
            self.stats[counter] = self.stats.get(counter, 0) + n

    async def read(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats)

    async def reset(self) -> None:
        with self._lock:
            self.stats = empty_counts()
        logger.info("[INFO] Proxy stats have been reset via API.")


class S3Metrics(MetricsSink):
    """
    Счётчики, общие для всех инстансов, в одном JSON-объекте S3.

    Приращения копятся локально и каждые `flush_interval` секунд
    записываются условной записью (If-Match по ETag объекта). Если другой
    инстанс записал раньше, приращения остаются в очереди до следующей
    записи: ни одно не теряется и не учитывается дважды.
    """

    def __init__(self, bucket: str, prefix: str = '', endpoint_url: Optional[str] = None,
                 flush_interval: float = 5.0, executor: Optional[ThreadPoolExecutor] = None,
                 client_factory=None):
        self.bucket = bucket
        self.key = f"{prefix}stats/counters.json"
        self.flush_interval = flush_interval
        self.client_factory = client_factory or S3ClientFactory(endpoint_url)
        self._own_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix='s3-metrics')
        self._lock = threading.Lock()
        self._pending = empty_counts()
        self._flush_task: Optional[asyncio.Task] = None

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self.executor, partial(fn, *args))
        except (BotoCoreError, ClientError) as e:
            raise MetricsUnavailable(f"S3 {fn.__name__} failed: {e}") from e
        except ValueError as e:
            raise MetricsUnavailable(f"Corrupt counters object: {e}") from e

    def _load(self):
        """Возвращает (counts, etag); etag равен None, если объекта ещё нет"""
        try:
            obj = self.client_factory().get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404', 'NotFound'):
                return empty_counts(), None
            raise
        raw = json.loads(obj['Body'].read() or b'{}')
        counts = empty_counts()
        for name in COUNTERS:
            counts[name] = int(raw.get(name) or 0)
        return counts, obj.get('ETag')

    def _store(self, counts: Dict[str, int], etag: Optional[str]):
        kwargs = {'IfMatch': etag} if etag else {'IfNoneMatch': '*'}
        self.client_factory().put_object(
            Bucket=self.bucket,
            Key=self.key,
            Body=json.dumps(counts).encode('utf-8'),
            ContentType='application/json',
            **kwargs,
        )

    def _flush(self, deltas: Dict[str, int]) -> bool:
        counts, etag = self._load()
        for name, n in deltas.items():
            counts[name] = counts.get(name, 0) + n
        try:
            self._store(counts, etag)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code in ('PreconditionFailed', 'ConditionalRequestConflict', '412', '409'):
                logger.debug(f"Counters changed concurrently, flush postponed ({code})")
                return False
            raise
        return True

    def _take_pending(self) -> Dict[str, int]:
        with self._lock:
            deltas = {k: v for k, v in self._pending.items() if v}
            self._pending = empty_counts()
        return deltas

    def _restore_pending(self, deltas: Dict[str, int]):
        with self._lock:
            for name, n in deltas.items():
                self._pending[name] = self._pending.get(name, 0) + n

    async def flush(self) -> None:
        deltas = self._take_pending()
        if not deltas:
            return
        try:
            flushed = await self._run(self._flush, deltas)
        except MetricsUnavailable:
            self._restore_pending(deltas)
            raise
        if not flushed:
            self._restore_pending(deltas)

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except MetricsUnavailable as e:
                logger.warning(f"Stats flush failed: {e}")

    async def start(self) -> None:
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def increment(self, counter: str, n: int = 1) -> None:
        with self._lock:
            self._pending[counter] = self._pending.get(counter, 0) + n

    async def read(self) -> Dict[str, int]:
        counts, _ = await self._run(self._load)
        with self._lock:
            for name, n in self._pending.items():
                counts[name] = counts.get(name, 0) + n
        return counts

    async def reset(self) -> None:
        with self._lock:
            self._pending = empty_counts()
        await self._run(self._store_unconditional)
        logger.info("[INFO] Proxy stats have been reset via API.")

    def _store_unconditional(self):
        self.client_factory().put_object(
            Bucket=self.bucket,
            Key=self.key,
            Body=json.dumps(empty_counts()).encode('utf-8'),
            ContentType='application/json',
        )

    async def close(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        try:
            await self.flush()
        except MetricsUnavailable as e:
            logger.warning(f"Final stats flush failed: {e}")
        if self._own_executor:
            self.executor.shutdown(wait=False)
