# core/proxy/cache_manager.py
"""Хранилища кэша ответов с ключом по целевому URL"""

import asyncio
import base64
import json
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from cachetools import TLRUCache

from core.proxy.errors import CacheUnavailable
from core.proxy.s3_client import S3ClientFactory, object_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Снимок ответа origin; заменяется целиком, не изменяется"""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b''

    def to_json(self) -> bytes:
        return json.dumps({
            'status': self.status,
            'headers': self.headers,
            'body': base64.b64encode(self.body).decode('ascii'),
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'CacheEntry':
        raw = json.loads(data)
        return cls(
            status=int(raw['status']),
            headers=dict(raw.get('headers') or {}),
            body=base64.b64decode(raw.get('body') or ''),
        )


class CacheStore:
    """
    Интерфейс хранилища кэша.

    Любой метод может выбросить CacheUnavailable; вызывающий код считает это промахом.
    """

    async def get(self, key: str) -> Optional[Tuple[CacheEntry, int]]:
        """Возвращает (запись, оставшийся TTL в секундах) или None, если записи нет или она истекла"""
        raise NotImplementedError

    async def put(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def ttl(self, key: str) -> Optional[int]:
        raise NotImplementedError

    async def drop_all(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryCacheStore(CacheStore):
    """Хранилище в памяти процесса со своим сроком жизни у каждой записи (тесты, один инстанс)"""

    def __init__(self, maxsize: int = 1024, timer=time.monotonic):
        """
        Args:
            maxsize: максимальное количество записей (первыми вытесняются давно не использованные)
            timer: часы для проверки срока жизни, подменяются в тестах
        """
        self.cache = TLRUCache(maxsize=maxsize, ttu=self._expires_at, timer=timer)
        logger.debug(f"MemoryCacheStore initialised: maxsize={maxsize}")

    @staticmethod
    def _expires_at(key, value, now):
        return value[1]

    def _remaining(self, expires_at: float) -> int:
        return max(0, math.ceil(expires_at - self.cache.timer()))

    async def get(self, key: str) -> Optional[Tuple[CacheEntry, int]]:
        item = self.cache.get(key)
        if item is None:
            return None
        data, expires_at = item
        return CacheEntry.from_json(data), self._remaining(expires_at)

    async def put(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        self.cache[key] = (entry.to_json(), self.cache.timer() + ttl_seconds)

    async def ttl(self, key: str) -> Optional[int]:
        item = self.cache.get(key)
        if item is None:
            return None
        return self._remaining(item[1])

    async def drop_all(self) -> None:
        size_before = len(self.cache)
        self.cache.clear()
        logger.info(f"Cache cleared: {size_before} items removed")

    def __len__(self) -> int:
        return len(self.cache)


class S3CacheStore(CacheStore):
    """
    Кэш, общий для всех инстансов прокси, в S3 (или S3-совместимом хранилище).

    Каждая запись - один объект с CacheEntry в JSON. Срок жизни хранится
    в метаданных `expires-at`; истёкшие объекты считаются отсутствующими
    и удаляются при чтении. Вызовы boto3 блокирующие и выполняются
    в пуле потоков хранилища.
    """

    def __init__(self, bucket: str, prefix: str = '', endpoint_url: Optional[str] = None,
                 executor: Optional[ThreadPoolExecutor] = None, client_factory=None, clock=time.time):
        self.bucket = bucket
        self.prefix = prefix
        self.client_factory = client_factory or S3ClientFactory(endpoint_url)
        self._own_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=16, thread_name_prefix='s3-cache')
        self.clock = clock

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self.executor, partial(fn, *args))
        except (BotoCoreError, ClientError) as e:
            raise CacheUnavailable(f"S3 {fn.__name__} failed: {e}") from e
        except (ValueError, KeyError) as e:
            raise CacheUnavailable(f"Corrupt cache object: {e}") from e

    @staticmethod
    def _is_missing(e: ClientError) -> bool:
        code = e.response.get('Error', {}).get('Code')
        return code in ('NoSuchKey', '404', 'NotFound')

    def _remaining(self, metadata: dict) -> float:
        return float(metadata.get('expires-at', 0)) - self.clock()

    def _get(self, key: str):
        s3 = self.client_factory()
        s3_key = object_key(self.prefix, key)
        try:
            obj = s3.get_object(Bucket=self.bucket, Key=s3_key)
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise
        remaining = self._remaining(obj.get('Metadata', {}))
        if remaining <= 0:
            obj['Body'].close()
            s3.delete_object(Bucket=self.bucket, Key=s3_key)
            logger.debug(f"Cache EXPIRED: {s3_key}")
            return None
        return CacheEntry.from_json(obj['Body'].read()), math.ceil(remaining)

    def _put(self, key: str, entry: CacheEntry, ttl_seconds: int):
        now = self.clock()
        expires_at = now + ttl_seconds
        self.client_factory().put_object(
            Bucket=self.bucket,
            Key=object_key(self.prefix, key),
            Body=entry.to_json(),
            ContentType='application/json',
            Expires=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            Metadata={
                'expires-at': str(expires_at),
                'stored-at': str(now),
            },
        )

    def _ttl(self, key: str):
        try:
            head = self.client_factory().head_object(Bucket=self.bucket, Key=object_key(self.prefix, key))
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise
        remaining = self._remaining(head.get('Metadata', {}))
        if remaining <= 0:
            return None
        return math.ceil(remaining)

    def _drop_all(self):
        s3 = self.client_factory()
        paginator = s3.get_paginator('list_objects_v2')
        removed = 0
        for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{self.prefix}cache/"):
            keys = [{'Key': obj['Key']} for obj in page.get('Contents', [])]
            if not keys:
                continue
            s3.delete_objects(Bucket=self.bucket, Delete={'Objects': keys, 'Quiet': True})
            removed += len(keys)
        logger.info(f"Cache cleared: {removed} objects removed from s3://{self.bucket}/{self.prefix}cache/")

    async def get(self, key: str) -> Optional[Tuple[CacheEntry, int]]:
        return await self._run(self._get, key)

    async def put(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        await self._run(self._put, key, entry, ttl_seconds)

    async def ttl(self, key: str) -> Optional[int]:
        return await self._run(self._ttl, key)

    async def drop_all(self) -> None:
        await self._run(self._drop_all)

    async def close(self) -> None:
        if self._own_executor:
            self.executor.shutdown(wait=False)
