# core/proxy/s3_client.py
"""S3-клиент, общий для хранилищ кэша и счётчиков"""

import hashlib
import logging
import threading
from typing import Optional
from urllib.parse import urlparse

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)


def parse_store_url(store_url: str) -> tuple[str, str, str]:
    """
    Разбирает адрес хранилища на (scheme, bucket, prefix)

    "s3://proxy-cache/edge1" -> ("s3", "proxy-cache", "edge1/")
    "memory://"              -> ("memory", "", "")
    """
    parsed = urlparse(store_url or 'memory://')
    scheme = (parsed.scheme or 'memory').lower()
    bucket = parsed.netloc
    prefix = parsed.path.strip('/')
    if prefix:
        prefix += '/'
    if scheme == 's3' and not bucket:
        raise ValueError(f"S3 store URL needs a bucket: {store_url}")
    return scheme, bucket, prefix


def object_key(prefix: str, url: str) -> str:
    """Ключ объекта для целевого URL (лимит ключа S3 - 1024 байта, URL бывает длиннее)"""
    digest = hashlib.sha224(url.encode('utf-8')).hexdigest()
    return f"{prefix}cache/{digest}"


class S3ClientFactory:
    """
    Возвращает одному потоку всегда один и тот же S3-клиент: у каждого
    воркера пула свой пул соединений.
    """

    def __init__(self, endpoint_url: Optional[str] = None):
        self.endpoint_url = endpoint_url or None
        self._local = threading.local()
        # Убираем сообщения `Found credentials in shared credentials file`
        logging.getLogger('botocore.credentials').setLevel(logging.WARNING)

    def __call__(self):
        try:
            return self._local.s3
        except AttributeError:
            kwargs = {}
            if self.endpoint_url:
                kwargs['endpoint_url'] = self.endpoint_url
                kwargs['config'] = Config(s3={'addressing_style': 'path'})
            self._local.s3 = boto3.session.Session().client('s3', **kwargs)
            logger.debug(f"S3 client created (endpoint={self.endpoint_url or 'aws'})")
            return self._local.s3
