# core/proxy/url_resolver.py
"""Извлечение целевого URL из пути входящего запроса"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import unquote

from core.proxy.errors import InvalidTargetUrl

logger = logging.getLogger(__name__)

# Эндпоинты git smart-HTTP, никогда не кэшируются
GIT_MARKERS = ('.git/info/refs', 'git-upload-pack', 'git-receive-pack')

SCHEME_TOKEN = re.compile(r'^https?:', re.IGNORECASE)
ABSOLUTE_HTTP_URL = re.compile(r'^https?://[^/?#]', re.IGNORECASE)


@dataclass(frozen=True)
class RequestClassification:
    is_git_request: bool
    is_cachable: bool


def resolve_target_url(raw_path: str) -> str:
    """
    Превращает путь входящего запроса в абсолютный целевой URL

    Args:
        raw_path: путь (и query) после хоста прокси, например "/https:/github.com/a/b"

    Returns:
        str: URL с явной схемой http/https

    Raises:
        InvalidTargetUrl: восстановить пригодный URL не удалось
    """
    target_url = raw_path[1:] if raw_path.startswith('/') else raw_path
    target_url = unquote(target_url)

    # "https:/example.com" -> "https://example.com" (схлопнутый двойной слэш)
    if ':/' in target_url and '://' not in target_url:
        target_url = target_url.replace(':/', '://', 1)

    if target_url and not SCHEME_TOKEN.match(target_url) and '.' in target_url:
        logger.info(f"[REWRITE] Protocol missing. Rewriting URL to: https://{target_url}")
        target_url = f"https://{target_url}"

    if not target_url or not ABSOLUTE_HTTP_URL.match(target_url):
        raise InvalidTargetUrl(f"Cannot derive a target URL from {raw_path!r}")

    return target_url


def is_git_request(target_url: str) -> bool:
    return any(marker in target_url for marker in GIT_MARKERS)


def classify(method: str, target_url: str, headers=None) -> RequestClassification:
    """
    Определяет git-запрос и возможность кэширования

    Запросы с Range идут мимо кэша: ключ записи - только URL,
    а хранится всегда полное тело.
    """
    git = is_git_request(target_url)
    ranged = bool(headers and headers.get('Range'))
    return RequestClassification(
        is_git_request=git,
        is_cachable=method.upper() == 'GET' and not git and not ranged,
    )
