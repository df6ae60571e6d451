# core/proxy/content_rewriter.py
"""Переписывание URL шрифтов в CSS, чтобы файлы шрифтов тоже шли через прокси"""

import re
import logging
from typing import Optional

logger = logging.getLogger(__name__)

FONT_CSS_MARKER = 'fonts.googleapis.com/css'
FONT_ASSET_HOST = 'fonts.gstatic.com'


class ContentRewriter:
    """Заменяет абсолютные URL файлов шрифтов в CSS на адреса через этот прокси"""

    # Вхождения url(https://fonts.gstatic.com/...)
    _FONT_URL_PATTERN = re.compile(r'url\((https://' + re.escape(FONT_ASSET_HOST) + r'/[^)]+)\)')

    def __init__(self, fallback_host: str = ''):
        """
        Args:
            fallback_host: хост прокси, если в запросе нет ни X-Forwarded-Host,
                ни Host
        """
        self.fallback_host = fallback_host

    @staticmethod
    def is_font_css_request(target_url: str) -> bool:
        return FONT_CSS_MARKER in target_url

    def should_rewrite(self, target_url: str, content_type: Optional[str], status: int) -> bool:
        """Переписываются только 2xx CSS-ответы эндпоинта стилей шрифтов"""
        return (
            self.is_font_css_request(target_url)
            and 'text/css' in (content_type or '').lower()
            and 200 <= status <= 299
        )

    def proxy_base_url(self, request_headers) -> str:
        host = request_headers.get('X-Forwarded-Host') or request_headers.get('Host') or self.fallback_host
        return f"https://{host}"

    def rewrite(self, content: str, proxy_base_url: str) -> str:
        """
        Args:
            content: текст CSS
            proxy_base_url: например https://proxy.example.org

        Returns:
            str: CSS, где каждый url(https://fonts.gstatic.com/...) идёт через прокси
        """
        content, replaced = self._FONT_URL_PATTERN.subn(
            lambda m: f"url({proxy_base_url}/{m.group(1)})",
            content
        )
        logger.info(f"[FONT PROXY] Processed CSS with {replaced} font URLs replaced")
        return content

    def rewrite_body(self, body: bytes, request_headers) -> bytes:
        """
        Декодирует, переписывает и снова кодирует тело CSS

        Raises:
            UnicodeDecodeError: тело не в UTF-8; вызывающий код отдаёт его без изменений
        """
        css = body.decode('utf-8')
        return self.rewrite(css, self.proxy_base_url(request_headers)).encode('utf-8')
