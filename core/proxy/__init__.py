# core/proxy/__init__.py
"""
Пакет модулей прокси.

Разбор целевого URL, запросы к origin, обработка ответов, хранилища кэша
и счётчиков для core.proxy_manager.
"""

__all__ = []
