import json
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Переменная окружения -> ключ конфига через точку
ENV_OVERRIDES = {
    'PORT': ('server.port', int),
    'PATHPROXY_HOST': ('server.host', str),
    'CACHE_STORE_URL': ('cache.store_url', str),
    'S3_ENDPOINT_URL': ('cache.s3_endpoint', str),
    'METRICS_STORE_URL': ('metrics.store_url', str),
    'PATHPROXY_PUBLIC_HOST': ('proxy.public_host', str),
    'PATHPROXY_LOG_FILE': ('logging.file', str),
}


class ConfigManager:
    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Args:
            config_path: JSON-файл поверх значений по умолчанию (необязательно)
            environ: окружение для переопределений, по умолчанию os.environ
        """
        self.config_path = Path(config_path) if config_path else None
        self.environ = os.environ if environ is None else environ
        self.config = self._load_config()
        self._apply_env_overrides()

    def _get_default_config(self) -> dict:
        """Возвращает конфигурацию по умолчанию"""
        return {
            'server': {
                'host': '0.0.0.0',
                'port': 8686,
            },

            'proxy': {
                'rewrite_header': 'X-Vercel-Rewritten-Url',
                'public_host': '',
            },

            'cache': {
                'store_url': 'memory://',
                's3_endpoint': '',
                'max_body_bytes': 10 * 1024 * 1024,
                'memory_maxsize': 1024,
            },

            'metrics': {
                'store_url': '',  # пусто = то же хранилище, что у кэша
                'flush_interval': 5,
                'reset_clears_cache': False,
            },

            'origin': {
                'max_concurrent': 50,
                'request_timeout': 30,
                'connect_timeout': 10,
                'read_timeout': 60,
                'chunk_size': 64 * 1024,
            },

            'logging': {
                'level': 'INFO',
                'file': '',
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Загружает файл конфига и объединяет с дефолтными значениями"""
        default_config = self._get_default_config()

        if not self.config_path:
            return default_config

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Config file not found: {self.config_path}, using defaults")
            return default_config
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid config file {self.config_path}: {e}") from e

        return self._deep_merge(default_config, loaded_config)

    def _apply_env_overrides(self):
        for env_name, (key, cast) in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value is None or value == '':
                continue
            try:
                self.set(key, cast(value))
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {value!r}")

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Рекурсивное объединение словарей"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Значение по ключу через точку, например 'server.port'"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """Устанавливает значение по ключу через точку"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

    @property
    def cache_store_url(self) -> str:
        return self.get('cache.store_url') or 'memory://'

    @property
    def metrics_store_url(self) -> str:
        return self.get('metrics.store_url') or self.cache_store_url

