# main.py
"""Точка входа командной строки кэширующего прокси."""

import logging
import sys
from logging.handlers import RotatingFileHandler

import click

__version__ = "0.1.0"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'INFO', log_file: str = ''):
    """Логирование в консоль и, если задан log_file, в ротируемый файл"""
    handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers.append(console_handler)

    if log_file:
        # Ротация: максимум 5MB, 5 резервных копий
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )


@click.command()
@click.option(
    "-p", "--port",
    type=int,
    envvar="PORT",
    help="Port to listen on (env: PORT, default: 8686)"
)
@click.option(
    "-b", "--bind",
    help="Address to bind to (default: 0.0.0.0)"
)
@click.option(
    "--store-url",
    envvar="CACHE_STORE_URL",
    help="Cache store address, s3://bucket/prefix or memory:// (env: CACHE_STORE_URL)"
)
@click.option(
    "--metrics-url",
    envvar="METRICS_STORE_URL",
    help="Counter store address, defaults to the cache store (env: METRICS_STORE_URL)"
)
@click.option(
    "--s3-endpoint",
    envvar="S3_ENDPOINT_URL",
    help="S3 endpoint URL for S3-compatible services (env: S3_ENDPOINT_URL)"
)
@click.option(
    "-c", "--config",
    "config_path",
    envvar="PATHPROXY_CONFIG",
    type=click.Path(dir_okay=False),
    help="JSON configuration file (env: PATHPROXY_CONFIG)"
)
@click.option(
    "--log-file",
    help="Also write logs to this file, rotated at 5MB"
)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging"
)
@click.version_option(__version__)
def main(port, bind, store_url, metrics_url, s3_endpoint, config_path, log_file, debug):
    """
    Caching reverse proxy addressed by URL path.

    GET http://<proxy>/<target-url> fetches <target-url> from its origin,
    serving a cached copy when one is available.

    \b
    Examples:
        # In-memory cache on the default port
        pathproxy

        # Shared cache on LocalStack
        pathproxy --s3-endpoint http://localhost:4566 --store-url s3://proxy-cache/edge
    """
    from core.config_manager import ConfigManager
    from core.proxy_manager import ProxyManager

    try:
        config = ConfigManager(config_path)
    except ValueError as e:
        raise click.ClickException(str(e))

    if port is not None:
        config.set('server.port', port)
    if bind:
        config.set('server.host', bind)
    if store_url:
        config.set('cache.store_url', store_url)
    if metrics_url:
        config.set('metrics.store_url', metrics_url)
    if s3_endpoint:
        config.set('cache.s3_endpoint', s3_endpoint)
    if log_file:
        config.set('logging.file', log_file)
    if debug:
        config.set('logging.level', 'DEBUG')

    setup_logging(config.get('logging.level', 'INFO'), config.get('logging.file', ''))
    logger.info(f"🚀 Starting pathproxy {__version__}")

    manager = ProxyManager(config)
    if not manager.run():
        click.echo(f"Error: {manager.last_error_details or 'proxy failed to start'}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
