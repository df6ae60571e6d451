# utils/port_utils.py
import socket
import psutil
import logging
from typing import Optional, Dict

logger = logging.getLogger(__name__)

WILDCARD_HOSTS = ('', '0.0.0.0', '::')


def is_port_in_use(port: int, host: str = '127.0.0.1') -> bool:
    """Проверяет, можно ли занять host:port слушающим сокетом"""
    try:
        infos = socket.getaddrinfo(host or None, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    except socket.gaierror as e:
        logger.debug(f"Cannot resolve bind address {host!r}: {e}")
        return True

    family, socktype, proto, _, sockaddr = infos[0]
    with socket.socket(family, socktype, proto) as s:
        # aiohttp слушает с SO_REUSEADDR, сокеты в TIME_WAIT не мешают
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(sockaddr)
            return False
        except OSError:
            return True


def _matches_host(laddr_ip: str, host: str) -> bool:
    return host in WILDCARD_HOSTS or laddr_ip in WILDCARD_HOSTS or laddr_ip == host


def get_listener(port: int, host: str = '') -> Optional[Dict]:
    """Возвращает name/pid/username процесса, слушающего host:port, если его видно"""
    try:
        connections = psutil.net_connections(kind='inet')
    except psutil.AccessDenied as e:
        # На macOS net_connections требует root
        logger.debug(f"Cannot inspect connections for port {port}: {e}")
        return None

    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
            continue
        if not _matches_host(conn.laddr.ip, host) or not conn.pid:
            continue
        try:
            process = psutil.Process(conn.pid)
            return {
                'name': process.name(),
                'pid': process.pid,
                'username': process.username(),
            }
        except psutil.AccessDenied:
            return {'name': 'unknown', 'pid': conn.pid, 'username': None}
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            continue
    return None


def check_port_availability(port: int, host: str = '127.0.0.1') -> tuple[bool, str]:
    """Проверяет адрес и описывает проблему, если он занят"""
    if not is_port_in_use(port, host):
        return True, "Port is free"

    listener = get_listener(port, host)
    if listener:
        message = f"Port {port} on {host or '*'} is used by {listener['name']} (PID: {listener['pid']})"
        if listener['username']:
            message += f", user: {listener['username']}"
        return False, message
    return False, f"Port {port} on {host or '*'} is already in use"
