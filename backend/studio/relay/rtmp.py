"""RTMP destination validation."""
import asyncio
import ipaddress
import socket
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit
from studio.core.errors import EncoderStartFailure
from studio.core.logging import logger

NOT_CONFIGURED_MESSAGE = "Destino RTMP não configurado. Defina RTMP_URL ou RTMP_HOST + RTMP_KEY."

HostResolver = Callable[[str], Awaitable[object]]


async def _getaddrinfo(hostname: str) -> object:
    loop = asyncio.get_running_loop()
    return await loop.getaddrinfo(hostname, None)


def is_literal_host(hostname: str) -> bool:
    """
    Check whether a host needs no name resolution.
    
    Args:
        hostname: Host part of the RTMP URL (brackets already stripped)
        
    Returns:
        True for localhost and IPv4/IPv6 literals
    """
    if hostname == "localhost":
        return True
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


async def validate_rtmp_target(
    url: str,
    resolve_host: Optional[HostResolver] = None
) -> str:
    """
    Validate the configured RTMP destination before spawning the encoder.
    
    Args:
        url: Final RTMP URL (may be empty when unconfigured)
        resolve_host: Name resolution coroutine (defaults to the event loop resolver)
        
    Returns:
        The validated URL
        
    Raises:
        EncoderStartFailure: If the URL is unset, malformed or its host cannot be resolved
    """
    if not url:
        raise EncoderStartFailure(NOT_CONFIGURED_MESSAGE)
    
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        raise EncoderStartFailure("URL RTMP inválida. Verifique o formato.")
    
    if parts.scheme != "rtmp":
        raise EncoderStartFailure("URL deve começar com rtmp://")
    if not hostname:
        raise EncoderStartFailure("URL RTMP inválida. Verifique o formato.")
    
    # Only check DNS if not using localhost/IP
    if not is_literal_host(hostname):
        resolver = resolve_host or _getaddrinfo
        try:
            await resolver(hostname)
        except (socket.gaierror, OSError) as e:
            logger.warning(f"RTMP host lookup failed for {hostname}: {e}")
            raise EncoderStartFailure(
                f"Não foi possível resolver o host {hostname}. Use o IP do servidor "
                "ou verifique se o nome está correto e acessível."
            )
    
    return url
