"""
Media host resolution with a last-known-good fallback.

The live feed and snapshots are fetched from the media server by IP, so the
host is resolved before every request. When DNS fails the last resolved
address is reused; it is never expired.
"""
import asyncio
import logging
import socket
from typing import Optional

from simplicam.core.config import settings
from simplicam.core.exceptions import ResolutionError

logger = logging.getLogger(__name__)


class AddressResolver:
    """
    Resolves one hostname and caches the last successful answer.

    Attributes:
        hostname: Host being resolved
        cached_address: Last resolved address, None until the first success
    """

    def __init__(self, hostname: str):
        self.hostname = hostname
        self.cached_address: Optional[str] = None

    async def _lookup(self) -> str:
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(self.hostname, None, type=socket.SOCK_STREAM)
        if not infos:
            raise OSError(f"No addresses returned for {self.hostname}")
        return infos[0][4][0]

    async def resolve(self) -> str:
        """
        Resolve the hostname.

        Returns:
            Fresh address, or the cached one when the lookup fails

        Raises:
            ResolutionError: If the lookup fails and nothing is cached
        """
        try:
            address = await self._lookup()
        except (OSError, UnicodeError) as e:
            if self.cached_address is None:
                logger.error(
                    f"Could not resolve hostname for {self.hostname}: {e}",
                    extra={"event_type": "media_host_unresolved", "hostname": self.hostname, "error": str(e)}
                )
                raise ResolutionError(self.hostname) from e
            logger.warning(
                f"DNS lookup for {self.hostname} failed, using cached address {self.cached_address}",
                extra={
                    "event_type": "media_host_cached",
                    "hostname": self.hostname,
                    "cached_address": self.cached_address,
                    "error": str(e),
                }
            )
            return self.cached_address

        self.cached_address = address
        return address


# Global singleton instance
_address_resolver: Optional[AddressResolver] = None


def get_address_resolver() -> AddressResolver:
    """
    Get the process-wide media host resolver.

    Returns:
        AddressResolver for settings.MEDIA_HOST
    """
    global _address_resolver
    if _address_resolver is None:
        _address_resolver = AddressResolver(settings.MEDIA_HOST)
    return _address_resolver
