from __future__ import annotations

import asyncio
import logging
import socket

from .errors import ResolutionFailure, TransportError

LOGGER = logging.getLogger("icmp_ping.transport")

RECV_BUFFER_SIZE = 65536


async def resolve(host: str) -> str:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, family=socket.AF_INET)
    except socket.gaierror as exc:
        raise ResolutionFailure(host, exc.strerror or str(exc)) from exc
    except UnicodeError as exc:
        # IDNA encoding rejects empty labels and labels over 63 characters.
        raise ResolutionFailure(host, f"invalid host name: {exc}") from exc
    for _family, _type, _proto, _canonname, sockaddr in infos:
        return str(sockaddr[0])
    raise ResolutionFailure(host, "no IPv4 address")


class IcmpTransport:
    """Raw IPv4 ICMP socket driven by the running asyncio loop."""

    def __init__(self, connection: socket.socket) -> None:
        self.connection = connection
        self.connection.setblocking(False)

    @classmethod
    def open(cls) -> "IcmpTransport":
        try:
            connection = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        except PermissionError:
            LOGGER.error("raw ICMP socket requires elevated privileges (root or CAP_NET_RAW)")
            raise
        return cls(connection)

    def __enter__(self) -> "IcmpTransport":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def send(self, data: bytes, address: str) -> None:
        try:
            self.connection.sendto(data, (address, 0))
        except OSError as exc:
            raise TransportError(f"send to {address} failed: {exc}") from exc

    async def receive(self) -> tuple[bytes, float]:
        loop = asyncio.get_running_loop()
        try:
            data = await loop.sock_recv(self.connection, RECV_BUFFER_SIZE)
        except OSError as exc:
            raise TransportError(f"receive failed: {exc}") from exc
        return data, loop.time()

    def close(self) -> None:
        self.connection.close()
