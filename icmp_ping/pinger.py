from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Callable, Protocol, TextIO, Union

from ._version import __version__
from .config import PingConfig, load_ping_config
from .errors import ResolutionFailure, TransportError
from .icmp import ICMP_HEADER_LEN, IPV4_HEADER_LEN
from .session import (
    DEFAULT_REPLY_TIMEOUT_S,
    DEFAULT_SEND_INTERVAL_S,
    EchoReply,
    EchoSession,
    RequestTimedOut,
)
from .stats import Report
from .transport import IcmpTransport, resolve

LOGGER = logging.getLogger("icmp_ping.pinger")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_SETUP_FAILED = 2
RECEIVE_RETRY_DELAY_S = 0.1
RECEIVE_RETRY_MAX_DELAY_S = 5.0


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class Transport(Protocol):
    def send(self, data: bytes, address: str) -> None: ...

    async def receive(self) -> tuple[bytes, float]: ...


@dataclass(frozen=True)
class _DatagramReceived:
    data: bytes
    arrival_time: float


@dataclass(frozen=True)
class _ReplyTimerExpired:
    sequence: int


@dataclass(frozen=True)
class _SendTimerExpired:
    pass


@dataclass(frozen=True)
class _ShutdownRequested:
    pass


_Event = Union[_DatagramReceived, _ReplyTimerExpired, _SendTimerExpired, _ShutdownRequested]


def receive_retry_delay(consecutive_failures: int) -> float:
    """Seconds to wait before retrying a receive that failed this many times in a row."""
    exponent = min(max(0, consecutive_failures - 1), 32)
    return min(RECEIVE_RETRY_DELAY_S * 2**exponent, RECEIVE_RETRY_MAX_DELAY_S)


def format_reply(reply: EchoReply) -> str:
    return (
        f"{reply.size} bytes from {reply.source_address}: "
        f"icmp_seq={reply.sequence} ttl={reply.ttl} time={reply.rtt_ms:.3f} ms"
    )


def format_timeout(timed_out: RequestTimedOut) -> str:
    return f"Request timed out: icmp_seq={timed_out.sequence}"


def format_report(host: str, report: Report) -> list[str]:
    loss = "unavailable" if report.loss_pct is None else f"{report.loss_pct:.2f}%"
    lines = [
        f"--- {host} ping statistics ---",
        f"{report.transmitted} packets transmitted, {report.received} received, "
        f"{report.lost} lost, {loss} loss, time {report.elapsed_s:.3f} s",
    ]
    if report.rtt_avg_ms is None:
        lines.append("rtt min/avg/max/mdev = unavailable")
    else:
        lines.append(
            f"rtt min/avg/max/mdev = {report.rtt_min_ms:.3f}/{report.rtt_avg_ms:.3f}/"
            f"{report.rtt_max_ms:.3f}/{report.rtt_mdev_ms:.3f} ms"
        )
    return lines


class Pinger:
    """Runs one echo session against one address until shutdown is requested.

    Datagram arrivals, timer expiries and the shutdown request all land on a
    single queue and are handled one at a time by ``run``.
    """

    def __init__(
        self,
        host: str,
        address: str,
        transport: Transport,
        *,
        identifier: int | None = None,
        reply_timeout_s: float = DEFAULT_REPLY_TIMEOUT_S,
        send_interval_s: float = DEFAULT_SEND_INTERVAL_S,
        output: TextIO | None = None,
    ) -> None:
        self.host = host
        self.address = address
        self.transport = transport
        self.output = output if output is not None else sys.stdout
        self.session = EchoSession(
            identifier if identifier is not None else os.getpid(),
            reply_timeout_s=reply_timeout_s,
            send_interval_s=send_interval_s,
        )
        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._reply_timer: asyncio.TimerHandle | None = None
        self._send_timer: asyncio.TimerHandle | None = None

    def request_shutdown(self) -> None:
        self._events.put_nowait(_ShutdownRequested())

    async def run(self) -> Report:
        loop = asyncio.get_running_loop()
        started_at = loop.time()
        payload_len = len(self.session.payload)
        self._emit(
            f"PING {self.host} ({self.address}) {payload_len}"
            f"({payload_len + ICMP_HEADER_LEN + IPV4_HEADER_LEN}) bytes of data."
        )

        receiver = asyncio.create_task(self._receive_loop())
        try:
            self._send_next()
            while True:
                event = await self._events.get()
                if isinstance(event, _ShutdownRequested):
                    LOGGER.debug("shutdown requested")
                    break
                self._dispatch(event)
        finally:
            self.session.stop()
            self._cancel_timers()
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)

        report = self.session.stats.finalize(loop.time() - started_at)
        self._emit("")
        for line in format_report(self.host, report):
            self._emit(line)
        return report

    def _dispatch(self, event: _Event) -> None:
        loop = asyncio.get_running_loop()
        if isinstance(event, _DatagramReceived):
            reply = self.session.handle_datagram(event.data, event.arrival_time)
            if reply is None:
                return
            if self._reply_timer is not None:
                self._reply_timer.cancel()
                self._reply_timer = None
            self._emit(format_reply(reply))
            self._schedule_next_send(loop)
        elif isinstance(event, _ReplyTimerExpired):
            timed_out = self.session.handle_timeout(event.sequence, loop.time())
            if timed_out is None:
                return
            self._reply_timer = None
            self._emit(format_timeout(timed_out))
            self._schedule_next_send(loop)
        elif isinstance(event, _SendTimerExpired):
            self._send_timer = None
            self._send_next()

    def _send_next(self) -> None:
        if self.session.stopped:
            return
        loop = asyncio.get_running_loop()
        request = self.session.start_send(loop.time())
        try:
            self.transport.send(request.datagram, self.address)
        except TransportError as exc:
            LOGGER.warning("%s", exc)
        self._reply_timer = loop.call_at(
            request.deadline,
            self._events.put_nowait,
            _ReplyTimerExpired(sequence=request.sequence),
        )

    def _schedule_next_send(self, loop: asyncio.AbstractEventLoop) -> None:
        when = self.session.next_send_time(loop.time())
        self._send_timer = loop.call_at(when, self._events.put_nowait, _SendTimerExpired())

    def _cancel_timers(self) -> None:
        for timer in (self._reply_timer, self._send_timer):
            if timer is not None:
                timer.cancel()
        self._reply_timer = None
        self._send_timer = None

    async def _receive_loop(self) -> None:
        # Consecutive failures back off exponentially; only the first one of a
        # run is logged at WARNING.
        consecutive_failures = 0
        while True:
            try:
                data, arrival_time = await self.transport.receive()
            except TransportError as exc:
                consecutive_failures += 1
                delay = receive_retry_delay(consecutive_failures)
                if consecutive_failures == 1:
                    LOGGER.warning("%s; retrying", exc)
                else:
                    LOGGER.debug("%s (failure %d, next retry in %.2f s)", exc, consecutive_failures, delay)
                await asyncio.sleep(delay)
                continue
            if consecutive_failures:
                LOGGER.info("receive recovered after %d failures", consecutive_failures)
                consecutive_failures = 0
            self._events.put_nowait(_DatagramReceived(data=data, arrival_time=arrival_time))

    def _emit(self, line: str) -> None:
        print(line, file=self.output, flush=True)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> list[int]:
    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, callback)
        except NotImplementedError:
            LOGGER.debug("signal handlers are not supported by this event loop")
            break
        installed.append(signum)
    return installed


async def _run(host: str, config: PingConfig) -> int:
    try:
        address = await resolve(host)
    except ResolutionFailure as exc:
        LOGGER.error("%s", exc)
        return EXIT_SETUP_FAILED

    try:
        transport = IcmpTransport.open()
    except PermissionError:
        return EXIT_SETUP_FAILED
    except OSError as exc:
        LOGGER.error("cannot open raw ICMP socket: %s", exc)
        return EXIT_SETUP_FAILED

    loop = asyncio.get_running_loop()
    with transport:
        pinger = Pinger(
            host,
            address,
            transport,
            reply_timeout_s=config.reply_timeout_ms / 1000.0,
        )
        installed = _install_signal_handlers(loop, pinger.request_shutdown)
        try:
            await pinger.run()
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
    return EXIT_OK


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="icmp-ping", description="Send ICMP echo requests to an IPv4 host.")
    parser.add_argument("host", help="destination host name or IPv4 address")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    config = load_ping_config()
    configure_logging(config.log_level)
    return asyncio.run(_run(args.host, config))


if __name__ == "__main__":
    raise SystemExit(main())
