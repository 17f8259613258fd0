from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .icmp import (
    ICMP_ECHO_REPLY,
    DecodeError,
    build_echo_request,
    decode_echo_datagram,
    verify_checksum,
)
from .stats import StatsAccumulator

LOGGER = logging.getLogger("icmp_ping.session")

MAX_SEQUENCE_NUMBER = 0xFFFF
DEFAULT_PAYLOAD = b"z" * 56
DEFAULT_REPLY_TIMEOUT_S = 5.0
DEFAULT_SEND_INTERVAL_S = 1.0


class SessionState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    WAITING_REPLY = "waiting_reply"
    MATCHED = "matched"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


@dataclass(frozen=True)
class EchoRequest:
    sequence: int
    datagram: bytes
    send_time: float
    deadline: float


@dataclass(frozen=True)
class EchoReply:
    size: int
    source_address: str
    sequence: int
    ttl: int
    rtt_ms: float


@dataclass(frozen=True)
class RequestTimedOut:
    sequence: int


class EchoSession:
    """Echo request/reply bookkeeping for a single destination.

    The session never touches sockets or clocks. The caller passes in the
    current time and the raw datagrams, and acts on what comes back: a
    datagram to send plus the reply deadline to arm, a matched reply, or a
    timeout notice. Times are seconds on a monotonic clock.
    """

    def __init__(
        self,
        identifier: int,
        *,
        payload: bytes = DEFAULT_PAYLOAD,
        reply_timeout_s: float = DEFAULT_REPLY_TIMEOUT_S,
        send_interval_s: float = DEFAULT_SEND_INTERVAL_S,
        stats: StatsAccumulator | None = None,
    ) -> None:
        self.identifier = identifier & 0xFFFF
        self.payload = payload
        self.reply_timeout_s = reply_timeout_s
        self.send_interval_s = send_interval_s
        self.stats = stats if stats is not None else StatsAccumulator()

        self.state = SessionState.IDLE
        self.sequence_number = 0
        self.last_send_time: float | None = None
        self.outstanding_reply_count = 0

    @property
    def stopped(self) -> bool:
        return self.state is SessionState.STOPPED

    def start_send(self, now: float) -> EchoRequest:
        if self.stopped:
            raise RuntimeError("echo session is stopped")
        self.state = SessionState.SENDING
        self.sequence_number = (self.sequence_number + 1) & MAX_SEQUENCE_NUMBER
        datagram = build_echo_request(self.identifier, self.sequence_number, self.payload)
        self.last_send_time = now
        self.outstanding_reply_count = 0
        self.stats.record_transmit()
        self.state = SessionState.WAITING_REPLY
        return EchoRequest(
            sequence=self.sequence_number,
            datagram=datagram,
            send_time=now,
            deadline=now + self.reply_timeout_s,
        )

    def handle_datagram(self, data: bytes, now: float) -> EchoReply | None:
        if self.last_send_time is None or self.stopped:
            return None
        if now - self.last_send_time > self.reply_timeout_s:
            LOGGER.debug("dropping datagram past reply deadline icmp_seq=%d", self.sequence_number)
            return None
        if self.state is SessionState.TIMED_OUT:
            LOGGER.debug("dropping datagram after timeout icmp_seq=%d", self.sequence_number)
            return None

        try:
            ip_header, icmp_header, _payload = decode_echo_datagram(data)
        except DecodeError as exc:
            LOGGER.debug("dropping undecodable datagram: %s", exc)
            return None
        if not verify_checksum(data[ip_header.header_length :]):
            LOGGER.debug("dropping datagram with bad icmp checksum from %s", ip_header.source_address)
            return None

        if icmp_header.icmp_type != ICMP_ECHO_REPLY:
            return None
        if icmp_header.identifier != self.identifier:
            return None
        if icmp_header.sequence != self.sequence_number:
            LOGGER.debug(
                "ignoring reply for icmp_seq=%d, waiting for %d",
                icmp_header.sequence,
                self.sequence_number,
            )
            return None

        self.outstanding_reply_count += 1
        if self.outstanding_reply_count > 1:
            LOGGER.debug("ignoring duplicate reply icmp_seq=%d", icmp_header.sequence)
            return None

        self.state = SessionState.MATCHED
        rtt_ms = (now - self.last_send_time) * 1000.0
        self.stats.record(rtt_ms)
        return EchoReply(
            size=len(data) - ip_header.header_length,
            source_address=str(ip_header.source_address),
            sequence=icmp_header.sequence,
            ttl=ip_header.time_to_live,
            rtt_ms=rtt_ms,
        )

    def handle_timeout(self, sequence: int, now: float) -> RequestTimedOut | None:
        # A timer armed for an earlier sequence, or one that raced a reply, is a no-op.
        if self.state is not SessionState.WAITING_REPLY or sequence != self.sequence_number:
            return None
        self.state = SessionState.TIMED_OUT
        LOGGER.debug("reply timeout icmp_seq=%d at %.3f", sequence, now)
        return RequestTimedOut(sequence=sequence)

    def next_send_time(self, now: float) -> float:
        if self.last_send_time is None:
            return now
        return max(now, self.last_send_time + self.send_interval_s)

    def stop(self) -> None:
        self.state = SessionState.STOPPED
