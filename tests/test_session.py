import ipaddress
import struct

import pytest

from icmp_ping.icmp import (
    ICMP_ECHO_REPLY,
    ICMP_ECHO_REQUEST,
    IcmpHeader,
    decode_icmp,
    encode_icmp,
)
from icmp_ping.session import (
    DEFAULT_PAYLOAD,
    EchoReply,
    EchoSession,
    RequestTimedOut,
    SessionState,
)

T0 = 1000.0


def _ipv4_wrap(icmp_message: bytes, *, ttl: int = 64, src: str = "127.0.0.1") -> bytes:
    header = struct.pack(
        "!BBHHHBBH4s4s",
        0x45,
        0,
        20 + len(icmp_message),
        0,
        0,
        ttl,
        1,
        0,
        ipaddress.IPv4Address(src).packed,
        ipaddress.IPv4Address("127.0.0.1").packed,
    )
    return header + icmp_message


def _echo_reply(
    identifier: int,
    sequence: int,
    *,
    payload: bytes = DEFAULT_PAYLOAD,
    icmp_type: int = ICMP_ECHO_REPLY,
    ttl: int = 64,
) -> bytes:
    header = IcmpHeader(
        icmp_type=icmp_type,
        icmp_code=0,
        identifier=identifier,
        sequence=sequence,
    ).with_checksum(payload)
    return _ipv4_wrap(encode_icmp(header) + payload, ttl=ttl)


def _new_session(**kwargs) -> EchoSession:
    return EchoSession(1234, **kwargs)


def test_start_send_builds_echo_request() -> None:
    session = _new_session()

    request = session.start_send(T0)

    header = decode_icmp(request.datagram)
    assert header.icmp_type == ICMP_ECHO_REQUEST
    assert header.identifier == 1234
    assert header.sequence == 1
    assert request.datagram[8:] == DEFAULT_PAYLOAD
    assert request.send_time == T0
    assert request.deadline == T0 + 5.0
    assert session.state is SessionState.WAITING_REPLY
    assert session.stats.transmitted_count == 1


def test_sequence_number_wraps_at_16_bits() -> None:
    session = _new_session()
    session.sequence_number = 0xFFFF

    request = session.start_send(T0)

    assert request.sequence == 0
    assert decode_icmp(request.datagram).sequence == 0


def test_matching_reply_records_rtt() -> None:
    session = _new_session()
    session.start_send(T0)

    reply = session.handle_datagram(_echo_reply(1234, 1, ttl=55), T0 + 0.0125)

    assert isinstance(reply, EchoReply)
    assert reply.size == 64
    assert reply.source_address == "127.0.0.1"
    assert reply.sequence == 1
    assert reply.ttl == 55
    assert reply.rtt_ms == pytest.approx(12.5)
    assert session.state is SessionState.MATCHED
    assert session.stats.received_count == 1
    report = session.stats.finalize(elapsed_s=0.0125)
    assert report.rtt_min_ms == pytest.approx(12.5)
    assert report.rtt_max_ms == pytest.approx(12.5)
    assert report.rtt_avg_ms == pytest.approx(12.5)
    assert report.rtt_mdev_ms == pytest.approx(0.0, abs=1e-6)


def test_duplicate_reply_is_drained_without_stats() -> None:
    session = _new_session()
    session.start_send(T0)
    datagram = _echo_reply(1234, 1)

    first = session.handle_datagram(datagram, T0 + 0.01)
    second = session.handle_datagram(datagram, T0 + 0.02)

    assert first is not None
    assert second is None
    assert session.outstanding_reply_count == 2
    assert session.stats.received_count == 1
    assert session.stats.rtt_sum == pytest.approx(10.0)


def test_datagram_before_first_send_is_ignored() -> None:
    session = _new_session()

    assert session.handle_datagram(_echo_reply(1234, 0), T0) is None
    assert session.state is SessionState.IDLE
    assert session.stats.received_count == 0


@pytest.mark.parametrize(
    "datagram",
    [
        _echo_reply(4321, 1),
        _echo_reply(1234, 2),
        _echo_reply(1234, 1, icmp_type=ICMP_ECHO_REQUEST),
        b"\x45\x00\x00",
        b"\x65" + b"\x00" * 40,
    ],
    ids=["other-identifier", "other-sequence", "echo-request", "truncated", "ipv6"],
)
def test_non_matching_datagram_is_ignored(datagram: bytes) -> None:
    session = _new_session()
    session.start_send(T0)

    assert session.handle_datagram(datagram, T0 + 0.01) is None
    assert session.state is SessionState.WAITING_REPLY
    assert session.stats.received_count == 0
    assert session.outstanding_reply_count == 0


def test_reply_with_bad_checksum_is_ignored() -> None:
    session = _new_session()
    session.start_send(T0)
    corrupted = bytearray(_echo_reply(1234, 1))
    corrupted[-1] ^= 0xFF

    assert session.handle_datagram(bytes(corrupted), T0 + 0.01) is None
    assert session.stats.received_count == 0


def test_mismatched_sequence_keeps_timeout_armed() -> None:
    session = _new_session()
    session.start_send(T0)

    assert session.handle_datagram(_echo_reply(1234, 7), T0 + 0.01) is None
    assert session.handle_timeout(1, T0 + 5.0) == RequestTimedOut(sequence=1)


def test_reply_after_deadline_is_ignored() -> None:
    session = _new_session()
    session.start_send(T0)

    assert session.handle_datagram(_echo_reply(1234, 1), T0 + 5.001) is None
    assert session.stats.received_count == 0


def test_timeout_after_match_is_ignored() -> None:
    session = _new_session()
    session.start_send(T0)
    session.handle_datagram(_echo_reply(1234, 1), T0 + 0.01)

    assert session.handle_timeout(1, T0 + 5.0) is None
    assert session.state is SessionState.MATCHED


def test_reply_after_timeout_fired_is_ignored() -> None:
    session = _new_session()
    session.start_send(T0)

    assert session.handle_timeout(1, T0 + 5.0) == RequestTimedOut(sequence=1)
    assert session.handle_datagram(_echo_reply(1234, 1), T0 + 5.0) is None
    assert session.state is SessionState.TIMED_OUT
    assert session.stats.received_count == 0


def test_timer_for_previous_sequence_is_ignored() -> None:
    session = _new_session()
    session.start_send(T0)
    session.handle_datagram(_echo_reply(1234, 1), T0 + 0.01)
    session.start_send(T0 + 1.0)

    assert session.handle_timeout(1, T0 + 5.0) is None
    assert session.state is SessionState.WAITING_REPLY


def test_next_send_is_relative_to_original_send_time() -> None:
    session = _new_session()
    assert session.next_send_time(T0) == T0

    session.start_send(T0)
    session.handle_datagram(_echo_reply(1234, 1), T0 + 0.2)
    assert session.next_send_time(T0 + 0.2) == pytest.approx(T0 + 1.0)

    session.start_send(T0 + 1.0)
    session.handle_timeout(2, T0 + 6.0)
    assert session.next_send_time(T0 + 6.0) == pytest.approx(T0 + 6.0)


def test_two_lost_cycles_report_full_loss() -> None:
    session = _new_session()
    for cycle in range(2):
        now = T0 + cycle * 5.0
        request = session.start_send(now)
        assert session.handle_timeout(request.sequence, request.deadline) is not None

    report = session.stats.finalize(elapsed_s=10.0)
    assert report.transmitted == 2
    assert report.received == 0
    assert report.loss_pct == pytest.approx(100.0)
    assert report.rtt_avg_ms is None
    assert report.rtt_mdev_ms is None


def test_late_reply_does_not_leak_into_next_cycle() -> None:
    session = _new_session()
    session.start_send(T0)
    session.handle_timeout(1, T0 + 5.0)
    session.start_send(T0 + 5.0)

    assert session.handle_datagram(_echo_reply(1234, 1), T0 + 5.01) is None
    reply = session.handle_datagram(_echo_reply(1234, 2), T0 + 5.03)

    assert reply is not None
    assert reply.sequence == 2
    assert reply.rtt_ms == pytest.approx(30.0)
    assert session.stats.received_count == 1
    assert session.stats.transmitted_count == 2


def test_mixed_cycles_account_every_send() -> None:
    session = _new_session()
    now = T0
    answered = [True, False, True, True, False]
    for index, reply_expected in enumerate(answered):
        request = session.start_send(now)
        if reply_expected:
            assert session.handle_datagram(_echo_reply(1234, request.sequence), now + 0.004 * (index + 1))
            now = session.next_send_time(now + 0.01)
        else:
            session.handle_timeout(request.sequence, request.deadline)
            now = session.next_send_time(request.deadline)

    report = session.stats.finalize(elapsed_s=now - T0)
    assert report.transmitted == 5
    assert report.received == 3
    assert report.loss_pct == pytest.approx(40.0)
    assert report.rtt_min_ms <= report.rtt_avg_ms <= report.rtt_max_ms


def test_stop_blocks_further_sends_and_keeps_counters() -> None:
    session = _new_session()
    session.start_send(T0)
    session.handle_datagram(_echo_reply(1234, 1), T0 + 0.01)

    session.stop()

    assert session.stopped
    assert session.handle_datagram(_echo_reply(1234, 1), T0 + 0.02) is None
    with pytest.raises(RuntimeError):
        session.start_send(T0 + 1.0)
    assert session.stats.transmitted_count == 1
    assert session.stats.received_count == 1
