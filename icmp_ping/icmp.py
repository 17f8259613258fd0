from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass, replace

ICMP_ECHO_REQUEST = 8
ICMP_ECHO_REQUEST_CODE = 0
ICMP_ECHO_REPLY = 0
ICMP_ECHO_REPLY_CODE = 0
ICMP_HEADER_LEN = 8
IPV4_HEADER_LEN = 20
IPV4_MAX_HEADER_LEN = 60

ICMP_HEADER_STRUCT = struct.Struct("!BBHHH")
IPV4_HEADER_STRUCT = struct.Struct("!BBHHHBBH4s4s")


class DecodeError(ValueError):
    pass


class MalformedHeader(DecodeError):
    pass


class TruncatedInput(DecodeError):
    pass


def internet_checksum(data: bytes) -> int:
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total >> 16) + (total & 0xFFFF)
    return ~total & 0xFFFF


def verify_checksum(icmp_message: bytes) -> bool:
    """Return True when an ICMP message (header and payload) sums to 0xFFFF."""
    return internet_checksum(icmp_message) == 0


@dataclass(frozen=True)
class IcmpHeader:
    icmp_type: int
    icmp_code: int
    checksum: int = 0
    identifier: int = 0
    sequence: int = 0

    def to_bytes(self) -> bytes:
        return ICMP_HEADER_STRUCT.pack(
            self.icmp_type,
            self.icmp_code,
            self.checksum,
            self.identifier,
            self.sequence,
        )

    @staticmethod
    def from_bytes(buf: bytes) -> "IcmpHeader":
        if len(buf) < ICMP_HEADER_LEN:
            raise TruncatedInput("icmp header too short")
        icmp_type, icmp_code, checksum, identifier, sequence = ICMP_HEADER_STRUCT.unpack(
            buf[:ICMP_HEADER_LEN]
        )
        return IcmpHeader(
            icmp_type=icmp_type,
            icmp_code=icmp_code,
            checksum=checksum,
            identifier=identifier,
            sequence=sequence,
        )

    def with_checksum(self, payload: bytes) -> "IcmpHeader":
        return replace(self, checksum=compute_checksum(self, payload))


def encode_icmp(header: IcmpHeader) -> bytes:
    return header.to_bytes()


def decode_icmp(buf: bytes) -> IcmpHeader:
    return IcmpHeader.from_bytes(buf)


def compute_checksum(header: IcmpHeader, payload: bytes) -> int:
    """Internet checksum of an ICMP message whose checksum field is not yet known.

    The header words are summed field by field, so the checksum field never
    takes part in the sum. This is equivalent to zeroing the field and running
    ``internet_checksum`` over the whole message.
    """
    total = ((header.icmp_type & 0xFF) << 8) + (header.icmp_code & 0xFF)
    total += header.identifier & 0xFFFF
    total += header.sequence & 0xFFFF
    if len(payload) % 2:
        payload += b"\x00"
    total += sum(struct.unpack(f"!{len(payload) // 2}H", payload))
    while total >> 16:
        total = (total >> 16) + (total & 0xFFFF)
    return ~total & 0xFFFF


def build_echo_request(identifier: int, sequence: int, payload: bytes) -> bytes:
    header = IcmpHeader(
        icmp_type=ICMP_ECHO_REQUEST,
        icmp_code=ICMP_ECHO_REQUEST_CODE,
        identifier=identifier & 0xFFFF,
        sequence=sequence & 0xFFFF,
    ).with_checksum(payload)
    return encode_icmp(header) + payload


@dataclass(frozen=True)
class Ipv4Header:
    version: int
    header_length: int
    type_of_service: int
    total_length: int
    identification: int
    dont_fragment: bool
    more_fragments: bool
    fragment_offset: int
    time_to_live: int
    protocol: int
    header_checksum: int
    source_address: ipaddress.IPv4Address
    destination_address: ipaddress.IPv4Address
    options: bytes = b""


def decode_ipv4(buf: bytes) -> Ipv4Header:
    if len(buf) < IPV4_HEADER_LEN:
        raise TruncatedInput("ipv4 header too short")
    (
        version_ihl,
        type_of_service,
        total_length,
        identification,
        flags_fragment,
        time_to_live,
        protocol,
        header_checksum,
        source,
        destination,
    ) = IPV4_HEADER_STRUCT.unpack(buf[:IPV4_HEADER_LEN])

    version = version_ihl >> 4
    if version != 4:
        raise MalformedHeader(f"unsupported ip version: {version}")
    header_length = (version_ihl & 0x0F) * 4
    if not (IPV4_HEADER_LEN <= header_length <= IPV4_MAX_HEADER_LEN):
        raise MalformedHeader(f"invalid ipv4 header length: {header_length}")
    if len(buf) < header_length:
        raise TruncatedInput(
            f"ipv4 header declares {header_length} bytes, got {len(buf)}"
        )

    return Ipv4Header(
        version=version,
        header_length=header_length,
        type_of_service=type_of_service,
        total_length=total_length,
        identification=identification,
        dont_fragment=bool(flags_fragment & 0x4000),
        more_fragments=bool(flags_fragment & 0x2000),
        fragment_offset=flags_fragment & 0x1FFF,
        time_to_live=time_to_live,
        protocol=protocol,
        header_checksum=header_checksum,
        source_address=ipaddress.IPv4Address(source),
        destination_address=ipaddress.IPv4Address(destination),
        options=bytes(buf[IPV4_HEADER_LEN:header_length]),
    )


def decode_echo_datagram(buf: bytes) -> tuple[Ipv4Header, IcmpHeader, bytes]:
    ip_header = decode_ipv4(buf)
    icmp_message = buf[ip_header.header_length :]
    icmp_header = decode_icmp(icmp_message)
    return ip_header, icmp_header, bytes(icmp_message[ICMP_HEADER_LEN:])
