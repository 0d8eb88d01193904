"""TFTP packet codec (RFC 1350, section 5).

Ref: https://datatracker.ietf.org/doc/html/rfc1350/

* netascii: 8 bit ascii
* octet: 8 bit bytes

Both modes are handled identically at the byte level; the mode token is carried
through so it can be logged.
"""
from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional, Type

NUL = b"\x00"

DEFAULT_PORT = 69
BLOCK_SIZE = 512
MAX_FILENAME_LENGTH = 254
MAX_MODE_LENGTH = 9
MAX_BLOCK_NUMBER = 0xFFFF
# opcode + block number + payload
MAX_DATAGRAM_SIZE = 4 + BLOCK_SIZE


def encode_netascii(s: str) -> bytes:
    return bytes(ord(c) for c in s)


def decode_netascii(data: bytes) -> str:
    return "".join(chr(c) for c in data)


def next_block(block_number: int) -> int:
    return (block_number + 1) & MAX_BLOCK_NUMBER


def previous_block(block_number: int) -> int:
    return (block_number - 1) & MAX_BLOCK_NUMBER


class ErrorCodes(Enum):
    NOT_DEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL_OR_ALLOCATION_EXCEEDED = 3
    ILLEGAL_TFTP_OPERATION = 4
    UNKNOWN_TRANSFER_ID = 5
    FILE_ALREADY_EXISTS = 6
    NO_SUCH_USER = 7

    @property
    def description(self) -> str:
        return _ERROR_DESCRIPTIONS[self]


_ERROR_DESCRIPTIONS = {
    ErrorCodes.NOT_DEFINED: "Undefined error",
    ErrorCodes.FILE_NOT_FOUND: "File not found",
    ErrorCodes.ACCESS_VIOLATION: "Access violation",
    ErrorCodes.DISK_FULL_OR_ALLOCATION_EXCEEDED: "Disk full",
    ErrorCodes.ILLEGAL_TFTP_OPERATION: "Illegal TFTP operation",
    ErrorCodes.UNKNOWN_TRANSFER_ID: "Unknown transfer ID",
    ErrorCodes.FILE_ALREADY_EXISTS: "File already exists",
    ErrorCodes.NO_SUCH_USER: "No such user",
}


class TransferMode(Enum):
    NETASCII = "netascii"
    OCTET = "octet"

    @classmethod
    def parse(cls, token: str) -> TransferMode:
        """Case-insensitive lookup; anything unrecognised is treated as octet."""
        try:
            return cls(token.lower())
        except ValueError:
            return cls.OCTET


class PacketType(Enum):
    READ_REQUEST = 1
    WRITE_REQUEST = 2
    DATA = 3
    ACKNOWLEDGEMENT = 4
    ERROR = 5

    @property
    def implementation(self) -> Optional[Type[IPacket]]:
        return _IPACKET_REGISTRY.get(self.value)


_IPACKET_REGISTRY: Dict[int, Type[IPacket]] = {}


class TftpException(Exception):
    pass


class DecodeError(TftpException):
    pass


class TruncatedPacketError(DecodeError):
    pass


class MalformedPacketError(DecodeError):
    pass


class UnknownOpcodeError(DecodeError):
    pass


class IPacket(ABC):
    """See Section 5 of RFC 1350."""

    packet_type: PacketType

    def __init_subclass__(cls, **__) -> None:
        if cls.packet_type.value in _IPACKET_REGISTRY:
            raise ValueError(
                f"Implementation for PacketType {cls.packet_type} already exists"
            )
        _IPACKET_REGISTRY[cls.packet_type.value] = cls

    def __str__(self) -> str:
        description = " | ".join(f"{k}={v}" for k, v in self._fields().items())
        return f"<{self.__class__.__name__} {description}>"

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._fields() == other._fields()

    def _fields(self) -> dict:
        return dict(self.__dict__)

    @abstractmethod
    def data(self) -> bytes:
        """Serialize the instance to bytes matching the packet format."""

    @classmethod
    @abstractmethod
    def from_data(cls, data: bytes) -> IPacket:
        """Deserialize the instance from bytes."""


def _check_u16(name: str, value: int) -> None:
    if not 0 <= value <= MAX_BLOCK_NUMBER:
        raise ValueError(f"{name} must be in range 0..{MAX_BLOCK_NUMBER}")


def _read_string(buffer: bytes, max_length: int, field: str) -> tuple:
    """Split a NUL terminated string off the front of ``buffer``."""
    terminator = buffer.find(NUL)
    if terminator < 0:
        raise MalformedPacketError(f"{field} is not NUL terminated")
    if terminator > max_length:
        raise MalformedPacketError(f"{field} exceeds {max_length} bytes")
    return decode_netascii(buffer[:terminator]), buffer[terminator + 1 :]


class ReadRequestPacket(IPacket):
    """
           2 bytes    string    1 byte    string    1 byte
          -------------------------------------------------
    RRQ   | 01/02 |  Filename  |   0  |    Mode    |   0  |
          -------------------------------------------------
    """

    packet_type: PacketType = PacketType.READ_REQUEST

    # ! = network (big-endian)
    structure = "!H{filename_size:d}sc{mode_size:d}sc"

    def __init__(self, filename: str, mode: TransferMode) -> None:
        self.filename = filename
        self.mode = mode

        if not filename:
            raise ValueError("filename must not be empty")
        if NUL.decode() in filename:
            raise ValueError("filename must not contain NUL")
        if len(encode_netascii(filename)) > MAX_FILENAME_LENGTH:
            raise ValueError(f"filename must be at most {MAX_FILENAME_LENGTH} bytes")

    @classmethod
    def from_data(cls, data: bytes) -> ReadRequestPacket:
        filename, remainder = _read_string(data[2:], MAX_FILENAME_LENGTH, "Filename")
        if not filename:
            raise MalformedPacketError("Filename is empty")
        mode, _ = _read_string(remainder, MAX_MODE_LENGTH, "Mode")
        # anything after the mode terminator would be RFC 2347 options; ignored
        return cls(filename=filename, mode=TransferMode.parse(mode))

    def data(self) -> bytes:
        """Encodes the packet into a sendable request."""
        opcode = self.packet_type.value
        filename = encode_netascii(self.filename)
        mode = encode_netascii(self.mode.value)
        structure = self.structure.format(
            filename_size=len(filename), mode_size=len(mode)
        )
        return struct.pack(structure, opcode, filename, NUL, mode, NUL)


class WriteRequestPacket(ReadRequestPacket):
    packet_type: PacketType = PacketType.WRITE_REQUEST


class DataPacket(IPacket):
    """
     2 bytes     2 bytes      n bytes
     ----------------------------------
    | Opcode |   Block #  |   Data     |
     ----------------------------------
    """

    packet_type: PacketType = PacketType.DATA
    max_block_size = BLOCK_SIZE

    def __init__(self, block_number: int, data: bytes) -> None:
        self.block_number = block_number
        self.raw_data = bytes(data)

        _check_u16("block_number", self.block_number)
        if len(self.raw_data) > self.max_block_size:
            raise ValueError(f"data must be at most {self.max_block_size} bytes")

    def __str__(self) -> str:
        return (
            f"<{self.__class__.__name__} block_number={self.block_number} "
            f"| size={len(self.raw_data)}>"
        )

    @property
    def end_of_data(self) -> bool:
        return len(self.raw_data) < self.max_block_size

    def data(self) -> bytes:
        header = struct.pack("!HH", self.packet_type.value, self.block_number)
        return header + self.raw_data

    @classmethod
    def from_data(cls, data: bytes) -> DataPacket:
        if len(data) < 4:
            raise MalformedPacketError("Unexpected packet length (packet too small)")
        if len(data) > MAX_DATAGRAM_SIZE:
            raise MalformedPacketError(
                f"Data payload of {len(data) - 4} bytes exceeds {BLOCK_SIZE}"
            )
        (block_number,) = struct.unpack("!H", data[2:4])
        return cls(block_number, data[4:])


class AckPacket(IPacket):
    """
      2 bytes     2 bytes
     ---------------------
    | Opcode |   Block #  |
     ---------------------
    """

    packet_type: PacketType = PacketType.ACKNOWLEDGEMENT

    def __init__(self, block_number: int) -> None:
        self.block_number = block_number
        _check_u16("block_number", self.block_number)

    @classmethod
    def from_data(cls, data: bytes) -> AckPacket:
        if len(data) != 4:
            raise MalformedPacketError("Unexpected packet length")
        (block_number,) = struct.unpack("!H", data[2:4])
        return cls(block_number)

    def data(self) -> bytes:
        return struct.pack("!HH", self.packet_type.value, self.block_number)


class ErrorPacket(IPacket):
    """
     2 bytes     2 bytes      string    1 byte
     -----------------------------------------
    | Opcode |  ErrorCode |   ErrMsg   |   0  |
     -----------------------------------------
    """

    packet_type = PacketType.ERROR
    structure = "!HH{error_message_size:d}sc"

    def __init__(self, error_code: int, error_message: str = "") -> None:
        self.error_code = error_code
        self.error_message = error_message

        _check_u16("error_code", self.error_code)
        if NUL.decode() in error_message:
            raise ValueError("error_message must not contain NUL")

    @property
    def error(self) -> Optional[ErrorCodes]:
        try:
            return ErrorCodes(self.error_code)
        except ValueError:
            return None

    @classmethod
    def from_code(cls, error: ErrorCodes, message: str = None) -> ErrorPacket:
        return cls(error.value, message if message is not None else error.description)

    def data(self) -> bytes:
        opcode = self.packet_type.value
        error_message = encode_netascii(self.error_message)
        structure = self.structure.format(error_message_size=len(error_message))
        return struct.pack(structure, opcode, self.error_code, error_message, NUL)

    @classmethod
    def from_data(cls, data: bytes) -> ErrorPacket:
        if len(data) < 4:
            raise MalformedPacketError("Unexpected packet length (packet too small)")
        (error_code,) = struct.unpack("!H", data[2:4])
        message = data[4:]
        terminator = message.find(NUL)
        if terminator >= 0:
            message = message[:terminator]
        return cls(error_code, decode_netascii(message))


def decode(data: bytes) -> IPacket:
    """Parse one datagram into its packet class."""
    if len(data) < 2:
        raise TruncatedPacketError("Packet too short to contain an opcode")

    (opcode,) = struct.unpack("!H", data[:2])
    try:
        packet_class = PacketType(opcode).implementation
    except ValueError:
        packet_class = None
    if packet_class is None:
        raise UnknownOpcodeError(f"Unknown opcode {opcode}")

    return packet_class.from_data(data)


def encode(packet: IPacket) -> bytes:
    return packet.data()
