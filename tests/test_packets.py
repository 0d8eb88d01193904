from __future__ import annotations

import pytest

from pytftpd import packets


class TestReadRequestPacket:
    def test_data(self) -> None:
        p = packets.ReadRequestPacket(
            filename="HELLO", mode=packets.TransferMode.NETASCII
        )
        expected = (
            # 01
            b"\x00\x01"
            # HELLO
            b"\x48\x45\x4C\x4C\x4F"
            # 0
            b"\x00"
            # netascii
            b"\x6e\x65\x74\x61\x73\x63\x69\x69"
            # 0
            b"\x00"
        )
        assert p.data() == expected

    def test_from_data(self) -> None:
        data = (
            # opcode
            b"\x00\x01"
            # filename
            b"HelloWorld.txt\x00"
            # mode
            b"netascii\x00"
        )
        expected = packets.ReadRequestPacket(
            filename="HelloWorld.txt", mode=packets.TransferMode.NETASCII
        )
        assert packets.ReadRequestPacket.from_data(data) == expected

    @pytest.mark.parametrize(
        "token, expected",
        (
            (b"octet", packets.TransferMode.OCTET),
            (b"OCTET", packets.TransferMode.OCTET),
            (b"NetAscii", packets.TransferMode.NETASCII),
            (b"mail", packets.TransferMode.OCTET),
            (b"", packets.TransferMode.OCTET),
        ),
    )
    def test_mode_is_case_insensitive_and_defaults_to_octet(
        self, token: bytes, expected: packets.TransferMode
    ) -> None:
        packet = packets.decode(b"\x00\x01file\x00" + token + b"\x00")
        assert packet.mode is expected

    def test_trailing_options_are_ignored(self) -> None:
        packet = packets.decode(b"\x00\x01file\x00octet\x00blksize\x001428\x00")
        assert packet == packets.ReadRequestPacket("file", packets.TransferMode.OCTET)

    @pytest.mark.parametrize(
        "data",
        (
            # no terminator on filename
            b"\x00\x01file",
            # no terminator on mode
            b"\x00\x01file\x00octet",
            # no mode at all
            b"\x00\x01file\x00",
            # empty filename
            b"\x00\x01\x00octet\x00",
            # filename one byte over the limit
            b"\x00\x01" + b"a" * 255 + b"\x00octet\x00",
            # mode one byte over the limit
            b"\x00\x01file\x00" + b"m" * 10 + b"\x00",
        ),
    )
    def test_from_data_malformed__raises(self, data: bytes) -> None:
        with pytest.raises(packets.MalformedPacketError):
            packets.decode(data)

    def test_longest_filename_is_accepted(self) -> None:
        filename = "a" * packets.MAX_FILENAME_LENGTH
        packet = packets.decode(b"\x00\x02" + filename.encode() + b"\x00octet\x00")
        assert isinstance(packet, packets.WriteRequestPacket)
        assert packet.filename == filename

    def test_init_filename_too_long__raises(self) -> None:
        with pytest.raises(ValueError, match=r".*254.*"):
            packets.ReadRequestPacket("a" * 255, packets.TransferMode.OCTET)

    def test_write_request_is_not_equal_to_read_request(self) -> None:
        rrq = packets.ReadRequestPacket("f", packets.TransferMode.OCTET)
        wrq = packets.WriteRequestPacket("f", packets.TransferMode.OCTET)
        assert rrq != wrq


class TestDataPacket:
    @pytest.mark.parametrize("n_bytes", (0, 1, 511))
    def test_less_than_512_bytes__is_end_of_data(self, n_bytes: int) -> None:
        instance = packets.DataPacket(1, b"\x01" * n_bytes)
        assert instance.end_of_data

    def test_512_bytes__is_not_end_of_data(self) -> None:
        instance = packets.DataPacket(1, b"\x01" * 512)
        assert not instance.end_of_data

    def test_init_greater_than_512_bytes__raises(self) -> None:
        with pytest.raises(ValueError, match=r".*512.*"):
            packets.DataPacket(1, b"\x01" * 513)

    def test_init_block_number_out_of_range__raises(self) -> None:
        with pytest.raises(ValueError):
            packets.DataPacket(65536, b"")

    def test_from_data(self) -> None:
        data = (
            # opcode
            b"\x00\x03"
            # block number
            b"\x00\x0A"
            # data
            b"\x00\x01\x02"
        )
        expected = packets.DataPacket(block_number=10, data=b"\x00\x01\x02")
        assert packets.DataPacket.from_data(data) == expected

    def test_from_data_oversized_payload__raises(self) -> None:
        with pytest.raises(packets.MalformedPacketError):
            packets.decode(b"\x00\x03\x00\x01" + b"\x00" * 513)

    def test_from_data_without_block_number__raises(self) -> None:
        with pytest.raises(packets.MalformedPacketError):
            packets.decode(b"\x00\x03\x00")

    def test_data(self) -> None:
        expected = (
            # opcode
            b"\x00\x03"
            # block number
            b"\x00\x0A"
            # data
            b"\x00\x01\x02"
        )
        instance = packets.DataPacket(block_number=10, data=b"\x00\x01\x02")
        assert instance.data() == expected

    def test_high_block_number_is_unsigned(self) -> None:
        assert packets.DataPacket(65535, b"").data() == b"\x00\x03\xff\xff"


class TestAckPacket:
    def test_data(self) -> None:
        assert packets.AckPacket(17).data() == b"\x00\x04\x00\x11"

    def test_from_data(self) -> None:
        actual = packets.AckPacket.from_data(b"\x00\x04\x00\x11")
        assert actual == packets.AckPacket(17)

    @pytest.mark.parametrize("data", (b"\x00\x04\x00", b"\x00\x04\x00\x01\x00"))
    def test_from_data_wrong_length__raises(self, data: bytes) -> None:
        with pytest.raises(packets.MalformedPacketError):
            packets.decode(data)


class TestErrorPacket:
    def test_error_enum_is_mapped(self) -> None:
        instance = packets.ErrorPacket(1, "")
        assert instance.error is packets.ErrorCodes.FILE_NOT_FOUND

    def test_unknown_error_code_is_not_mapped(self) -> None:
        assert packets.ErrorPacket(42, "").error is None

    def test_from_code_uses_description(self) -> None:
        instance = packets.ErrorPacket.from_code(packets.ErrorCodes.FILE_ALREADY_EXISTS)
        assert instance.error_code == 6
        assert instance.error_message == "File already exists"

    def test_data(self) -> None:
        expected = (
            # opcode
            b"\x00\x05"
            # error code - Unknown transfer ID
            b"\x00\x05"
            # error message
            b"You plonker\x00"
        )
        assert packets.ErrorPacket(5, "You plonker").data() == expected

    def test_from_data(self) -> None:
        data = (
            # opcode
            b"\x00\x05"
            # error code - Unknown transfer ID
            b"\x00\x05"
            # error message
            b"You plonker\x00"
        )
        actual = packets.ErrorPacket.from_data(data)
        assert actual == packets.ErrorPacket(5, "You plonker")
        assert actual.error is packets.ErrorCodes.UNKNOWN_TRANSFER_ID

    def test_from_data_without_message(self) -> None:
        assert packets.decode(b"\x00\x05\x00\x03") == packets.ErrorPacket(3, "")

    def test_from_data_without_terminator_keeps_message(self) -> None:
        assert packets.decode(b"\x00\x05\x00\x00oops") == packets.ErrorPacket(0, "oops")

    def test_from_data_too_short__raises(self) -> None:
        with pytest.raises(packets.MalformedPacketError):
            packets.decode(b"\x00\x05\x00")


class TestDecode:
    @pytest.mark.parametrize("data", (b"", b"\x00"))
    def test_less_than_2_bytes__truncated(self, data: bytes) -> None:
        with pytest.raises(packets.TruncatedPacketError):
            packets.decode(data)

    @pytest.mark.parametrize("data", (b"\x00\x00", b"\x00\x06\x00\x00", b"\xff\xff"))
    def test_unknown_opcode(self, data: bytes) -> None:
        with pytest.raises(packets.UnknownOpcodeError):
            packets.decode(data)

    def test_decode_errors_share_a_base(self) -> None:
        for error in (
            packets.TruncatedPacketError,
            packets.MalformedPacketError,
            packets.UnknownOpcodeError,
        ):
            assert issubclass(error, packets.DecodeError)

    @pytest.mark.parametrize(
        "packet",
        (
            packets.ReadRequestPacket("boot/pxelinux.0", packets.TransferMode.OCTET),
            packets.WriteRequestPacket("notes.txt", packets.TransferMode.NETASCII),
            packets.WriteRequestPacket("\xe9t\xe9", packets.TransferMode.OCTET),
            packets.DataPacket(1, b""),
            packets.DataPacket(65535, bytes(range(256)) * 2),
            packets.AckPacket(0),
            packets.AckPacket(65535),
            packets.ErrorPacket(6, "File already exists"),
            packets.ErrorPacket(0, ""),
        ),
        ids=str,
    )
    def test_decode_inverts_encode(self, packet: packets.IPacket) -> None:
        assert packets.decode(packets.encode(packet)) == packet


class TestBlockNumbers:
    def test_next_block_wraps_to_zero(self) -> None:
        assert packets.next_block(1) == 2
        assert packets.next_block(65535) == 0

    def test_previous_block_wraps_to_max(self) -> None:
        assert packets.previous_block(2) == 1
        assert packets.previous_block(0) == 65535
