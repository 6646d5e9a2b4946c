"""Unit tests for the DVRIP codec and client."""

import asyncio
import json

import pytest

from connection.dvrip import (
    HEADER_SIZE,
    CommandCode,
    DvripClient,
    DvripHeader,
    DvripProtocolError,
    decode_header,
    decode_message,
    decode_payload,
    discover_port,
    encode_header,
    encode_message,
    format_session_id,
    is_valid_response,
    parse_session_id,
    sofia_hash,
)


class FakeWriter:
    def __init__(self):
        self.frames = []
        self.closed = False

    def write(self, data):
        self.frames.append(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class FakeDevice:
    """open_connection stand-in that answers with canned frames."""

    def __init__(self, *replies, open_ports=None):
        self.replies = list(replies)
        self.open_ports = open_ports
        self.writers = []

    async def __call__(self, host, port):
        if self.open_ports is not None and port not in self.open_ports:
            raise ConnectionRefusedError()
        reader = asyncio.StreamReader()
        for reply in self.replies:
            reader.feed_data(reply)
        writer = FakeWriter()
        self.writers.append(writer)
        return reader, writer


class TestCodec:
    """Header and payload framing."""

    def test_header_layout(self):
        header = DvripHeader(session_id=0x11, sequence=3, command=CommandCode.LOGIN_REQ, length=42)
        data = encode_header(header)

        assert len(data) == HEADER_SIZE == 20
        assert data[0] == 0xFF
        assert data[1] == 0x01
        assert data[2:4] == b'\x00\x00'
        assert decode_header(data) == header

    def test_bad_magic_rejected(self):
        data = bytearray(encode_header(DvripHeader(0, 0, 1000, 0)))
        data[0] = 0xFE
        with pytest.raises(DvripProtocolError):
            decode_header(bytes(data))

    def test_short_header_rejected(self):
        with pytest.raises(DvripProtocolError):
            decode_header(b'\xff\x01\x00')

    def test_unknown_command_is_accepted(self):
        data = encode_header(DvripHeader(0, 0, 4242, 0))
        assert decode_header(data).command == 4242

    def test_message_round_trip_with_padding(self):
        frame = encode_message(CommandCode.KEEPALIVE_RSP, {"Ret": 100}, session_id=7, sequence=1)
        message = decode_message(frame)
        assert message.header.session_id == 7
        assert message.payload == {"Ret": 100}

        assert decode_payload(b'{"Ret": 100}\n\x00') == {"Ret": 100}
        assert decode_payload(b'\x00\x00') == {}

    def test_truncated_and_non_object_payloads(self):
        frame = encode_message(CommandCode.LOGIN_RSP, {"Ret": 100})
        with pytest.raises(DvripProtocolError):
            decode_message(frame[:-2])
        with pytest.raises(DvripProtocolError):
            decode_payload(b'[1, 2]')

    def test_fingerprint(self):
        assert is_valid_response(encode_message(CommandCode.LOGIN_RSP, None))
        assert not is_valid_response(b'HTTP/1.1 400 Bad Request\r\n\r\n')

    def test_sofia_hash(self):
        digest = sofia_hash("")
        assert digest == "tlJwpbo6"
        assert len(sofia_hash("admin123")) == 8
        assert sofia_hash("admin123") != digest

    def test_session_id_formats(self):
        assert format_session_id(0x11) == "0x00000011"
        assert parse_session_id("0x00000011") == 0x11
        assert parse_session_id("17") == 17
        assert parse_session_id("zz") is None
        assert parse_session_id(None) is None


class TestClient:
    """Login and request exchange over fake streams."""

    @pytest.mark.asyncio
    async def test_login_success_assigns_session(self):
        reply = encode_message(CommandCode.LOGIN_RSP,
                               {"Ret": 100, "SessionID": "0x00000011", "AliveInterval": 20},
                               session_id=0x11)
        device = FakeDevice(reply)
        client = DvripClient("192.168.1.60", 34567, open_connection=device)
        await client.connect()

        result = await client.login("admin", "secret")

        assert result.success
        assert result.session_id == 0x11
        assert client.authenticated
        assert client.alive_interval == 20

        sent = decode_message(device.writers[0].frames[0])
        assert sent.header.command == CommandCode.LOGIN_REQ
        assert sent.payload["UserName"] == "admin"
        assert sent.payload["PassWord"] == sofia_hash("secret")
        assert sent.payload["EncryptType"] == "MD5"

    @pytest.mark.asyncio
    async def test_login_rejected_leaves_no_session(self):
        reply = encode_message(CommandCode.LOGIN_RSP, {"Ret": 106}, session_id=0x22)
        client = DvripClient("192.168.1.60", 34567, open_connection=FakeDevice(reply))
        await client.connect()

        result = await client.login("admin", "wrong")

        assert not result.success
        assert result.ret == 106
        assert result.session_id is None
        assert "incorrect" in result.error
        assert not client.authenticated

    @pytest.mark.asyncio
    async def test_login_with_malformed_payload(self):
        reply = encode_message(CommandCode.LOGIN_RSP, {"Status": "ok"})
        client = DvripClient("192.168.1.60", 34567, open_connection=FakeDevice(reply))
        await client.connect()

        result = await client.login("admin", "secret")

        assert not result.success
        assert result.error.startswith("protocol error")

    @pytest.mark.asyncio
    async def test_sequence_increments_per_request(self):
        replies = [encode_message(CommandCode.KEEPALIVE_RSP, {"Ret": 100}, session_id=5) for _ in range(2)]
        device = FakeDevice(*replies)
        client = DvripClient("192.168.1.60", 34567, open_connection=device)
        await client.connect()
        client.session_id = 5

        assert await client.keepalive()
        assert await client.keepalive()

        sequences = [decode_header(frame).sequence for frame in device.writers[0].frames]
        assert sequences == [0, 1]
        assert json.loads(device.writers[0].frames[0][HEADER_SIZE:])["SessionID"] == "0x00000005"

    @pytest.mark.asyncio
    async def test_ptz_stop_is_a_zero_step_move(self):
        replies = [encode_message(CommandCode.PTZ_RSP, {"Ret": 100}, session_id=5) for _ in range(2)]
        device = FakeDevice(*replies)
        client = DvripClient("192.168.1.60", 34567, open_connection=device)
        await client.connect()
        client.session_id = 5

        assert await client.ptz_control("left", speed=0.5)
        assert await client.ptz_control("stop")

        move, stop = (decode_message(frame).payload["OPPTZControl"] for frame in device.writers[0].frames)
        assert move["Command"] == "DirectionLeft"
        assert move["Parameter"]["Step"] == 4
        assert stop["Command"] == "DirectionUp"
        assert stop["Parameter"]["Step"] == 0

    @pytest.mark.asyncio
    async def test_close_drops_session(self):
        device = FakeDevice()
        client = DvripClient("192.168.1.60", 34567, open_connection=device)
        await client.connect()
        client.session_id = 9

        await client.close()

        assert not client.connected
        assert not client.authenticated
        assert device.writers[0].closed


class TestPortDiscovery:
    """Fingerprinting candidate ports in order."""

    @pytest.mark.asyncio
    async def test_first_answering_port_wins(self):
        reply = encode_message(CommandCode.LOGIN_RSP, {"Ret": 106})
        device = FakeDevice(reply, open_ports={37777, 8000})

        port = await discover_port("192.168.1.60", [34567, 37777, 8000], timeout=0.5, open_connection=device)

        assert port == 37777

    @pytest.mark.asyncio
    async def test_no_port_found(self):
        device = FakeDevice(open_ports=set())
        assert await discover_port("192.168.1.60", [34567], timeout=0.5, open_connection=device) is None
