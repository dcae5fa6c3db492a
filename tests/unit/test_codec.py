"""Unit tests for Socket.IO text framing."""

import pytest

from loadcheck.core import codec
from loadcheck.core.codec import EnginePacketType, SocketPacketType
from loadcheck.utils.errors import ChannelFailure


@pytest.mark.unit
class TestEncode:

    def test_connect(self):
        assert codec.encode_connect() == "40"

    def test_connect_with_namespace_and_auth(self):
        assert codec.encode_connect("/chat", {"token": "t"}) == '40/chat,{"token":"t"}'

    def test_event(self):
        frame = codec.encode_event("send_message", {"sender": "a", "receiver": "b"})
        assert frame == '42["send_message",{"sender":"a","receiver":"b"}]'

    def test_event_with_ack_id(self):
        assert codec.encode_event("join", "user_1", ack_id=7) == '427["join","user_1"]'

    def test_empty_event_name(self):
        with pytest.raises(ValueError):
            codec.encode_event("")

    def test_control_frames(self):
        assert codec.encode_pong() == "3"
        assert codec.encode_close() == "1"
        assert codec.encode_disconnect() == "41"


@pytest.mark.unit
class TestDecode:

    def test_open_handshake(self):
        packet = codec.decode('0{"sid":"abc","pingInterval":25000}')
        assert packet.engine_type == EnginePacketType.OPEN
        assert packet.data["sid"] == "abc"

    def test_ping_and_probe(self):
        assert codec.decode("2").engine_type == EnginePacketType.PING
        probe = codec.decode("2probe")
        assert probe.engine_type == EnginePacketType.PING
        assert probe.data == "probe"

    def test_connect_ack(self):
        packet = codec.decode('40{"sid":"s1"}')
        assert packet.socket_type == SocketPacketType.CONNECT
        assert packet.data == {"sid": "s1"}

    def test_connect_error(self):
        packet = codec.decode('44{"message":"Not authorized"}')
        assert packet.socket_type == SocketPacketType.CONNECT_ERROR
        assert packet.data["message"] == "Not authorized"

    def test_event(self):
        packet = codec.decode('42["receive_message",{"message_id":"m1"}]')
        assert packet.is_event
        assert packet.event == "receive_message"
        assert packet.args == [{"message_id": "m1"}]
        assert packet.namespace == "/"

    def test_event_with_namespace_and_ack_id(self):
        packet = codec.decode('42/chat,12["typing"]')
        assert packet.namespace == "/chat"
        assert packet.ack_id == 12
        assert packet.event == "typing"
        assert packet.args == []

    def test_disconnect(self):
        packet = codec.decode("41")
        assert packet.socket_type == SocketPacketType.DISCONNECT
        assert not packet.is_event

    def test_roundtrip_event(self):
        frame = codec.encode_event("send_message", {"content": "hi, there"}, namespace="/chat")
        packet = codec.decode(frame)
        assert packet.namespace == "/chat"
        assert packet.args == [{"content": "hi, there"}]

    @pytest.mark.parametrize("frame", ["", "9", "4", "49", '42["oops'])
    def test_malformed(self, frame):
        with pytest.raises(ChannelFailure):
            codec.decode(frame)

    def test_binary_rejected(self):
        with pytest.raises(ChannelFailure):
            codec.decode(b"\x04abc")
