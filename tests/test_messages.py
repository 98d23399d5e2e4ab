import pytest

from wssrelay.messages import Message, MessageType


def test_text_payload_is_utf8():
    m = Message.text("héllo")
    assert m.type is MessageType.TEXT
    assert m.payload == "héllo".encode("utf-8")
    assert m.as_text() == "héllo"
    assert m.is_text and not m.is_binary and not m.is_control


def test_binary_keeps_bytes():
    m = Message.binary(bytearray([1, 2, 3]))
    assert m.payload == b"\x01\x02\x03"
    assert isinstance(m.payload, bytes)
    assert m.is_binary and not m.is_control


@pytest.mark.parametrize("factory", [Message.ping, Message.pong, Message.close])
def test_control_types(factory):
    assert factory().is_control


def test_close_payload_layout():
    m = Message.close(1001, "bye")
    assert m.payload == b"\x03\xe9bye"
    assert m.close_code() == 1001
    assert m.close_reason() == "bye"


def test_close_without_code():
    m = Message(MessageType.CLOSE, b"")
    assert m.close_code() == 1005
    assert m.close_reason() == ""


def test_close_code_on_data_message():
    with pytest.raises(ValueError):
        Message.text("x").close_code()


def test_equality_and_repr():
    assert Message.text("a") == Message(MessageType.TEXT, b"a")
    assert Message.text("a") != Message.binary(b"a")
    assert repr(Message.binary(b"1234")) == "<Message binary 4 bytes>"
