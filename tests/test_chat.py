import pytest

from liveclass.chat import ChatLog
from liveclass_shared.protocol import ChatMessage


def echo(text: str, ts: float, message_id: str, sender: str = "u1") -> ChatMessage:
    return ChatMessage(sender, "Student", "student", text, ts, message_id)


def test_echo_replaces_optimistic_entry() -> None:
    log = ChatLog("u1")
    log.add_optimistic("Hello", timestamp=0.0)

    assert log.receive(echo("Hello", 0.3, "m1")) is True

    messages = log.messages
    assert len(messages) == 1
    assert messages[0].message_id == "m1"
    assert messages[0].timestamp == 0.3


def test_echo_outside_window_does_not_consume_optimistic_entry() -> None:
    log = ChatLog("u1", match_window=1.0)
    log.add_optimistic("Hello", timestamp=0.0)
    log.receive(echo("Hello", 5.0, "m1"))
    assert [message.message_id for message in log.messages] == [None, "m1"]


def test_echo_removes_every_matching_optimistic_copy() -> None:
    log = ChatLog("u1")
    log.add_optimistic("ok", timestamp=10.0)
    log.add_optimistic("ok", timestamp=10.4)
    log.receive(echo("ok", 10.5, "m7"))
    assert [message.message_id for message in log.messages] == ["m7"]


def test_replayed_broadcast_is_not_duplicated() -> None:
    log = ChatLog("u1")
    assert log.receive(echo("hi", 1.0, "m1", sender="t1")) is True
    assert log.receive(echo("hi", 1.0, "m1", sender="t1")) is False
    assert len(log) == 1


def test_authoritative_order_follows_receipt() -> None:
    log = ChatLog("u1")
    log.add_optimistic("first", timestamp=1.0)
    log.add_optimistic("second", timestamp=1.1)

    log.receive(echo("second", 1.2, "m2"))
    log.receive(echo("first", 1.3, "m1"))

    assert [message.message_id for message in log.messages] == ["m2", "m1"]


def test_provisional_message_cannot_be_received() -> None:
    log = ChatLog("u1")
    with pytest.raises(ValueError):
        log.receive(ChatMessage("t1", "T", "teacher", "hi", 1.0))


def test_unread_counter_tracks_closed_panel() -> None:
    log = ChatLog("u1")
    log.receive(echo("question", 1.0, "m1", sender="t1"))
    log.receive(echo("mine", 2.0, "m2"))
    assert log.unread_count == 1

    log.open_panel()
    assert log.unread_count == 0
    log.receive(echo("answer", 3.0, "m3", sender="t1"))
    assert log.unread_count == 0

    log.close_panel()
    log.receive(echo("more", 4.0, "m4", sender="t1"))
    assert log.unread_count == 1


def test_backlog_is_deduplicated_and_counts_unread() -> None:
    log = ChatLog("u1")
    backlog = [
        echo("hi", 1.0, "m1", sender="t1"),
        echo("hi", 1.0, "m1", sender="t1"),
        echo("hello", 2.0, "m2"),
    ]
    log.load_backlog(backlog)
    assert [message.message_id for message in log.messages] == ["m1", "m2"]
    assert log.unread_count == 1

    log.load_backlog(backlog, unread_count=5)
    assert log.unread_count == 5


def test_history_is_bounded() -> None:
    log = ChatLog("u1", max_entries=3)
    for index in range(5):
        log.receive(echo(f"msg {index}", float(index), f"m{index}", sender="t1"))
    assert [message.message_id for message in log.messages] == ["m2", "m3", "m4"]
