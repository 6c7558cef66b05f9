import argparse

import pytest

from liveclass.__main__ import _relay_address, build_session
from liveclass.session import SessionPhase

from liveclass_fakes import SESSION_ID, FakeApi, make_credential


def test_relay_address_parses_host_and_port() -> None:
    assert _relay_address("relay.example:56000") == ("relay.example", 56000)
    with pytest.raises(argparse.ArgumentTypeError):
        _relay_address("relay.example")
    with pytest.raises(argparse.ArgumentTypeError):
        _relay_address("relay.example:http")


def test_build_session_applies_cli_preferences() -> None:
    args = argparse.Namespace(
        session_id=SESSION_ID,
        api_base_url="http://localhost:5000/api",
        signaling_url=None,
        media_relay=("127.0.0.1", 56000),
        camera="1",
        microphone=None,
        join_timeout=5.0,
        muted=True,
        no_video=True,
        display_name="Asha",
    )

    session = build_session(args, make_credential(), FakeApi())

    assert session.session_id == SESSION_ID
    assert session.phase is SessionPhase.IDLE
    assert session.local_state.muted is True
    assert session.local_state.video_enabled is False
