import pytest

from sstunnel.session import Session


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_ids_are_unique():
    ids = {Session(10).id for _ in range(50)}
    assert len(ids) == 50


def test_idle_timeout_uses_last_activity():
    clock = FakeClock()
    session = Session(30, clock=clock)

    clock.now += 30
    assert not session.is_timed_out()
    clock.now += 0.5
    assert session.is_timed_out()

    session.touch()
    assert not session.is_timed_out()
    assert session.last_active_at == clock.now


def test_pending_buffers_overwrite_and_clear_on_take():
    session = Session(10)
    assert not session.has_pending_up()

    session.record_pending_up(b"first")
    session.record_pending_up(b"second")
    session.record_pending_down(b"down")

    assert session.has_pending_up() and session.has_pending_down()
    assert session.pending_sizes() == {"up": 6, "down": 4}
    assert session.take_pending_up() == b"second"
    assert not session.has_pending_up()
    assert session.take_pending_up() == b""
    assert session.pending_sizes() == {"up": 0, "down": 4}
    assert session.take_pending_down() == b"down"


def test_destroy_exactly_once():
    session = Session(10)
    session.record_pending_down(b"x")

    session.destroy()

    assert session.destroyed
    assert not session.has_pending_down()
    assert session.last_active_at is None
    assert session.is_timed_out()
    with pytest.raises(RuntimeError):
        session.destroy()


def test_to_dict_reports_counters():
    clock = FakeClock()
    session = Session(10, clock=clock)
    session.bytes_up = 5
    session.target = "example.com:80"
    clock.now += 2

    info = session.to_dict()

    assert info["session"] == session.id
    assert info["bytes_up"] == 5
    assert info["target"] == "example.com:80"
    assert info["age_s"] == 2.0
