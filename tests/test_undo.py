from conftest import FakeClock

from billsync.services.notifications import ToastCenter
from billsync.services.undo import UndoCoordinator


def _coordinator():
    clock = FakeClock()
    toasts = ToastCenter(clock=clock)
    return UndoCoordinator(toasts, window=10.0, clock=clock), toasts, clock


def _recorder(calls, name):
    async def action():
        calls.append(name)
        return True

    return action


async def test_invoke_within_window_runs_once():
    undo, toasts, clock = _coordinator()
    calls = []
    token = undo.offer("b1", "Marked as paid", _recorder(calls, "first"))
    assert [t.type for t in toasts.toasts] == ["undo"]

    clock.advance(9.9)
    assert await undo.invoke(token)
    assert not await undo.invoke(token)
    assert calls == ["first"]
    assert toasts.toasts == []


async def test_expired_undo_does_not_run():
    undo, toasts, clock = _coordinator()
    calls = []
    token = undo.offer("b1", "Marked as paid", _recorder(calls, "first"))

    clock.advance(10.0)

    assert not undo.is_active(token)
    assert not await undo.invoke(token)
    assert calls == []
    assert undo.active == []


async def test_new_offer_supersedes_previous_for_same_bill():
    undo, toasts, clock = _coordinator()
    calls = []
    old = undo.offer("b1", "Marked as paid", _recorder(calls, "old"))
    new = undo.offer("b1", "Electric snoozed", _recorder(calls, "new"))
    other = undo.offer("b2", "Marked as paid", _recorder(calls, "other"))

    assert not await undo.invoke(old)
    assert await undo.invoke(new)
    assert undo.is_active(other)
    assert calls == ["new"]


def test_dismiss_removes_toast():
    undo, toasts, clock = _coordinator()
    token = undo.offer("b1", "Marked as paid", _recorder([], "x"))

    undo.dismiss(token)

    assert undo.pending_for("b1") is None
    assert toasts.toasts == []


def test_toasts_expire_after_duration():
    clock = FakeClock()
    toasts = ToastCenter(default_duration=5.0, clock=clock)
    toasts.success("Gym added!")
    toasts.error("Something went wrong", "Failed to add bill. Try again.")

    assert [t.message for t in toasts.toasts] == ["Gym added!", "Something went wrong"]
    clock.advance(5.0)
    assert toasts.toasts == []
