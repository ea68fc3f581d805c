import asyncio
from datetime import date

from conftest import make_bill, seed, wait_until

from billsync.models.schemas import BillCreate


def _toast_messages(engine):
    return [t.message for t in engine.toasts.toasts]


async def test_mark_paid_recurring_creates_successor_and_undo_restores(engine, backend):
    rent = make_bill("rent", "Rent", date(2026, 11, 1), amount=1850.0,
                     is_recurring=True, recurrence_interval="monthly")
    seed(engine, backend, rent)

    result = await engine.mark_paid("rent", 1850.0)

    assert result.success
    paid = engine.store.get("rent")
    assert paid.is_paid and paid.paid_at is not None
    assert paid.last_paid_amount == 1850.0
    successor = result.next_bill
    assert successor is not None
    assert engine.store.get(successor.id).due_date == date(2026, 12, 1)
    assert not engine.store.get(successor.id).is_paid
    assert not engine.store.is_any_mutating

    affordance = engine.undo.pending_for("rent")
    assert affordance is not None
    assert await engine.undo.invoke(affordance.token)

    assert engine.store.get("rent") == rent
    assert engine.store.get(successor.id) is None
    assert successor.id not in backend.bills
    assert not engine.store.is_any_mutating


async def test_second_mutation_on_locked_bill_is_rejected(engine, backend):
    seed(engine, backend, make_bill("b1", "Water", date(2026, 10, 25), amount=40.0))
    backend.gate = asyncio.Event()

    task = asyncio.create_task(engine.mark_paid("b1"))
    await wait_until(lambda: engine.store.is_locked("b1"))
    assert engine.store.mutation_state("b1") == "marking_paid"

    assert await engine.delete_bill("b1") is False
    assert await engine.update_bill("b1", {"amount": 10.0}) is None
    assert "delete_bill" not in backend.calls
    assert "update_bill" not in backend.calls

    backend.gate.set()
    result = await task
    assert result.success
    assert not engine.store.is_locked("b1")


async def test_failed_delete_leaves_bill_unchanged(engine, backend):
    bill = make_bill("b1", "Internet", date(2026, 10, 30), amount=60.0)
    seed(engine, backend, bill)
    backend.fail.add("delete_bill")

    assert await engine.delete_bill("b1") is False

    assert engine.store.get("b1") == bill
    assert not engine.store.is_locked("b1")
    assert "b1" not in engine.store.state.deleted_ids
    assert "Something went wrong" in _toast_messages(engine)


async def test_bill_hidden_while_delete_in_flight(engine, backend):
    seed(engine, backend, make_bill("b1", "Internet", date(2026, 10, 30)))
    backend.gate = asyncio.Event()

    task = asyncio.create_task(engine.delete_bill("b1"))
    await wait_until(lambda: engine.store.is_locked("b1"))
    assert engine.store.get("b1") is None

    backend.gate.set()
    assert await task
    assert engine.store.state.bills == ()
    assert "Internet deleted" in _toast_messages(engine)


async def test_failed_mark_paid_restores_snapshot(engine, backend):
    bill = make_bill("b1", "Phone", date(2026, 10, 20), amount=45.0, last_paid_amount=44.0)
    seed(engine, backend, bill)
    backend.fail.add("pay_bill")

    result = await engine.mark_paid("b1", 45.0)

    assert not result.success
    assert engine.store.get("b1") == bill
    assert not engine.store.is_any_mutating
    assert engine.undo.pending_for("b1") is None


async def test_mark_paid_on_paid_bill_is_ignored(engine, backend):
    seed(engine, backend, make_bill("b1", "Phone", date(2026, 10, 20), is_paid=True,
                                    paid_at="2026-10-01T00:00:00Z"))

    result = await engine.mark_paid("b1")

    assert not result.success
    assert "pay_bill" not in backend.calls


async def test_unknown_bill_reports_not_found(engine, backend):
    seed(engine, backend)

    assert not (await engine.mark_paid("missing")).success
    assert "Bill not found" in _toast_messages(engine)


async def test_add_bill_shows_locked_placeholder_until_server_confirms(engine, backend):
    seed(engine, backend)
    backend.gate = asyncio.Event()

    task = asyncio.create_task(engine.add_bill({"name": "Gym", "due_date": "2026-11-05", "amount": 30}))
    await wait_until(lambda: engine.store.is_any_mutating)
    placeholder = engine.store.bills[0]
    assert placeholder.is_pending
    assert engine.store.mutation_state(placeholder.id) == "adding"

    backend.gate.set()
    created = await task

    assert created is not None
    assert [b.id for b in engine.store.bills] == [created.id]
    assert not engine.store.is_any_mutating
    assert "Gym added!" in _toast_messages(engine)


async def test_failed_add_removes_placeholder(engine, backend):
    seed(engine, backend)
    backend.fail.add("create_bill")

    assert await engine.add_bill(BillCreate(name="Gym", due_date=date(2026, 11, 5))) is None
    assert engine.store.bills == []
    assert not engine.store.is_any_mutating


async def test_invalid_add_is_rejected_without_backend_call(engine, backend):
    seed(engine, backend)

    assert await engine.add_bill({"name": "  ", "due_date": "2026-11-05"}) is None
    assert "create_bill" not in backend.calls


async def test_failed_update_rolls_back(engine, backend):
    bill = make_bill("b1", "Electric", date(2026, 10, 28), amount=80.0)
    seed(engine, backend, bill)
    backend.fail.add("update_bill")

    assert await engine.update_bill("b1", {"amount": 95.0}) is None
    assert engine.store.get("b1") == bill


async def test_update_applies_server_result(engine, backend):
    seed(engine, backend, make_bill("b1", "Electric", date(2026, 10, 28), amount=80.0))

    updated = await engine.update_bill("b1", {"amount": 95.0})

    assert updated.amount == 95.0
    assert engine.store.get("b1").amount == 95.0
    assert "Electric updated!" in _toast_messages(engine)


async def test_snooze_offers_undo_back_to_previous_due_date(engine, backend):
    seed(engine, backend, make_bill("b1", "Electric", date(2026, 10, 28)))

    assert await engine.snooze_bill("b1", 3)
    assert engine.store.get("b1").due_date == date(2026, 10, 31)

    affordance = engine.undo.pending_for("b1")
    assert affordance.label == "Electric snoozed"
    assert await engine.undo.invoke(affordance.token)
    assert engine.store.get("b1").due_date == date(2026, 10, 28)


async def test_reschedule_moves_due_date(engine, backend):
    seed(engine, backend, make_bill("b1", "Electric", date(2026, 10, 28)))

    updated = await engine.reschedule_bill("b1", date(2026, 11, 2))

    assert updated.due_date == date(2026, 11, 2)
    assert engine.undo.pending_for("b1").label == "Electric rescheduled"


async def test_caller_cancellation_does_not_leave_bill_locked(engine, backend):
    seed(engine, backend, make_bill("b1", "Water", date(2026, 10, 25), amount=40.0))
    backend.gate = asyncio.Event()

    task = asyncio.create_task(engine.mark_paid("b1"))
    await wait_until(lambda: engine.store.is_locked("b1"))
    task.cancel()
    await asyncio.sleep(0)
    backend.gate.set()
    await engine.drain()

    assert task.cancelled()
    assert engine.store.get("b1").is_paid
    assert not engine.store.is_locked("b1")


async def test_undo_keeps_successor_that_was_already_paid(engine, backend):
    seed(engine, backend, make_bill("rent", "Rent", date(2026, 11, 1), amount=1850.0,
                                    is_recurring=True, recurrence_interval="monthly"))
    first = await engine.mark_paid("rent")
    token = engine.undo.pending_for("rent").token
    await engine.mark_paid(first.next_bill.id)

    assert await engine.undo.invoke(token)

    assert not engine.store.get("rent").is_paid
    assert engine.store.get(first.next_bill.id).is_paid


async def test_failed_undo_restores_paid_state(engine, backend):
    seed(engine, backend, make_bill("rent", "Rent", date(2026, 11, 1), amount=1850.0,
                                    is_recurring=True, recurrence_interval="monthly"))
    result = await engine.mark_paid("rent")
    backend.fail.add("unpay_bill")

    assert not await engine.undo.invoke(engine.undo.pending_for("rent").token)

    assert engine.store.get("rent").is_paid
    assert engine.store.get(result.next_bill.id) is not None
    assert not engine.store.is_any_mutating


async def test_new_mutation_invalidates_pending_undo(engine, backend):
    seed(engine, backend, make_bill("b1", "Electric", date(2026, 10, 28)))
    await engine.mark_paid("b1")
    token = engine.undo.pending_for("b1").token

    await engine.update_bill("b1", {"amount": 12.0})

    assert not engine.undo.is_active(token)
    assert not await engine.undo.invoke(token)


async def test_refetch_failure_clears_loading(engine, backend):
    backend.fail.add("list_bills")

    assert not await engine.refetch()
    assert engine.store.loading is False


async def test_refresh_if_stale(engine, backend, clock):
    seed(engine, backend, make_bill("b1", "Electric", date(2026, 10, 28)))
    assert not await engine.refresh_if_stale()

    clock.advance(301)
    assert await engine.refresh_if_stale()


async def test_refetch_from_other_bill_keeps_in_flight_payment(engine, backend):
    seed(
        engine, backend,
        make_bill("a", "Water", date(2026, 10, 25), amount=40.0),
        make_bill("b", "Phone", date(2026, 10, 27), amount=45.0),
    )
    backend.gates["pay_bill"] = asyncio.Event()

    task = asyncio.create_task(engine.mark_paid("a"))
    await wait_until(lambda: engine.store.is_locked("a"))
    assert await engine.update_bill("b", {"amount": 50.0}) is not None

    assert engine.store.mutation_state("a") == "marking_paid"
    assert engine.store.get("a").is_paid
    assert engine.store.get("b").amount == 50.0

    backend.gates["pay_bill"].set()
    assert (await task).success
    assert engine.store.get("a").is_paid
    assert not engine.store.is_any_mutating


async def test_refetch_from_other_bill_keeps_add_placeholder(engine, backend):
    seed(engine, backend, make_bill("b", "Phone", date(2026, 10, 27), amount=45.0))
    backend.gates["create_bill"] = asyncio.Event()

    task = asyncio.create_task(engine.add_bill({"name": "Gym", "due_date": "2026-11-05"}))
    await wait_until(lambda: len(engine.store.bills) == 2)
    assert await engine.update_bill("b", {"amount": 50.0}) is not None

    names = [b.name for b in engine.store.bills]
    assert names == ["Phone", "Gym"]
    assert any(b.is_pending for b in engine.store.bills)

    backend.gates["create_bill"].set()
    created = await task
    assert [b.id for b in engine.store.bills] == ["b", created.id]
    assert not engine.store.is_any_mutating
