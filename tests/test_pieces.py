from __future__ import annotations

import asyncio

import pytest

from order_engine.errors import NotFound, ValidationError
from order_engine.pieces import (
    add_piece,
    adjust_to_quantity,
    generate_pieces,
    remove_piece,
    resequence,
    validate_barcode,
    validate_batch_updates,
    validate_sequence,
)
from order_engine.tenant_context import bind_tenant


def _seqs(pieces, item_id="itm_1"):
    return sorted(p["piece_seq"] for p in pieces if p["order_item_id"] == item_id)


def test_scenario_remove_middle_piece_resequences():
    pieces = generate_pieces("itm_1", 3)
    middle = next(p for p in pieces if p["piece_seq"] == 2)

    result = remove_piece(pieces, middle["id"])

    assert _seqs(result) == [1, 2]
    assert middle["id"] not in {p["id"] for p in result}
    assert _seqs(pieces) == [1, 2, 3]


def test_generate_and_add_keep_dense_sequences():
    pieces = generate_pieces("itm_1", 2, order_id="ord_1") + generate_pieces("itm_2", 1, order_id="ord_1")
    grown = add_piece(pieces, "itm_1")

    assert generate_pieces("itm_1", 0) == []
    assert _seqs(grown) == [1, 2, 3]
    assert _seqs(grown, "itm_2") == [1]
    assert grown[-1]["order_id"] == "ord_1"


def test_remove_unknown_piece_is_a_no_op():
    pieces = generate_pieces("itm_1", 2)
    assert remove_piece(pieces, "pcs_missing") == pieces


def test_adjust_to_quantity_grows_shrinks_and_is_idempotent():
    pieces = generate_pieces("itm_1", 3) + generate_pieces("itm_2", 2)

    shrunk = adjust_to_quantity(pieces, "itm_1", 1)
    grown = adjust_to_quantity(pieces, "itm_1", 5)
    again = adjust_to_quantity(grown, "itm_1", 5)

    assert _seqs(shrunk) == [1]
    assert shrunk[-1]["id"] == pieces[0]["id"]
    assert _seqs(grown) == [1, 2, 3, 4, 5]
    assert [p["id"] for p in again] == [p["id"] for p in grown]
    assert _seqs(shrunk, "itm_2") == [1, 2]


def test_resequence_preserves_relative_order():
    pieces = generate_pieces("itm_1", 3)
    pieces[0]["piece_seq"], pieces[2]["piece_seq"] = 9, 4
    result = resequence(pieces)
    by_id = {p["id"]: p["piece_seq"] for p in result}
    assert by_id[pieces[1]["id"]] == 1
    assert by_id[pieces[2]["id"]] == 2
    assert by_id[pieces[0]["id"]] == 3


def test_validate_sequence_and_barcode():
    pieces = generate_pieces("itm_1", 2)
    assert validate_sequence(pieces, "itm_1", 3) == []
    assert validate_sequence(pieces, "itm_1", 2)
    assert validate_sequence(pieces, "itm_1", 0)
    assert validate_barcode("ABC-123_x") == []
    assert validate_barcode(None) == []
    assert validate_barcode("bad code!")
    assert validate_barcode("x" * 101)


def test_validate_batch_updates_reports_every_error():
    known = {"pcs_1", "pcs_2"}
    errors = validate_batch_updates(
        [
            {"piece_id": "pcs_1", "updates": {"piece_status": "lost"}},
            {"piece_id": "", "updates": {}},
            {"piece_id": "pcs_9", "updates": {"barcode": "ok"}},
            {"piece_id": "pcs_2", "updates": {"order_id": "ord_x"}},
        ],
        known,
    )
    assert len(errors) == 4
    assert errors[0].startswith("update 0:")

    too_many = validate_batch_updates([{"piece_id": "pcs_1", "updates": {}}] * 101, known)
    assert any("exceeds 100" in error for error in too_many)
    assert validate_batch_updates([], known) == ["batch must contain at least one update"]


def _tracked_order(engine, enable_piece_tracking, quantity=3):
    async def _main():
        await enable_piece_tracking(engine)
        return await engine.create_order(
            customer_id="cus_1",
            items=[{"product_name": "Shirt", "quantity": quantity, "unit_price": 2.0}],
        )

    return _main


def test_tracked_orders_create_one_piece_per_unit(engine, run_as, enable_piece_tracking):
    async def _main():
        order = await _tracked_order(engine, enable_piece_tracking)()
        return order, await engine.pieces.list_order_pieces(order["id"])

    order, pieces = run_as("tenant_a", _main)
    assert _seqs(pieces, order["items"][0]["id"]) == [1, 2, 3]
    assert order["items"][0]["pieces_version"] == 1


def test_piece_manager_keeps_quantity_equal_to_piece_count(engine, run_as, enable_piece_tracking):
    async def _main():
        order = await _tracked_order(engine, enable_piece_tracking)()
        item_id = order["items"][0]["id"]
        pieces = await engine.pieces.list_pieces(item_id)
        after_remove = await engine.pieces.remove_piece(pieces[1]["id"])
        after_add = await engine.pieces.add_piece(item_id)
        adjusted = await engine.orders.update_item_quantity(item_id, 5)
        refreshed = await engine.orders.get_order(order["id"])
        actions = await engine.orders.order_history(order["id"])
        return item_id, after_remove, after_add, adjusted, refreshed, actions

    item_id, after_remove, after_add, adjusted, refreshed, actions = run_as("tenant_a", _main)

    assert [p["piece_seq"] for p in after_remove] == [1, 2]
    assert [p["piece_seq"] for p in after_add] == [1, 2, 3]
    assert adjusted["quantity"] == 5
    assert [p["piece_seq"] for p in adjusted["pieces"]] == [1, 2, 3, 4, 5]
    assert refreshed["items"][0]["quantity"] == 5
    assert refreshed["total_items"] == 5
    assert refreshed["subtotal"] == 10.0
    assert [a["action_type"] for a in actions].count("PIECES_ADJUSTED") == 3


def test_last_piece_cannot_be_removed(engine, run_as, enable_piece_tracking):
    async def _main():
        order = await _tracked_order(engine, enable_piece_tracking, quantity=1)()
        pieces = await engine.pieces.list_pieces(order["items"][0]["id"])
        await engine.pieces.remove_piece(pieces[0]["id"])

    with pytest.raises(ValidationError, match="at least one piece"):
        run_as("tenant_a", _main)


def test_batch_update_is_all_or_nothing(engine, run_as, enable_piece_tracking):
    async def _main():
        order = await _tracked_order(engine, enable_piece_tracking)()
        pieces = await engine.pieces.list_order_pieces(order["id"])
        with pytest.raises(ValidationError) as exc_info:
            await engine.pieces.batch_update(
                order["id"],
                [
                    {"piece_id": pieces[0]["id"], "updates": {"piece_status": "ready"}},
                    {"piece_id": pieces[1]["id"], "updates": {"barcode": "no spaces allowed"}},
                ],
            )
        untouched = await engine.pieces.list_order_pieces(order["id"])
        updated = await engine.pieces.batch_update(
            order["id"],
            [{"piece_id": p["id"], "updates": {"piece_status": "ready"}} for p in pieces],
        )
        item = (await engine.orders.get_order(order["id"]))["items"][0]
        return exc_info.value, untouched, updated, item

    error, untouched, updated, item = run_as("tenant_a", _main)
    assert len(error.errors) == 1
    assert all(p["piece_status"] == "intake" for p in untouched)
    assert all(p["piece_status"] == "ready" for p in updated)
    assert item["item_status"] == "ready"


def test_mark_ready_and_reject_piece(engine, run_as, enable_piece_tracking):
    async def _main():
        order = await _tracked_order(engine, enable_piece_tracking, quantity=1)()
        piece = (await engine.pieces.list_order_pieces(order["id"]))[0]
        ready = await engine.pieces.mark_piece_ready(piece["id"], rack_location="B-3")
        rejected = await engine.pieces.reject_piece(piece["id"], notes="torn seam")
        return ready, rejected

    ready, rejected = run_as("tenant_a", _main)
    assert ready["piece_status"] == "ready"
    assert ready["rack_location"] == "B-3"
    assert rejected["is_rejected"] is True
    assert rejected["notes"] == "torn seam"


def test_unknown_piece_is_not_found(engine, run_as):
    with pytest.raises(NotFound):
        run_as("tenant_a", lambda: engine.pieces.update_piece("pcs_missing", {"piece_status": "ready"}))


def test_concurrent_piece_additions_are_serialised(make_engine, enable_piece_tracking):
    engine = make_engine(latency_s=0.002)

    async def _main():
        with bind_tenant("tenant_a", user_id="clerk"):
            await enable_piece_tracking(engine)
            order = await engine.create_order(
                customer_id="cus_1",
                items=[{"product_name": "Towel", "quantity": 1, "unit_price": 1.0}],
            )
            item_id = order["items"][0]["id"]
            await asyncio.gather(engine.pieces.add_piece(item_id), engine.pieces.add_piece(item_id))
            pieces = await engine.pieces.list_pieces(item_id)
            item = (await engine.orders.get_order(order["id"]))["items"][0]
        return pieces, item

    pieces, item = asyncio.run(_main())
    assert [p["piece_seq"] for p in pieces] == [1, 2, 3]
    assert item["quantity"] == 3


def test_untracked_item_pieces_start_from_its_quantity(engine, run_as, enable_piece_tracking):
    async def _main():
        order = await engine.create_order(
            customer_id="cus_1",
            items=[{"product_name": "Napkin", "quantity": 5, "unit_price": 2.0}],
        )
        item_id = order["items"][0]["id"]
        with pytest.raises(ValidationError, match="piece tracking is off"):
            await engine.pieces.add_piece(item_id)
        untouched = (await engine.orders.get_order(order["id"]))["items"][0]

        await enable_piece_tracking(engine)
        pieces = await engine.pieces.add_piece(item_id)
        refreshed = await engine.orders.get_order(order["id"])
        return untouched, pieces, refreshed

    untouched, pieces, refreshed = run_as("tenant_a", _main)

    assert untouched["quantity"] == 5
    assert [p["piece_seq"] for p in pieces] == [1, 2, 3, 4, 5, 6]
    assert refreshed["items"][0]["quantity"] == 6
    assert refreshed["items"][0]["total_price"] == 12.0
    assert refreshed["total_items"] == 6
    assert refreshed["subtotal"] == 12.0


def test_generating_pieces_keeps_the_item_quantity(engine, run_as):
    async def _main():
        order = await engine.create_order(
            customer_id="cus_1",
            items=[{"product_name": "Towel", "quantity": 4, "unit_price": 1.5}],
        )
        item_id = order["items"][0]["id"]
        pieces = await engine.pieces.create_pieces_for_item(item_id)
        return pieces, await engine.orders.get_order(order["id"])

    pieces, refreshed = run_as("tenant_a", _main)
    assert [p["piece_seq"] for p in pieces] == [1, 2, 3, 4]
    assert refreshed["items"][0]["quantity"] == 4
    assert refreshed["total_items"] == 4
    assert refreshed["row_version"] == 1


def test_concurrent_piece_changes_on_two_items_keep_order_totals(make_engine, enable_piece_tracking):
    engine = make_engine(latency_s=0.002)

    async def _main():
        with bind_tenant("tenant_a", user_id="clerk"):
            await enable_piece_tracking(engine)
            order = await engine.create_order(
                customer_id="cus_1",
                items=[
                    {"product_name": "Towel", "quantity": 1, "unit_price": 1.0},
                    {"product_name": "Robe", "quantity": 1, "unit_price": 2.0},
                ],
            )
            first, second = (item["id"] for item in order["items"])
            await asyncio.gather(engine.pieces.add_piece(first), engine.pieces.add_piece(second))
            return await engine.orders.get_order(order["id"])

    refreshed = asyncio.run(_main())
    assert [item["quantity"] for item in refreshed["items"]] == [2, 2]
    assert refreshed["total_items"] == 4
    assert refreshed["subtotal"] == 6.0
    assert refreshed["total"] == 6.0
