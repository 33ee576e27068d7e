"""Inventory ledger: conditional decrements, restores, adjustments, idempotency keys."""

from datetime import timedelta

import pytest

from storefront.extensions import db
from storefront.models import IdempotencyKey, InventoryMovement, Order, OrderItem, Product
from storefront.models.common import new_id
from storefront.services import inventory_service
from storefront.services.concurrency import atomic
from storefront.services.inventory_service import IdempotencyKeyInUseError, InsufficientStockError
from storefront.time_utils import utcnow
from storefront.validation import NotFoundError


def _stock(product_id):
    db.session.expire_all()
    return db.session.get(Product, product_id).stock_quantity


def _movements(**filters):
    return db.session.query(InventoryMovement).filter_by(**filters).order_by(InventoryMovement.id).all()


def _order_with_items(lines):
    order = Order(
        id=new_id(),
        status="PENDING",
        subtotal_cents=0,
        total_cents=0,
        currency="PKR",
        customer_email="buyer@example.com",
    )
    db.session.add(order)
    for product_id, quantity in lines:
        db.session.add(OrderItem(order_id=order.id, product_id=product_id, quantity=quantity, unit_cents=100))
    db.session.commit()
    return order.id


class TestDeduct:
    def test_deduct_decrements_and_records_sale(self, db_session, make_product):
        product = make_product(stock=10)

        with atomic():
            inventory_service.deduct_for_order("order-1", [{"product_id": product.id, "quantity": 3}])

        assert _stock(product.id) == 7
        [movement] = _movements(product_id=product.id)
        assert movement.type == "SALE"
        assert movement.quantity_delta == -3
        assert movement.reference == "Order order-1"
        assert movement.stock_after == 7
        assert movement.stock_before == 10

    def test_duplicate_lines_are_aggregated(self, db_session, make_product):
        product = make_product(stock=10)

        with atomic():
            inventory_service.deduct_for_order(
                "order-1",
                [
                    {"product_id": product.id, "quantity": 2},
                    {"product_id": product.id, "quantity": 4},
                    {"product_id": product.id, "quantity": 0},
                ],
            )

        assert _stock(product.id) == 4
        [movement] = _movements(product_id=product.id)
        assert movement.quantity_delta == -6

    def test_insufficient_stock_reports_available_and_requested(self, db_session, make_product):
        product = make_product(name="Linen Shirt", stock=3)

        with pytest.raises(InsufficientStockError) as exc:
            with atomic():
                inventory_service.deduct_for_order("order-1", [{"product_id": product.id, "quantity": 5}])

        assert exc.value.available == 3
        assert exc.value.requested == 5
        assert str(exc.value) == 'Insufficient stock for "Linen Shirt". Available: 3, requested: 5.'
        assert _stock(product.id) == 3
        assert _movements(product_id=product.id) == []

    def test_failure_on_later_product_rolls_back_earlier_ones(self, db_session, make_product):
        plenty = make_product(name="Plenty", stock=10)
        scarce = make_product(name="Scarce", stock=1)

        with pytest.raises(InsufficientStockError):
            with atomic():
                inventory_service.deduct_for_order(
                    "order-1",
                    [
                        {"product_id": plenty.id, "quantity": 2},
                        {"product_id": scarce.id, "quantity": 2},
                    ],
                )

        assert _stock(plenty.id) == 10
        assert _stock(scarce.id) == 1
        assert db.session.query(InventoryMovement).count() == 0

    def test_deduct_to_exactly_zero(self, db_session, make_product):
        product = make_product(stock=2)

        with atomic():
            inventory_service.deduct_for_order("order-1", [{"product_id": product.id, "quantity": 2}])

        assert _stock(product.id) == 0

    def test_unknown_product_is_insufficient(self, db_session):
        with pytest.raises(InsufficientStockError) as exc:
            with atomic():
                inventory_service.deduct_for_order("order-1", [{"product_id": "missing", "quantity": 1}])
        assert exc.value.available == 0


class TestRestore:
    def test_restore_credits_each_product_once(self, db_session, make_product):
        shirt = make_product(name="Shirt", stock=5)
        scarf = make_product(name="Scarf", stock=5)
        order_id = _order_with_items([(shirt.id, 2), (scarf.id, 1), (shirt.id, 1)])

        with atomic():
            movements = inventory_service.restore_for_order(order_id)

        assert len(movements) == 2
        assert _stock(shirt.id) == 8
        assert _stock(scarf.id) == 6
        restore = _movements(product_id=shirt.id, type="RESTORE")
        assert [m.quantity_delta for m in restore] == [3]
        assert restore[0].reference == f"Order {order_id} cancelled"

    def test_restore_is_idempotent(self, db_session, make_product):
        shirt = make_product(stock=5)
        order_id = _order_with_items([(shirt.id, 2)])

        with atomic():
            inventory_service.restore_for_order(order_id)
        with atomic():
            second = inventory_service.restore_for_order(order_id)

        assert second == []
        assert _stock(shirt.id) == 7
        assert len(_movements(order_id=order_id, type="RESTORE")) == 1


class TestAdjust:
    def test_positive_adjustment(self, db_session, make_product, make_user):
        product = make_product(stock=4)
        staff = make_user()

        with atomic():
            movement = inventory_service.adjust_stock(product.id, 6, "Restock", performed_by_user_id=staff.id)

        assert _stock(product.id) == 10
        assert movement.type == "ADJUSTMENT"
        assert movement.stock_after == 10
        assert movement.performed_by_user_id == staff.id

    def test_negative_adjustment(self, db_session, make_product):
        product = make_product(stock=4)

        with atomic():
            movement = inventory_service.adjust_stock(product.id, -4, "Damaged")

        assert _stock(product.id) == 0
        assert movement.quantity_delta == -4
        assert movement.stock_before == 4

    def test_negative_adjustment_cannot_go_below_zero(self, db_session, make_product):
        product = make_product(name="Scarf", stock=2)

        with pytest.raises(InsufficientStockError) as exc:
            with atomic():
                inventory_service.adjust_stock(product.id, -3, "Shrinkage")

        assert str(exc.value) == 'Cannot adjust by -3: "Scarf" has only 2 in stock.'
        assert _stock(product.id) == 2
        assert _movements(product_id=product.id) == []

    def test_zero_adjustment_is_noop(self, db_session, make_product):
        product = make_product(stock=2)

        assert inventory_service.adjust_stock(product.id, 0, "Nothing") is None
        assert _movements(product_id=product.id) == []

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.adjust_stock("missing", 1, "Restock")


class TestMovements:
    def test_newest_first_with_stock_before(self, db_session, make_product):
        product = make_product(stock=10)
        with atomic():
            inventory_service.adjust_stock(product.id, 5, "Restock")
        with atomic():
            inventory_service.deduct_for_order("order-1", [{"product_id": product.id, "quantity": 3}])

        result = inventory_service.get_movements(product.id)

        assert result["total"] == 2
        first, second = result["data"]
        assert first["type"] == "SALE"
        assert (first["stock_before"], first["stock_after"]) == (15, 12)
        assert second["type"] == "ADJUSTMENT"
        assert (second["stock_before"], second["stock_after"]) == (10, 15)

    def test_limit_is_capped(self, db_session, make_product):
        product = make_product(stock=10)
        assert inventory_service.get_movements(product.id, limit=500)["limit"] == 50

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.get_movements("missing")


class TestIdempotencyKeys:
    def test_live_key_returns_order(self, db_session, make_product):
        order_id = _order_with_items([])
        with atomic():
            inventory_service.set_idempotency_key("key-1", order_id, utcnow() + timedelta(hours=24))

        assert inventory_service.get_idempotent_order_id("key-1") == order_id

    def test_missing_key(self, db_session):
        assert inventory_service.get_idempotent_order_id("nope") is None

    def test_expired_key_is_a_miss_and_can_be_overwritten(self, db_session):
        old_order = _order_with_items([])
        new_order = _order_with_items([])
        with atomic():
            inventory_service.set_idempotency_key("key-1", old_order, utcnow() - timedelta(minutes=1))

        assert inventory_service.get_idempotent_order_id("key-1") is None

        with atomic():
            inventory_service.set_idempotency_key("key-1", new_order, utcnow() + timedelta(hours=24))

        assert inventory_service.get_idempotent_order_id("key-1") == new_order
        assert db.session.query(IdempotencyKey).count() == 1

    def test_live_key_bound_elsewhere_conflicts(self, db_session):
        first = _order_with_items([])
        second = _order_with_items([])
        with atomic():
            inventory_service.set_idempotency_key("key-1", first, utcnow() + timedelta(hours=1))

        with pytest.raises(IdempotencyKeyInUseError):
            with atomic():
                inventory_service.set_idempotency_key("key-1", second, utcnow() + timedelta(hours=1))

    def test_purge_removes_only_expired(self, db_session):
        order_id = _order_with_items([])
        with atomic():
            inventory_service.set_idempotency_key("old", order_id, utcnow() - timedelta(hours=1))
            inventory_service.set_idempotency_key("fresh", order_id, utcnow() + timedelta(hours=1))

        assert inventory_service.purge_expired_idempotency_keys() == 1
        assert [k.key for k in db.session.query(IdempotencyKey).all()] == ["fresh"]
