"""Voucher validation pipeline, discount math, redemption and admin management."""

from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from storefront.extensions import db
from storefront.models import Order, Voucher, VoucherAuditLog, VoucherRedemption
from storefront.models.common import new_id
from storefront.services import voucher_service
from storefront.services.concurrency import atomic
from storefront.services.voucher_service import VOUCHER_ERROR_CODES
from storefront.time_utils import utcnow
from storefront.validation import BadRequestError, ConflictError, NotFoundError


def _items(*pairs):
    return [{"product_id": p.id, "quantity": q} for p, q in pairs]


def _audit_actions(**filters):
    return [
        row.action
        for row in db.session.query(VoucherAuditLog).filter_by(**filters).order_by(VoucherAuditLog.id)
    ]


def _blank_order(discount_cents=0):
    order = Order(
        id=new_id(),
        status="PENDING",
        subtotal_cents=1000,
        discount_cents=discount_cents,
        total_cents=1000 - discount_cents,
        currency="PKR",
        customer_email="buyer@example.com",
    )
    db.session.add(order)
    db.session.commit()
    return order.id


class TestValidationPipeline:
    def test_percentage_voucher_example(self, db_session, make_product, make_voucher, set_delivery):
        product = make_product(price_cents=1000)
        make_voucher(code="SAVE10", type="PERCENTAGE", value=10)
        set_delivery(200)

        result = voucher_service.validate_voucher("save10", _items((product, 1)))

        assert result["valid"] is True
        assert result["code"] == "SAVE10"
        assert result["discount_cents"] == 100
        assert result["subtotal_cents"] == 1000
        assert result["shipping_cents"] == 200
        assert result["total_cents"] == 1100
        assert result["currency"] == "PKR"

    def test_empty_code(self, db_session, make_product):
        product = make_product()
        result = voucher_service.validate_voucher("   ", _items((product, 1)))
        assert result == {
            "valid": False,
            "error_code": VOUCHER_ERROR_CODES["NOT_FOUND"],
            "message": "Voucher code is required.",
        }

    def test_unknown_code(self, db_session, make_product):
        product = make_product()
        result = voucher_service.validate_voucher("NOPE", _items((product, 1)))
        assert result["error_code"] == "VOUCHER_NOT_FOUND"
        assert result["message"] == "Invalid voucher code."

    def test_deleted_voucher_is_not_found(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(deleted_at=utcnow())
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["error_code"] == "VOUCHER_NOT_FOUND"

    def test_non_ascii_code_matches_case_insensitively(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(code="ÉTÉ10")

        result = voucher_service.validate_voucher("été10", _items((product, 1)))

        assert result["valid"] is True
        assert result["code"] == "ÉTÉ10"

    def test_expired(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(start_date=utcnow() - timedelta(days=10), expiry_date=utcnow() - timedelta(days=1))
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["error_code"] == "VOUCHER_EXPIRED"

    def test_not_started(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(start_date=utcnow() + timedelta(days=1), expiry_date=utcnow() + timedelta(days=10))
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["error_code"] == "VOUCHER_NOT_STARTED"

    def test_inactive(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(is_active=False)
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["error_code"] == "VOUCHER_INACTIVE"

    def test_expiry_is_checked_before_inactive(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(
            is_active=False,
            start_date=utcnow() - timedelta(days=10),
            expiry_date=utcnow() - timedelta(days=1),
        )
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["error_code"] == "VOUCHER_EXPIRED"

    def test_global_usage_limit(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(usage_limit_global=2, used_count=2)
        result = voucher_service.validate_voucher("SAVE10", _items((product, 1)))
        assert result["error_code"] == "VOUCHER_USAGE_LIMIT_REACHED"

    def test_per_user_limit(self, db_session, make_product, make_voucher, make_user):
        product = make_product()
        customer = make_user("Customer")
        voucher = make_voucher(usage_limit_per_user=1)
        db.session.add(VoucherRedemption(voucher_id=voucher.id, order_id=_blank_order(), user_id=customer.id))
        db.session.commit()

        result = voucher_service.validate_voucher("SAVE10", _items((product, 1)), customer_user_id=customer.id)
        assert result["error_code"] == "VOUCHER_USER_LIMIT_REACHED"

        # Anonymous carts skip the per-user check
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["valid"] is True

    def test_minimum_order(self, db_session, make_product, make_voucher):
        product = make_product(price_cents=1000)
        make_voucher(min_order_value_cents=5000)

        result = voucher_service.validate_voucher("SAVE10", _items((product, 2)))

        assert result["error_code"] == "VOUCHER_MIN_ORDER_NOT_MET"
        assert result["message"] == "Minimum order value of 50 PKR required."

    def test_no_eligible_products(self, db_session, make_product, make_voucher):
        in_cart = make_product(name="In cart")
        other = make_product(name="Other")
        make_voucher(applicable_product_ids=[other.id])

        result = voucher_service.validate_voucher("SAVE10", _items((in_cart, 1)))
        assert result["error_code"] == "VOUCHER_NO_ELIGIBLE_PRODUCTS"

    def test_validation_writes_audit_rows(self, db_session, make_product, make_voucher):
        product = make_product()
        voucher = make_voucher()

        voucher_service.validate_voucher("SAVE10", _items((product, 1)), request_id="req-1")
        voucher_service.validate_voucher("BOGUS", _items((product, 1)))

        ok = db.session.query(VoucherAuditLog).filter_by(action="VALIDATED").one()
        assert ok.voucher_id == voucher.id
        assert ok.result == "VALID"
        assert ok.request_id == "req-1"
        failed = db.session.query(VoucherAuditLog).filter_by(action="VALIDATION_FAILED").one()
        assert failed.code == "BOGUS"
        assert failed.error_code == "VOUCHER_NOT_FOUND"
        assert failed.result == "INVALID"

    def test_mixed_currency_cart_is_rejected(self, db_session, make_product, make_voucher):
        pkr = make_product(currency="PKR")
        usd = make_product(currency="USD")
        make_voucher()
        with pytest.raises(BadRequestError):
            voucher_service.validate_voucher("SAVE10", _items((pkr, 1), (usd, 1)))


class TestDiscountMath:
    def test_percentage_respects_cap(self, db_session, make_product, make_voucher):
        product = make_product(price_cents=10000)
        make_voucher(value=50, max_discount_cents=1500)
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["discount_cents"] == 1500

    def test_percentage_floors(self, db_session, make_product, make_voucher):
        product = make_product(price_cents=999)
        make_voucher(value=15)
        # 999 * 15 / 100 = 149.85
        assert voucher_service.validate_voucher("SAVE10", _items((product, 1)))["discount_cents"] == 149

    def test_fixed_amount_limited_by_eligible_subtotal(self, db_session, make_product, make_voucher):
        eligible = make_product(name="Eligible", price_cents=300)
        other = make_product(name="Other", price_cents=5000)
        make_voucher(code="FLAT", type="FIXED_AMOUNT", value=1000, applicable_product_ids=[eligible.id])

        result = voucher_service.validate_voucher("FLAT", _items((eligible, 1), (other, 1)))

        assert result["discount_cents"] == 300
        assert result["total_cents"] == 5000

    def test_free_shipping(self, db_session, make_product, make_voucher, set_delivery):
        product = make_product(price_cents=1000)
        make_voucher(code="SHIPFREE", type="FREE_SHIPPING", value=0)
        set_delivery(250)

        result = voucher_service.validate_voucher("SHIPFREE", _items((product, 1)))

        assert result["discount_cents"] == 250
        assert result["total_cents"] == 1000

    def test_free_shipping_when_shipping_is_already_free(self, db_session, make_product, make_voucher):
        product = make_product(price_cents=1000)
        make_voucher(code="SHIPFREE", type="FREE_SHIPPING", value=0)
        assert voucher_service.validate_voucher("SHIPFREE", _items((product, 1)))["discount_cents"] == 0

    def test_category_restriction(self, db_session, make_product, make_voucher, make_category):
        shirts = make_category("Shirts")
        shirt = make_product(name="Shirt", price_cents=2000, categories=[shirts])
        mug = make_product(name="Mug", price_cents=1000)
        make_voucher(value=10, applicable_category_ids=[shirts.id])

        result = voucher_service.validate_voucher("SAVE10", _items((shirt, 1), (mug, 1)))

        assert result["discount_cents"] == 200
        assert result["subtotal_cents"] == 3000

    def test_product_and_category_restrictions_must_both_match(
        self, db_session, make_product, make_voucher, make_category
    ):
        shirts = make_category("Shirts")
        listed_shirt = make_product(name="Listed shirt", price_cents=1000, categories=[shirts])
        other_shirt = make_product(name="Other shirt", price_cents=1000, categories=[shirts])
        make_voucher(
            value=10,
            applicable_product_ids=[listed_shirt.id],
            applicable_category_ids=[shirts.id],
        )

        result = voucher_service.validate_voucher("SAVE10", _items((listed_shirt, 1), (other_shirt, 1)))
        assert result["discount_cents"] == 100


class TestComputeDiscountForOrder:
    def test_no_code(self, db_session, make_product):
        product = make_product()
        assert voucher_service.compute_discount_for_order(None, _items((product, 1))) is None
        assert voucher_service.compute_discount_for_order("  ", _items((product, 1))) is None

    def test_invalid_code_is_dropped(self, db_session, make_product):
        product = make_product()
        assert voucher_service.compute_discount_for_order("BOGUS", _items((product, 1))) is None

    def test_invalid_code_raises_when_asked(self, db_session, make_product, make_voucher):
        product = make_product()
        make_voucher(is_active=False)

        with pytest.raises(BadRequestError) as exc:
            voucher_service.compute_discount_for_order("SAVE10", _items((product, 1)), throw_on_invalid=True)

        assert str(exc.value) == "This voucher is no longer active."
        assert exc.value.details["error_code"] == "VOUCHER_INACTIVE"

    def test_valid_code(self, db_session, make_product, make_voucher):
        product = make_product(price_cents=1000)
        voucher = make_voucher()

        discount = voucher_service.compute_discount_for_order("save10", _items((product, 1)), shipping_cents=0)

        assert discount == {
            "voucher_id": voucher.id,
            "voucher_code": "SAVE10",
            "discount_type": "PERCENTAGE",
            "discount_cents": 100,
        }


class TestRedeem:
    def test_redeem_increments_and_audits(self, db_session, make_voucher):
        voucher = make_voucher(usage_limit_global=5)
        order_id = _blank_order(discount_cents=100)

        with atomic():
            voucher_service.redeem_voucher(voucher_id=voucher.id, order_id=order_id, discount_cents=100)

        db.session.expire_all()
        assert db.session.get(Voucher, voucher.id).used_count == 1
        assert db.session.query(VoucherRedemption).filter_by(voucher_id=voucher.id).count() == 1
        assert _audit_actions(voucher_id=voucher.id) == ["REDEEMED"]

    def test_redeem_at_global_limit_fails(self, db_session, make_voucher):
        voucher = make_voucher(usage_limit_global=1, used_count=1)
        order_id = _blank_order()

        with pytest.raises(BadRequestError):
            with atomic():
                voucher_service.redeem_voucher(voucher_id=voucher.id, order_id=order_id)

        db.session.expire_all()
        assert db.session.get(Voucher, voucher.id).used_count == 1
        assert db.session.query(VoucherRedemption).count() == 0
        assert _audit_actions(voucher_id=voucher.id) == []

    def test_per_user_limit_is_checked_under_a_row_lock(self, db_session, make_voucher, make_user, monkeypatch):
        customer = make_user("Customer")
        voucher = make_voucher(usage_limit_per_user=1)
        first_order, second_order = _blank_order(), _blank_order()

        locked = []
        real_lock = voucher_service.lock_for_update

        def recording_lock(query):
            locked.append(real_lock(query))
            return locked[-1]

        monkeypatch.setattr(voucher_service, "lock_for_update", recording_lock)

        with atomic():
            voucher_service.redeem_voucher(voucher_id=voucher.id, order_id=first_order, user_id=customer.id)
        with pytest.raises(BadRequestError) as exc:
            with atomic():
                voucher_service.redeem_voucher(voucher_id=voucher.id, order_id=second_order, user_id=customer.id)

        assert exc.value.details == {"error_code": VOUCHER_ERROR_CODES["USER_LIMIT_REACHED"]}
        assert len(locked) == 2
        assert "FOR UPDATE" in str(locked[0].statement.compile(dialect=postgresql.dialect()))
        assert db.session.query(VoucherRedemption).filter_by(user_id=customer.id).count() == 1


def _admin_payload(**overrides):
    now = utcnow()
    payload = {
        "code": "welcome20",
        "type": "PERCENTAGE",
        "value": 20,
        "start_date": (now - timedelta(days=1)).isoformat() + "Z",
        "expiry_date": (now + timedelta(days=30)).isoformat() + "Z",
    }
    payload.update(overrides)
    return payload


class TestAdmin:
    def test_create_normalizes_code_and_audits(self, db_session, make_user):
        admin = make_user("Admin")

        created = voucher_service.create_voucher(_admin_payload(), actor_id=admin.id, request_id="req-9")

        assert created["code"] == "WELCOME20"
        assert created["used_count"] == 0
        assert created["is_active"] is True
        row = db.session.query(VoucherAuditLog).filter_by(action="CREATED").one()
        assert row.actor_type == "ADMIN"
        assert row.actor_id == admin.id
        assert row.request_id == "req-9"

    def test_create_duplicate_code_conflicts(self, db_session, make_voucher):
        make_voucher(code="WELCOME20")
        with pytest.raises(ConflictError):
            voucher_service.create_voucher(_admin_payload(code="Welcome20"))

    def test_code_of_deleted_voucher_can_be_reused(self, db_session, make_voucher):
        make_voucher(code="WELCOME20", deleted_at=utcnow())
        assert voucher_service.create_voucher(_admin_payload())["code"] == "WELCOME20"

    def test_live_codes_are_unique_in_the_database(self, db_session, make_voucher):
        make_voucher(code="ONCE", deleted_at=utcnow())
        make_voucher(code="ONCE")

        with pytest.raises(IntegrityError):
            make_voucher(code="ONCE")
        db.session.rollback()

    def test_create_losing_race_on_code_conflicts(self, db_session, monkeypatch):
        real_check = voucher_service._ensure_code_available

        def check_then_competing_insert(code, exclude_id=None):
            real_check(code, exclude_id)
            now = utcnow()
            db.session.add(Voucher(
                code=code, type="PERCENTAGE", value=5, start_date=now, expiry_date=now + timedelta(days=1),
            ))
            db.session.commit()

        monkeypatch.setattr(voucher_service, "_ensure_code_available", check_then_competing_insert)

        with pytest.raises(ConflictError, match='Voucher with code "DUP" already exists'):
            voucher_service.create_voucher(_admin_payload(code="dup"))

        assert db.session.query(Voucher).filter(Voucher.code == "DUP", Voucher.deleted_at.is_(None)).count() == 1
        assert _audit_actions(action="CREATED") == []

    def test_update_losing_race_on_code_conflicts(self, db_session, make_voucher, monkeypatch):
        voucher = make_voucher(code="OLD")
        real_check = voucher_service._ensure_code_available

        def check_then_competing_insert(code, exclude_id=None):
            real_check(code, exclude_id)
            now = utcnow()
            db.session.add(Voucher(
                code=code, type="PERCENTAGE", value=5, start_date=now, expiry_date=now + timedelta(days=1),
            ))
            db.session.commit()

        monkeypatch.setattr(voucher_service, "_ensure_code_available", check_then_competing_insert)

        with pytest.raises(ConflictError):
            voucher_service.update_voucher(voucher.id, {"code": "new"})

        db.session.expire_all()
        assert db.session.get(Voucher, voucher.id).code == "OLD"

    @pytest.mark.parametrize("overrides,message", [
        ({"value": 0}, "Percentage value must be between 1 and 100"),
        ({"value": 101}, "Percentage value must be between 1 and 100"),
        ({"type": "FIXED_AMOUNT", "value": 0}, "Fixed amount must be positive"),
        ({"type": "BOGO"}, "type must be one of: PERCENTAGE, FIXED_AMOUNT, FREE_SHIPPING"),
    ])
    def test_create_rejects_bad_values(self, db_session, overrides, message):
        with pytest.raises(BadRequestError) as exc:
            voucher_service.create_voucher(_admin_payload(**overrides))
        assert str(exc.value) == message
        assert db.session.query(Voucher).count() == 0
        assert db.session.query(VoucherAuditLog).count() == 0

    def test_create_rejects_expiry_before_start(self, db_session):
        now = utcnow()
        payload = _admin_payload(
            start_date=(now + timedelta(days=5)).isoformat(),
            expiry_date=(now + timedelta(days=1)).isoformat(),
        )
        with pytest.raises(BadRequestError, match="Expiry date must be after start date"):
            voucher_service.create_voucher(payload)

    def test_create_rejects_float_value(self, db_session):
        with pytest.raises(BadRequestError):
            voucher_service.create_voucher(_admin_payload(value=12.5))

    def test_update_checks_effective_dates(self, db_session, make_voucher):
        voucher = make_voucher()
        past = (utcnow() - timedelta(days=5)).isoformat()
        with pytest.raises(BadRequestError):
            voucher_service.update_voucher(voucher.id, {"expiry_date": past})

    def test_update_records_changed_fields(self, db_session, make_voucher):
        voucher = make_voucher()

        updated = voucher_service.update_voucher(voucher.id, {"value": 15, "max_discount_cents": 500})

        assert updated["value"] == 15
        assert updated["max_discount_cents"] == 500
        row = db.session.query(VoucherAuditLog).filter_by(action="UPDATED").one()
        assert row.metadata_json == {"changed_fields": ["max_discount_cents", "value"]}

    def test_update_to_taken_code_conflicts(self, db_session, make_voucher):
        make_voucher(code="TAKEN")
        voucher = make_voucher(code="MINE")
        with pytest.raises(ConflictError):
            voucher_service.update_voucher(voucher.id, {"code": "taken"})

    def test_update_missing_voucher(self, db_session):
        with pytest.raises(NotFoundError):
            voucher_service.update_voucher("missing", {"value": 5})

    def test_update_rejects_unknown_field(self, db_session, make_voucher):
        voucher = make_voucher()
        with pytest.raises(BadRequestError, match="Field not allowed: used_count"):
            voucher_service.update_voucher(voucher.id, {"used_count": 0})

    def test_status_toggle_audits_activate_and_deactivate(self, db_session, make_voucher):
        voucher = make_voucher()

        assert voucher_service.update_voucher_status(voucher.id, False)["is_active"] is False
        assert voucher_service.update_voucher_status(voucher.id, True)["is_active"] is True

        assert _audit_actions(voucher_id=voucher.id) == ["DEACTIVATED", "ACTIVATED"]

    def test_status_requires_boolean(self, db_session, make_voucher):
        voucher = make_voucher()
        with pytest.raises(BadRequestError):
            voucher_service.update_voucher_status(voucher.id, "false")

    def test_remove_is_soft_and_hides_voucher(self, db_session, make_voucher):
        voucher = make_voucher()

        assert voucher_service.remove_voucher(voucher.id) == {"success": True}

        db.session.expire_all()
        assert db.session.get(Voucher, voucher.id).deleted_at is not None
        assert _audit_actions(voucher_id=voucher.id) == ["DELETED"]
        with pytest.raises(NotFoundError):
            voucher_service.get_voucher(voucher.id)
        with pytest.raises(NotFoundError):
            voucher_service.remove_voucher(voucher.id)

    def test_failed_audit_rolls_back_mutation(self, db_session, make_voucher, monkeypatch):
        voucher = make_voucher()

        def broken_publish(**kwargs):
            raise RuntimeError("audit store down")

        monkeypatch.setattr(voucher_service.audit, "publish", broken_publish)

        with pytest.raises(RuntimeError):
            voucher_service.update_voucher_status(voucher.id, False)

        db.session.expire_all()
        assert db.session.get(Voucher, voucher.id).is_active is True


class TestListingAndStats:
    def test_status_filters(self, db_session, make_voucher):
        now = utcnow()
        make_voucher(code="LIVE")
        make_voucher(code="OLD", start_date=now - timedelta(days=9), expiry_date=now - timedelta(days=1))
        make_voucher(code="SOON", start_date=now + timedelta(days=1), expiry_date=now + timedelta(days=9))
        make_voucher(code="GONE", deleted_at=now)

        def codes(**kwargs):
            return sorted(v["code"] for v in voucher_service.list_vouchers(**kwargs)["data"])

        assert codes() == ["LIVE", "OLD", "SOON"]
        assert codes(status="active") == ["LIVE"]
        assert codes(status="expired") == ["OLD"]
        assert codes(status="upcoming") == ["SOON"]
        assert codes(search="li") == ["LIVE"]

    def test_search_treats_wildcards_literally(self, db_session, make_voucher):
        make_voucher(code="SAVE_10")
        make_voucher(code="SAVEX10")

        def codes(search):
            return [v["code"] for v in voucher_service.list_vouchers(search=search)["data"]]

        assert codes("e_1") == ["SAVE_10"]
        assert codes("%") == []

    def test_unknown_status_filter(self, db_session):
        with pytest.raises(BadRequestError):
            voucher_service.list_vouchers(status="paused")

    def test_stats(self, db_session, make_voucher):
        voucher = make_voucher(usage_limit_global=10)
        for discount in (100, 250):
            order_id = _blank_order(discount_cents=discount)
            with atomic():
                voucher_service.redeem_voucher(voucher_id=voucher.id, order_id=order_id, discount_cents=discount)

        stats = voucher_service.get_voucher_stats(voucher.id)

        assert stats == {
            "total_redemptions": 2,
            "revenue_impact_cents": 350,
            "remaining_uses": 8,
            "used_count": 2,
            "usage_limit_global": 10,
        }
