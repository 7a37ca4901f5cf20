import pytest

from vrbooking.domain import CartLine, Coupon, DiscountType, TicketType
from vrbooking.errors import (
    CouponExhaustedError, CouponExpiredError, CouponMinOrderError,
    CouponNotApplicableError, CouponNotFoundError, CouponUserLimitError,
    ValidationError,
)
from vrbooking.pricing import (
    DEFAULT_TICKET_PRICE, PriceTable, calculate_cart_pricing,
    calculate_pricing, check_coupon_definition, format_price,
    percentage_of, validate_coupon,
)

NOW = 1_750_000_000.0


def tt(tt_id="std", price=2000, **kw):
    kw.setdefault("available_stock", 100)
    return TicketType(id=tt_id, name=tt_id.upper(), price_in_cents=price,
                      **kw)


def coupon(code="SAVE10", kind=DiscountType.PERCENTAGE, value=10, **kw):
    return Coupon(id=f"c-{code}", code=code, discount_type=kind,
                  discount_value=value, **kw)


def types(*ticket_types):
    return {t.id: t for t in ticket_types}


# ----------------------------
# Worked examples
# ----------------------------
def test_two_at_2000_without_coupon():
    res = calculate_cart_pricing([CartLine("std", 2)], types(tt()), False,
                                 now=NOW)
    assert (res.original_amount, res.discount_amount, res.final_amount) == \
        (4000, 0, 4000)
    assert res.applied_coupon is None
    assert not res.has_discount


def test_ten_percent_of_4000():
    c = coupon()
    res = calculate_cart_pricing([CartLine("std", 2)], types(tt()), False,
                                 "SAVE10", coupon=c, now=NOW)
    assert res.discount_amount == 400
    assert res.final_amount == 3600
    assert res.applied_coupon.code == "SAVE10"
    assert res.has_discount


def test_fixed_discount_larger_than_order_is_capped():
    c = coupon("BIG", DiscountType.FIXED_AMOUNT, 10_000)
    res = calculate_cart_pricing([CartLine("std", 1)], types(tt()), False,
                                 "BIG", coupon=c, now=NOW)
    assert res.discount_amount == 2000
    assert res.final_amount == 0


def test_percentage_rounds_half_up():
    c = coupon()
    res = calculate_cart_pricing([CartLine("odd", 1)],
                                 types(tt("odd", 1005)), False,
                                 "SAVE10", coupon=c, now=NOW)
    assert res.discount_amount == 101
    assert res.final_amount == 904
    assert percentage_of(1004, 10) == 100
    assert percentage_of(1005, 10) == 101


def test_hundred_percent_makes_it_free():
    c = coupon("FREE", value=100)
    res = calculate_cart_pricing([CartLine("std", 3)], types(tt()), False,
                                 "FREE", coupon=c, now=NOW)
    assert res.final_amount == 0
    assert res.discount_amount == 6000


def test_amounts_stay_consistent_over_a_grid():
    for price in (0, 1, 333, 1999, 5000):
        for qty in (1, 4, 10):
            for pct in (1, 15, 33, 50, 99, 100):
                res = calculate_cart_pricing(
                    [CartLine("x", qty)], types(tt("x", price)), False,
                    "P", coupon=coupon("P", value=pct), now=NOW)
                assert res.final_amount == \
                    res.original_amount - res.discount_amount
                assert 0 <= res.discount_amount <= res.original_amount


def test_multi_line_cart_sums_lines():
    cart = [CartLine("a", 2), CartLine("b", 1)]
    res = calculate_cart_pricing(cart, types(tt("a", 1500), tt("b", 3000)),
                                 False, now=NOW)
    assert res.original_amount == 6000


# ----------------------------
# Simple quantity path
# ----------------------------
def test_simple_path_uses_price_table():
    res = calculate_pricing(2, False, prices=PriceTable(public=4000),
                            now=NOW)
    assert res.original_amount == 8000


def test_simple_path_default_price():
    res = calculate_pricing(1, False, now=NOW)
    assert res.final_amount == DEFAULT_TICKET_PRICE


def test_simple_path_ems_is_complimentary():
    res = calculate_pricing(3, True, prices=PriceTable(public=4000),
                            now=NOW)
    assert res.original_amount == 0
    assert res.final_amount == 0


@pytest.mark.parametrize("qty", [0, 11, -1, True, 2.5])
def test_simple_path_rejects_quantity(qty):
    with pytest.raises(ValidationError):
        calculate_pricing(qty, False, now=NOW)


def test_blank_coupon_code_means_no_coupon():
    res = calculate_pricing(1, False, "   ", now=NOW)
    assert res.applied_coupon is None


# ----------------------------
# Coupon rules
# ----------------------------
def test_code_is_case_insensitive():
    res = calculate_pricing(1, False, " save10 ", coupon=coupon(), now=NOW)
    assert res.discount_amount == 500


def test_missing_coupon():
    with pytest.raises(CouponNotFoundError):
        calculate_pricing(1, False, "NOPE", coupon=None, now=NOW)


def test_inactive_coupon_is_not_found():
    with pytest.raises(CouponNotFoundError):
        calculate_pricing(1, False, "SAVE10",
                          coupon=coupon(is_active=False), now=NOW)


def test_expired_coupon():
    with pytest.raises(CouponExpiredError) as exc:
        calculate_pricing(1, False, "SAVE10",
                          coupon=coupon(valid_to=NOW - 1), now=NOW)
    assert "expired" in exc.value.message


def test_not_yet_valid_coupon():
    with pytest.raises(CouponExpiredError) as exc:
        calculate_pricing(1, False, "SAVE10",
                          coupon=coupon(valid_from=NOW + 60), now=NOW)
    assert "not yet valid" in exc.value.message


def test_exhausted_coupon():
    c = coupon(max_uses=5, current_uses=5)
    with pytest.raises(CouponExhaustedError):
        calculate_pricing(1, False, "SAVE10", coupon=c, now=NOW)


def test_last_use_is_still_available():
    c = coupon(max_uses=5, current_uses=4)
    res = calculate_pricing(1, False, "SAVE10", coupon=c, now=NOW)
    assert res.discount_amount == 500


def test_user_limit_is_an_exhaustion():
    c = coupon(max_uses_per_user=1)
    with pytest.raises(CouponUserLimitError) as exc:
        calculate_pricing(1, False, "SAVE10", coupon=c, now=NOW,
                          user_uses=1)
    assert isinstance(exc.value, CouponExhaustedError)
    assert exc.value.code.value == "COUPON_USER_LIMIT"


def test_min_order_amount():
    c = coupon(min_order_amount=6000)
    with pytest.raises(CouponMinOrderError):
        calculate_pricing(1, False, "SAVE10", coupon=c, now=NOW)
    res = calculate_pricing(2, False, "SAVE10", coupon=c, now=NOW)
    assert res.discount_amount == 1000


def test_ems_only_coupon_rejects_public_customers():
    c = coupon(ems_clients_only=True)
    with pytest.raises(CouponNotApplicableError):
        calculate_pricing(1, False, "SAVE10", coupon=c, now=NOW)


def test_public_only_coupon_rejects_ems_customers():
    c = coupon(public_only=True)
    with pytest.raises(CouponNotApplicableError):
        validate_coupon(c, "SAVE10", order_amount=4000, is_ems_client=True,
                        now=NOW)


def test_ems_order_ignores_coupon():
    # even an unusable coupon is not looked at for a complimentary order
    for c in (coupon(), coupon(public_only=True),
              coupon(max_uses=1, current_uses=1)):
        res = calculate_pricing(2, True, "SAVE10", coupon=c, now=NOW)
        assert (res.original_amount, res.discount_amount,
                res.final_amount) == (0, 0, 0)
        assert res.applied_coupon is None


def test_free_cart_ignores_coupon():
    res = calculate_cart_pricing([CartLine("free", 2)],
                                 types(tt("free", price=0)), False,
                                 "SAVE10", coupon=coupon(), now=NOW)
    assert res.final_amount == 0
    assert res.applied_coupon is None


def test_expiry_is_checked_before_exhaustion():
    c = coupon(valid_to=NOW - 1, max_uses=1, current_uses=1)
    with pytest.raises(CouponExpiredError):
        calculate_pricing(1, False, "SAVE10", coupon=c, now=NOW)


def test_validate_coupon_returns_discount():
    assert validate_coupon(coupon(), "save10", order_amount=4000,
                           is_ems_client=False, now=NOW) == 400


def test_validate_coupon_requires_code():
    with pytest.raises(ValidationError):
        validate_coupon(coupon(), "", order_amount=4000,
                        is_ems_client=False, now=NOW)


@pytest.mark.parametrize("kind,value", [
    (DiscountType.PERCENTAGE, 0),
    (DiscountType.PERCENTAGE, 101),
    (DiscountType.FIXED_AMOUNT, -5),
])
def test_coupon_definition_bounds(kind, value):
    with pytest.raises(ValidationError):
        check_coupon_definition(kind, value)


# ----------------------------
# Cart validation
# ----------------------------
@pytest.mark.parametrize("cart,catalog", [
    ([], types(tt())),
    ([CartLine("ghost", 1)], types(tt())),
    ([CartLine("std", 1), CartLine("std", 1)], types(tt())),
    ([CartLine("std", 0)], types(tt())),
    ([CartLine("std", 3)], types(tt(min_per_order=4, max_per_order=8))),
    ([CartLine("std", 9)], types(tt(min_per_order=1, max_per_order=8))),
    ([CartLine("std", 1)], types(tt(is_active=False))),
    ([CartLine("std", 1)], types(tt(ems_clients_only=True))),
    ([CartLine("std", 1)], types(tt(available_until=NOW - 10))),
])
def test_invalid_carts(cart, catalog):
    with pytest.raises(ValidationError):
        calculate_cart_pricing(cart, catalog, False, now=NOW)


def test_public_only_type_rejects_ems():
    with pytest.raises(ValidationError):
        calculate_cart_pricing([CartLine("std", 1)],
                               types(tt(public_only=True)), True, now=NOW)


def test_ems_cart_is_complimentary():
    res = calculate_cart_pricing([CartLine("std", 2)], types(tt()), True,
                                 now=NOW)
    assert res.final_amount == 0


# ----------------------------
# Formatting
# ----------------------------
def test_format_price():
    assert format_price(4000) == "€40.00"
    assert format_price(5, "usd") == "$0.05"
    assert format_price(123456, "chf") == "CHF 1234.56"
