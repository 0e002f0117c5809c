import pytest

from medcheckout.checkout.order import CheckoutOrder, OrderValidationError, ShippingAddress
from medcheckout.checkout.pricing import (
    ADDONS,
    TIRZEPATIDE,
    Plan,
    compute_addon_price,
    compute_totals,
    find_addon,
    plan_months,
    to_cents,
)


def plan(plan_id, price):
    return Plan(plan_id, "monthly", plan_id, plan_id, price, "monthly")


@pytest.mark.parametrize("plan_id,price,addons,duration,expedited,promo,expected", [
    ("sem-monthly", 229, [], "1", False, False, 229.00),
    ("sem-3month", 549, ["fat-burner"], "3", True, True, 840.99),
    ("sem-monthly", 229, ["fat-burner", "nausea-rx"], "1", False, True, 342.00),
    ("tir-6month", 1499, ["fat-burner"], "6", True, True, 2087.99),
    ("sem-onetime", 0, ["nausea-rx"], "1", False, False, 39.00),
    ("tir-monthly", 329, [], "1", False, True, 304.00),
    ("sem-3month", 549, [], "1", True, False, 568.99),
    ("sem-monthly", 229, [], "1", True, True, 223.99),
    ("custom", 100, None, "1", False, False, 100.00),
])
def test_compute_totals(plan_id, price, addons, duration, expedited, promo, expected):
    totals = compute_totals(plan(plan_id, price), addons, ADDONS, duration, expedited, promo)
    assert totals.total == expected


def test_totals_breakdown():
    totals = compute_totals(TIRZEPATIDE.plan("tirz_3month"), ["nausea-rx"], expedited_shipping=True)
    assert totals.addon_total == 117
    assert totals.shipping_cost == 19.99
    assert totals.subtotal == 1008
    assert totals.discount == 0
    assert totals.total == 1027.99


def test_addon_months_follow_plan():
    six = TIRZEPATIDE.plan("tirz_6month")
    assert plan_months(six) == 6
    assert plan_months(None) == 1
    # nausea relief ignores an explicit duration
    assert compute_addon_price(find_addon("nausea-rx"), "1", six) == 234
    assert compute_addon_price(find_addon("fat-burner"), "2", six) == 198
    assert compute_addon_price(find_addon("fat-burner"), None, six) == 594
    assert compute_addon_price(None, "3") == 0


def test_to_cents_rounds_half_up():
    assert to_cents(840.99) == 84099
    assert to_cents(0.125) == 13
    assert to_cents(229) == 22900


def test_order_wizard_steps():
    order = CheckoutOrder()
    with pytest.raises(OrderValidationError) as exc:
        order.advance()
    assert exc.value.step == "medication"

    order.medication_id = "tirzepatide"
    assert order.advance() == "plan"

    order.plan_id = "sema_2.5-5_monthly"
    with pytest.raises(OrderValidationError):
        order.advance()
    order.plan_id = "tirz_monthly"
    assert order.advance() == "shipping"

    order.shipping = ShippingAddress(address_line1="1 Main St", city="Tampa", state="fl")
    with pytest.raises(OrderValidationError) as exc:
        order.advance()
    assert "zipCode" in str(exc.value)

    order.shipping.zip_code = "33601"
    assert order.advance() == "payment"
    assert order.advance() == "payment"
    assert order.back() == "shipping"


def test_order_revalidates_earlier_steps():
    order = CheckoutOrder(medication_id="tirzepatide", plan_id="tirz_monthly", step="shipping",
                          shipping=ShippingAddress("1 Main St", "", "Tampa", "FL", "33601"))
    order.plan_id = "missing"
    with pytest.raises(OrderValidationError) as exc:
        order.advance()
    assert exc.value.step == "plan"


def test_order_data_payload():
    order = CheckoutOrder(medication_id="tirzepatide", plan_id="tirz_3month", expedited_shipping=True)
    order.toggle_addon("fat-burner")
    order.toggle_addon("nausea-rx")
    order.toggle_addon("nausea-rx")
    order.fat_burner_duration = "3"

    data = order.order_data()
    assert data == {
        "medication": "Tirzepatide",
        "plan": "3 Month Package",
        "planId": "tirz_3month",
        "addons": ["Fat Burner (L-Carnitine + B Complex)"],
        "expeditedShipping": True,
        "subtotal": 1188,
        "shippingCost": 19.99,
        "total": 1207.99,
    }
    assert order.amount_cents() == 120799
    assert order.shipping.to_payload()["country"] == "US"

    with pytest.raises(OrderValidationError):
        order.toggle_addon("unknown")
