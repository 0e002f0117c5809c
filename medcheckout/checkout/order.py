"""Step-by-step order state for the checkout wizard."""
from dataclasses import dataclass, field
from typing import List, Optional

from medcheckout.checkout.pricing import (
    ADDONS,
    MEDICATIONS,
    Medication,
    Plan,
    Totals,
    compute_totals,
    find_addon,
    to_cents,
)

STEPS = ("medication", "plan", "shipping", "payment")


class OrderValidationError(ValueError):
    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(message)


@dataclass
class ShippingAddress:
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "US"

    def missing_fields(self) -> List[str]:
        required = {
            "addressLine1": self.address_line1,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
        }
        return [name for name, value in required.items() if not (value or "").strip()]

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def to_payload(self) -> dict:
        return {
            "addressLine1": self.address_line1.strip(),
            "addressLine2": self.address_line2.strip(),
            "city": self.city.strip(),
            "state": self.state.strip().upper(),
            "zipCode": self.zip_code.strip(),
            "country": self.country or "US",
        }


@dataclass
class CheckoutOrder:
    language: str = "en"
    medication_id: Optional[str] = None
    plan_id: Optional[str] = None
    addons: List[str] = field(default_factory=list)
    fat_burner_duration: Optional[str] = None
    expedited_shipping: bool = False
    promo_applied: bool = False
    shipping: ShippingAddress = field(default_factory=ShippingAddress)
    step: str = STEPS[0]

    @property
    def medication(self) -> Optional[Medication]:
        return MEDICATIONS.get(self.medication_id or "")

    @property
    def plan(self) -> Optional[Plan]:
        medication = self.medication
        if medication is None or not self.plan_id:
            return None
        return medication.plan(self.plan_id)

    def toggle_addon(self, addon_id: str) -> None:
        if find_addon(addon_id) is None:
            raise OrderValidationError(self.step, f"Unknown add-on: {addon_id}")
        if addon_id in self.addons:
            self.addons.remove(addon_id)
        else:
            self.addons.append(addon_id)

    def totals(self) -> Totals:
        return compute_totals(
            self.plan,
            self.addons,
            ADDONS,
            duration=self.fat_burner_duration,
            expedited_shipping=self.expedited_shipping,
            promo_applied=self.promo_applied,
        )

    def amount_cents(self) -> int:
        return to_cents(self.totals().total)

    def validate_step(self, step: str = None) -> None:
        step = step or self.step
        if step == "medication" and self.medication is None:
            raise OrderValidationError(step, "Please choose a medication")
        if step == "plan" and self.plan is None:
            raise OrderValidationError(step, "Please choose a plan for the selected medication")
        if step == "shipping":
            missing = self.shipping.missing_fields()
            if missing:
                raise OrderValidationError(
                    step,
                    f"Please enter a complete shipping address (missing: {', '.join(missing)})",
                )

    def advance(self) -> str:
        index = STEPS.index(self.step)
        if index == len(STEPS) - 1:
            return self.step
        # earlier steps may have been changed after moving forward
        for step in STEPS[: index + 1]:
            self.validate_step(step)
        self.step = STEPS[index + 1]
        return self.step

    def back(self) -> str:
        index = STEPS.index(self.step)
        if index > 0:
            self.step = STEPS[index - 1]
        return self.step

    def order_data(self) -> dict:
        """Payload sent as ``order_data`` to the create-intent endpoint."""
        medication = self.medication
        plan = self.plan
        totals = self.totals()
        return {
            "medication": medication.name_en if medication else "",
            "plan": plan.name_en if plan else "",
            "planId": plan.id if plan else "",
            "addons": [find_addon(a).name_en for a in self.addons if find_addon(a)],
            "expeditedShipping": self.expedited_shipping,
            "subtotal": totals.subtotal,
            "shippingCost": totals.shipping_cost,
            "total": totals.total,
        }
