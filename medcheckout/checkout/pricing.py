"""Product catalog and order totals."""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional, Sequence, Tuple

EXPEDITED_SHIPPING_COST = 19.99
PROMO_DISCOUNT = 25


@dataclass(frozen=True)
class Plan:
    id: str
    type: str                   # monthly | 3month | 6month | onetime
    name_en: str
    name_es: str
    price: float
    billing: str                # monthly | total | once
    dose: str = ""

    def name(self, lang: str = "en") -> str:
        return self.name_es if lang == "es" else self.name_en

    @property
    def is_one_time(self) -> bool:
        return self.type == "onetime"


@dataclass(frozen=True)
class Addon:
    id: str
    name_en: str
    name_es: str = ""
    price: Optional[float] = None
    base_price: Optional[float] = None
    has_duration: bool = False
    # False: months follow the selected plan only, an explicit duration is ignored
    follows_duration: bool = True

    def dynamic_price(self, duration: Optional[str], plan: Optional[Plan]) -> float:
        base = self.base_price if self.base_price is not None else (self.price or 0)
        months = None
        if self.follows_duration and duration and duration != "auto":
            months = _duration_months(duration)
        if months is None:
            months = plan_months(plan)
        return base * months


@dataclass(frozen=True)
class Medication:
    id: str
    name_en: str
    name_es: str
    plans: Tuple[Plan, ...]

    def plan(self, plan_id: str) -> Optional[Plan]:
        return next((p for p in self.plans if p.id == plan_id), None)


@dataclass(frozen=True)
class Totals:
    addon_total: float
    shipping_cost: float
    subtotal: float
    discount: float
    total: float


def _duration_months(duration: str) -> Optional[int]:
    digits = ""
    for ch in duration.strip():
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else None


def plan_months(plan: Optional[Plan]) -> int:
    if plan is None:
        return 1
    if "6month" in plan.id:
        return 6
    if "3month" in plan.id:
        return 3
    return 1


SEMAGLUTIDE = Medication(
    id="semaglutide",
    name_en="Semaglutide",
    name_es="Semaglutida",
    plans=(
        Plan("sema_2.5-5_monthly", "monthly", "Monthly Subscription", "Suscripción Mensual", 229, "monthly", "2.5mg-5mg"),
        Plan("sema_2.5-5_single", "onetime", "Single Month", "Mes Único", 299, "once", "2.5mg-5mg"),
        Plan("sema_2.5-5_3month", "3month", "3 Month Package", "Paquete de 3 Meses", 549, "total", "2.5mg-5mg"),
        Plan("sema_5-10_monthly", "monthly", "Monthly Subscription", "Suscripción Mensual", 349, "monthly", "5mg-10mg"),
        Plan("sema_5-10_single", "onetime", "Single Month", "Mes Único", 399, "once", "5mg-10mg"),
        Plan("sema_5-10_3month", "3month", "3 Month Package", "Paquete de 3 Meses", 749, "total", "5mg-10mg"),
    ),
)

TIRZEPATIDE = Medication(
    id="tirzepatide",
    name_en="Tirzepatide",
    name_es="Tirzepatida",
    plans=(
        Plan("tirz_monthly", "monthly", "Monthly Recurring", "Mensual Recurrente", 329, "monthly"),
        Plan("tirz_3month", "3month", "3 Month Package", "Paquete de 3 Meses", 891, "total"),
        Plan("tirz_6month", "6month", "6 Month Package", "Paquete de 6 Meses", 1674, "total"),
        Plan("tirz_onetime", "onetime", "One-Time Purchase", "Compra Única", 399, "once"),
    ),
)

MEDICATIONS: Dict[str, Medication] = {m.id: m for m in (SEMAGLUTIDE, TIRZEPATIDE)}

ADDONS: Tuple[Addon, ...] = (
    Addon(
        id="nausea-rx",
        name_en="Nausea Relief Prescription",
        name_es="Prescripción para Alivio de Náuseas",
        price=39,
        base_price=39,
        has_duration=True,
        follows_duration=False,
    ),
    Addon(
        id="fat-burner",
        name_en="Fat Burner (L-Carnitine + B Complex)",
        name_es="Quemador de Grasa (L-Carnitina + Complejo B)",
        base_price=99,
        has_duration=True,
    ),
)


def find_addon(addon_id: str, addons: Iterable[Addon] = ADDONS) -> Optional[Addon]:
    return next((a for a in addons if a.id == addon_id), None)


def compute_addon_price(addon: Optional[Addon], duration: Optional[str], plan: Optional[Plan] = None) -> float:
    if addon is None:
        return 0
    if addon.has_duration:
        return addon.dynamic_price(duration, plan)
    if addon.price is not None:
        return addon.price
    return addon.base_price or 0


def compute_totals(plan: Optional[Plan], selected_addons: Optional[Sequence[str]],
                   addons: Iterable[Addon] = ADDONS, duration: Optional[str] = None,
                   expedited_shipping: bool = False, promo_applied: bool = False) -> Totals:
    addons = tuple(addons)
    plan_price = plan.price if plan is not None else 0
    addon_total = sum(
        compute_addon_price(find_addon(addon_id, addons), duration, plan)
        for addon_id in (selected_addons or ())
    )
    shipping_cost = EXPEDITED_SHIPPING_COST if expedited_shipping else 0
    subtotal = plan_price + addon_total
    discount = PROMO_DISCOUNT if promo_applied else 0
    total = subtotal + shipping_cost - discount
    return Totals(
        addon_total=round(addon_total, 2),
        shipping_cost=shipping_cost,
        subtotal=round(subtotal, 2),
        discount=discount,
        total=round(total, 2),
    )


def to_cents(amount: float) -> int:
    return int(Decimal(str(amount)).scaleb(2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
