"""Attribution and contact identity carried through one checkout session."""
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Mapping, Optional

TRACKED_FIELDS = ("lead_id", "fbp", "fbc", "fbclid", "email", "phone", "first_name", "last_name", "dob", "lang")


def normalize_meta_param(value: Optional[str]) -> Optional[str]:
    """Drop empty values and form-builder placeholders such as ``@fbp``."""
    if not value or value.startswith("@"):
        return None
    return value


def normalize_lead_id(lead_id: Optional[str], meta_event_id: str) -> str:
    if not lead_id or lead_id.startswith("@"):
        return meta_event_id
    return lead_id


@dataclass
class CheckoutIdentity:
    meta_event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    lead_id: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    fbclid: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    dob: Optional[str] = None
    lang: Optional[str] = None

    @classmethod
    def from_query(cls, params: Mapping[str, str], cookies: Mapping[str, str] = None,
                   existing: "CheckoutIdentity" = None, clock=time.time) -> "CheckoutIdentity":
        cookies = cookies or {}
        fbp = normalize_meta_param(params.get("fbp")) or cookies.get("_fbp")
        fbc = normalize_meta_param(params.get("fbc")) or cookies.get("_fbc")
        lang = (params.get("lang") or params.get("language") or "").strip()
        from_url = {
            "lead_id": normalize_meta_param(params.get("lead_id")),
            "fbp": fbp,
            "fbc": fbc,
            "fbclid": normalize_meta_param(params.get("fbclid")),
            "email": params.get("email"),
            "phone": params.get("phone"),
            "first_name": params.get("firstName") or params.get("first_name"),
            "last_name": params.get("lastName") or params.get("last_name"),
            "dob": params.get("dob"),
            "lang": lang,
        }

        merged = asdict(existing) if existing else {}
        merged.update({k: v for k, v in from_url.items() if v})
        # meta_event_id survives from the existing identity, else a fresh uuid4
        identity = cls(**{k: v for k, v in merged.items() if k in _FIELD_NAMES})
        identity._normalize(clock)
        return identity

    def _normalize(self, clock=time.time):
        self.fbp = normalize_meta_param(self.fbp)
        self.fbc = normalize_meta_param(self.fbc)
        self.fbclid = normalize_meta_param(self.fbclid)
        if not self.fbc and self.fbclid:
            self.fbc = f"fb.1.{int(clock())}.{self.fbclid}"
        self.lead_id = normalize_lead_id(self.lead_id, self.meta_event_id)

    def update(self, **values) -> "CheckoutIdentity":
        for name, value in values.items():
            if name in TRACKED_FIELDS and value not in (None, ""):
                setattr(self, name, value)
        return self

    def tracking_payload(self) -> dict:
        """Meta attribution fields as sent to create-intent."""
        return {
            "lead_id": self.lead_id or "",
            "fbp": self.fbp or "",
            "fbc": self.fbc or "",
            "fbclid": self.fbclid or "",
            "meta_event_id": self.meta_event_id,
        }


_FIELD_NAMES = {f.name for f in fields(CheckoutIdentity)}
