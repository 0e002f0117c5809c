"""
Patient-facing PDF documents: the medical intake form and the payment invoice.

Both are US-Letter ReportLab platypus documents with 48pt margins, rendered to
an in-memory buffer and returned as bytes ready for upload to IntakeQ.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Dict, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import (
    HRFlowable,
    KeepTogether,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from medcheckout.intake.normalize import safe_to_text

logger = logging.getLogger(__name__)

MARGIN = 48
CONTENT_WIDTH = LETTER[0] - 2 * MARGIN
PRODUCER = "EONMeds Checkout"

MSO_DISCLOSURE = (
    "Apollo Based Health, LLC dba EONMeds operates as a Medical Service Organization (MSO) "
    "providing non-clinical administrative and business services on behalf of Vital Link PLLC, "
    "a Wyoming-licensed medical practice. All clinical services, medical decisions, and prescriptions "
    "are provided by licensed healthcare providers employed by or contracted with Vital Link PLLC."
)

CONFIDENTIALITY_NOTICE = (
    "CONFIDENTIAL PATIENT INFORMATION - This document contains protected health information (PHI) "
    "and is intended solely for the use of EONMeds medical staff. Unauthorized access, use, or disclosure "
    "is strictly prohibited and may be unlawful."
)

MEDICAL_KEYWORDS = (
    "diabetes", "thyroid", "cancer", "endocrine", "neoplasia", "pancreatitis",
    "gastroparesis", "pregnant", "pregnancy", "breastfeeding", "chronic", "condition",
    "diagnosis", "surgery", "procedure", "blood pressure", "mental health", "family history",
)
GLP1_KEYWORDS = (
    "glp-1", "glp1", "semaglutide", "tirzepatide", "ozempic", "wegovy", "mounjaro",
    "zepbound", "dose", "medication type", "current dose", "success", "side effect",
)
LIFESTYLE_KEYWORDS = (
    "activity", "exercise", "physical", "alcohol", "smoking", "diet", "weight",
    "bmi", "height", "ideal weight", "starting weight", "pounds to lose",
)
REFERRAL_KEYWORDS = (
    "hear about", "referral", "referred", "how did you", "source", "life change", "goals",
)
CLINICAL_KEYWORDS = (
    "personalized", "side effect", "successful", "dose", "glp-1", "semaglutide", "tirzepatide",
)


class Palette:
    MUTED = colors.HexColor("#6B7280")
    DIVIDER = colors.HexColor("#E5E7EB")
    BAND = colors.HexColor("#F3F4F6")
    DARK = colors.HexColor("#374151")


@dataclass
class PdfPatient:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    date_of_birth: str = ""
    gender: str = ""
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""


@dataclass
class IntakeConsents:
    terms_and_conditions: bool = False
    privacy_policy: bool = False
    telehealth_consent: bool = False
    cancellation_policy: bool = False
    florida_weight_loss: bool = False
    florida_consent: bool = False


@dataclass
class IntakePdfInput:
    intake_id: str
    patient: PdfPatient
    answers: List[Dict[str, str]] = field(default_factory=list)
    submitted_at_iso: str = ""
    ip_address: str = ""
    consents: Optional[IntakeConsents] = None


@dataclass
class InvoicePdfInput:
    payment_intent_id: str
    amount: int                 # cents
    currency: str = "usd"
    paid_at_iso: str = ""
    patient_name: str = ""
    patient_email: str = ""
    patient_phone: str = ""
    medication: str = ""
    plan: str = ""
    addons: List[str] = field(default_factory=list)
    expedited_shipping: bool = False
    shipping_address: Optional[Dict[str, str]] = None


def format_money(amount_cents: int, currency: str) -> str:
    return f"{(currency or 'usd').upper()} ${amount_cents / 100:.2f}"


def format_iso_date(iso: str) -> str:
    if not iso:
        return ""
    try:
        parsed = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return iso
    return parsed.strftime("%b %d, %Y, %I:%M %p")


def categorize_answers(answers: List[Dict[str, str]]) -> Dict[str, List[Dict[str, str]]]:
    """Bucket answers by label keywords; GLP-1 wins over medical, then lifestyle, referral."""
    buckets = {"medical_history": [], "glp1_usage": [], "lifestyle": [], "referral": [], "other": []}
    for item in answers:
        label = (item.get("label") or "").lower()
        if any(kw in label for kw in GLP1_KEYWORDS):
            buckets["glp1_usage"].append(item)
        elif any(kw in label for kw in MEDICAL_KEYWORDS):
            buckets["medical_history"].append(item)
        elif any(kw in label for kw in LIFESTYLE_KEYWORDS):
            buckets["lifestyle"].append(item)
        elif any(kw in label for kw in REFERRAL_KEYWORDS):
            buckets["referral"].append(item)
        else:
            buckets["other"].append(item)
    return buckets


def clinical_answers(answers: List[Dict[str, str]]) -> List[Dict[str, str]]:
    return [
        item for item in answers
        if any(kw in (item.get("label") or "").lower() for kw in CLINICAL_KEYWORDS)
    ]


def _styles() -> dict:
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="Brand", parent=styles["Normal"], fontName="Helvetica-Bold",
                              fontSize=28, leading=32))
    styles.add(ParagraphStyle(name="Tagline", parent=styles["Normal"], fontSize=9,
                              textColor=Palette.MUTED, spaceAfter=10))
    styles.add(ParagraphStyle(name="DocTitle", parent=styles["Normal"], fontName="Helvetica-Bold",
                              fontSize=18, leading=22, spaceAfter=2))
    styles.add(ParagraphStyle(name="Subtitle", parent=styles["Normal"], fontSize=9,
                              textColor=Palette.MUTED))
    styles.add(ParagraphStyle(name="Section", parent=styles["Normal"], fontName="Helvetica-Bold",
                              fontSize=12, leading=16, backColor=Palette.BAND, borderPadding=5,
                              spaceBefore=14, spaceAfter=8))
    styles.add(ParagraphStyle(name="FieldLabel", parent=styles["Normal"], fontSize=8,
                              textColor=Palette.MUTED))
    styles.add(ParagraphStyle(name="FieldValue", parent=styles["Normal"], fontName="Helvetica-Bold",
                              fontSize=10, leading=13, spaceAfter=5))
    styles.add(ParagraphStyle(name="Small", parent=styles["Normal"], fontSize=9, leading=12))
    styles.add(ParagraphStyle(name="Fine", parent=styles["Normal"], fontSize=8, leading=10))
    styles.add(ParagraphStyle(name="Footer", parent=styles["Normal"], fontSize=8, leading=10,
                              textColor=Palette.MUTED, alignment=TA_CENTER, spaceBefore=12))
    return styles


def _text(value) -> str:
    return escape(safe_to_text(value).strip())


class _Builder:
    def __init__(self):
        self.styles = _styles()
        self.story = []

    def para(self, text: str, style: str = "Normal"):
        self.story.append(Paragraph(text, self.styles[style]))

    def header(self, title: str, subtitle: str = ""):
        self.para('<font color="#00B4D8">eon</font><font name="Helvetica">meds</font>', "Brand")
        self.para("Telehealth Weight Management Services", "Tagline")
        self.para(escape(title), "DocTitle")
        if subtitle:
            self.para(escape(subtitle), "Subtitle")
        self.story.append(Spacer(1, 6))
        self.story.append(HRFlowable(width="100%", thickness=1, color=Palette.DIVIDER, spaceAfter=10))

    def section(self, title: str):
        self.para(escape(title), "Section")

    def field(self, label: str, value):
        self.para(escape(label.upper()), "FieldLabel")
        self.para(_text(value) or "-", "FieldValue")

    def key_value(self, label: str, value):
        self.para(f"<b>{escape(label)}:</b> {_text(value) or '-'}", "Small")

    def answers(self, title: str, items: List[Dict[str, str]]):
        if not items:
            return
        self.section(title)
        for item in items:
            label = safe_to_text(item.get("label")).strip()
            if label:
                self.field(label, item.get("value"))

    def render(self, title: str) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=LETTER,
            leftMargin=MARGIN,
            rightMargin=MARGIN,
            topMargin=MARGIN,
            bottomMargin=MARGIN,
            title=title,
            author=PRODUCER,
            creator=PRODUCER,
        )
        doc.build(self.story)
        pdf_bytes = buffer.getvalue()
        logger.debug("Rendered '%s' (%d bytes)", title, len(pdf_bytes))
        return pdf_bytes


def _consent_lines(consents: Optional[IntakeConsents], state: str):
    if not consents:
        return []
    florida = (state or "").upper() == "FL"
    lines = [
        (consents.terms_and_conditions, "Terms and Conditions",
         "Patient acknowledges reading and agreeing to the Terms of Use."),
        (consents.privacy_policy, "Privacy Policy",
         "Patient acknowledges the Privacy Policy and data handling practices."),
        (consents.telehealth_consent, "Informed Telemedicine Consent",
         "Patient consents to receive medical care through telehealth services."),
        (consents.cancellation_policy, "Cancellation & Subscription Policy",
         "Patient understands cancellation terms and recurring charges."),
        (consents.florida_weight_loss and florida, "Florida Weight Loss Consumer Bill of Rights",
         "Patient acknowledges Florida-specific consumer protections."),
        (consents.florida_consent and florida, "Florida Consent",
         "Patient acknowledges Florida telehealth consent requirements."),
    ]
    return [(title, text) for accepted, title, text in lines if accepted]


def generate_intake_pdf(data: IntakePdfInput) -> bytes:
    builder = _Builder()
    patient = data.patient

    subtitle = []
    if data.submitted_at_iso:
        subtitle.append(f"Submitted: {format_iso_date(data.submitted_at_iso)}")
    if data.intake_id:
        subtitle.append(f"ID: {data.intake_id}")
    builder.header("Medical Intake Form", "  |  ".join(subtitle))

    disclosure = Table(
        [[Paragraph("<b>MEDICAL SERVICE ORGANIZATION DISCLOSURE</b>", builder.styles["Fine"])],
         [Paragraph(MSO_DISCLOSURE, builder.styles["Fine"])]],
        colWidths=[CONTENT_WIDTH],
    )
    disclosure.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, -1), Palette.BAND),
        ("TEXTCOLOR", (0, 0), (-1, 0), Palette.DARK),
        ("LEFTPADDING", (0, 0), (-1, -1), 8),
        ("RIGHTPADDING", (0, 0), (-1, -1), 8),
    ]))
    builder.story.append(disclosure)

    builder.section("I. Patient Information")
    builder.field("First Name", patient.first_name)
    builder.field("Last Name", patient.last_name)
    builder.field("Date of Birth", patient.date_of_birth)
    if patient.gender:
        builder.field("Gender/Sex", patient.gender)
    builder.field("Email Address", patient.email)
    builder.field("Phone Number", patient.phone)

    builder.section("II. Shipping Address")
    for label, value in (
        ("Street Address", patient.address_line1),
        ("Apartment/Suite #", patient.address_line2),
        ("City", patient.city),
        ("State", patient.state),
        ("Postal Code", patient.zip_code),
        ("Country", patient.country),
    ):
        if value:
            builder.field(label, value)

    builder.section("III. Clinical Assessment & Treatment Rationale")
    flagged = clinical_answers(data.answers)
    if flagged:
        builder.para(
            '<font color="#6B7280">The following patient-reported information supports '
            "individualized treatment planning:</font>",
            "Small",
        )
        for item in flagged:
            label = _text(item.get("label"))
            if not label:
                continue
            builder.para(f'<font color="#DC2626"><b>Q: </b></font>{label}', "Small")
            builder.para(f'<font color="#059669"><b>A: </b></font>{_text(item.get("value")) or "Not provided"}',
                         "Normal")
    else:
        builder.para("Standard treatment protocol applicable.", "Small")

    buckets = categorize_answers(data.answers)
    builder.answers("IV. Medical History", buckets["medical_history"])
    builder.answers("V. GLP-1 Medication History (Additional Details)", buckets["glp1_usage"])
    builder.answers("VI. Lifestyle & Health Metrics", buckets["lifestyle"])
    builder.answers("VII. Referral & Treatment Goals", buckets["referral"])

    builder.section("VIII. Consent Agreements & Acknowledgments")
    builder.para('<font color="#DC2626">The following consents were acknowledged and accepted '
                 "by the patient:</font>", "Small")
    for title, text in _consent_lines(data.consents, patient.state):
        builder.para(f"<b>[X] {escape(title)}</b>", "Normal")
        builder.para(escape(text), "Small")

    patient_name = f"{patient.first_name} {patient.last_name}".strip()
    signature = Table(
        [
            [Paragraph("<b>ELECTRONIC SIGNATURE</b>", builder.styles["Normal"])],
            [Paragraph(
                f"By electronically submitting this form, I, {escape(patient_name or '[Patient Name]')}, "
                "certify that I am over 18 years of age and that all information provided is true and "
                "accurate to the best of my knowledge. I acknowledge that I have read, understood, and "
                "agree to all terms, policies, and consents referenced herein.",
                builder.styles["Small"],
            )],
            [Paragraph(f"<b>E-Signed by:</b> {escape(patient_name or 'Unknown')}", builder.styles["Small"])],
            [Paragraph(f"<b>Date &amp; Time:</b> {escape(format_iso_date(data.submitted_at_iso) or 'Unknown')}",
                       builder.styles["Small"])],
            [Paragraph(f"<b>IP Address:</b> {escape(data.ip_address or 'Not captured')}", builder.styles["Small"])],
        ],
        colWidths=[CONTENT_WIDTH],
    )
    signature.setStyle(TableStyle([
        ("BOX", (0, 0), (-1, -1), 2, Palette.DARK),
        ("LEFTPADDING", (0, 0), (-1, -1), 10),
        ("TOPPADDING", (0, 0), (-1, 0), 10),
        ("BOTTOMPADDING", (0, -1), (-1, -1), 10),
    ]))
    builder.story.append(Spacer(1, 12))
    builder.story.append(KeepTogether([signature]))

    builder.para(CONFIDENTIALITY_NOTICE, "Footer")
    return builder.render(f"Medical Intake Form - {data.intake_id}")


def generate_invoice_pdf(data: InvoicePdfInput) -> bytes:
    builder = _Builder()

    subtitle = [f"PaymentIntent: {data.payment_intent_id}"]
    if data.paid_at_iso:
        subtitle.append(f"Paid: {format_iso_date(data.paid_at_iso)}")
    builder.header("Invoice / Payment Receipt", "  |  ".join(subtitle))

    builder.section("Status")
    builder.para("<b>PAYMENT RECEIVED - READY FOR PRESCRIPTION REVIEW</b>")

    builder.section("Payment")
    builder.key_value("Amount", format_money(data.amount, data.currency))

    builder.section("Patient")
    builder.key_value("Name", data.patient_name)
    builder.key_value("Email", data.patient_email)
    if data.patient_phone:
        builder.key_value("Phone", data.patient_phone)

    builder.section("Order")
    builder.key_value("Medication", data.medication)
    builder.key_value("Plan", data.plan)
    addons = [a for a in data.addons if a]
    if addons:
        builder.para("<b>Add-ons:</b>", "Small")
        for addon in addons:
            builder.para(f"&bull; {escape(addon)}", "Small")
    builder.key_value(
        "Shipping",
        "Expedited (3-5 business days)" if data.expedited_shipping else "Standard (5-7 business days)",
    )

    if data.shipping_address:
        address = data.shipping_address
        builder.section("Shipping Address")
        city_state_zip = (
            f"{address.get('city', '')}, {address.get('state', '')} {address.get('zip', '')}"
        ).strip()
        for line in (address.get("line1"), address.get("line2"), city_state_zip):
            if line:
                builder.para(escape(line), "Small")

    builder.story.append(Spacer(1, 12))
    builder.para(
        '<font color="#6B7280">This document is generated by EONMeds Checkout for internal '
        "recordkeeping and patient reference.</font>",
        "Small",
    )
    return builder.render(f"Invoice - {data.payment_intent_id}")
