from medcheckout.pdf import (
    IntakeConsents,
    IntakePdfInput,
    InvoicePdfInput,
    PdfPatient,
    categorize_answers,
    clinical_answers,
    format_iso_date,
    format_money,
    generate_intake_pdf,
    generate_invoice_pdf,
)

ANSWERS = [
    {"label": "Do you have diabetes?", "value": "No"},
    {"label": "Current GLP-1 dose", "value": "2.5mg"},
    {"label": "How often do you exercise?", "value": "Weekly"},
    {"label": "How did you hear about us?", "value": "Instagram"},
    {"label": "Favorite color", "value": "Blue"},
    {"label": "Would you like a personalized plan?", "value": "Yes"},
]


def test_format_helpers():
    assert format_money(1234, "usd") == "USD $12.34"
    assert format_iso_date("2025-01-02T15:04:00Z") == "Jan 02, 2025, 03:04 PM"
    assert format_iso_date("yesterday") == "yesterday"


def test_categorize_answers():
    buckets = categorize_answers(ANSWERS)
    assert [a["value"] for a in buckets["medical_history"]] == ["No"]
    assert [a["value"] for a in buckets["glp1_usage"]] == ["2.5mg"]
    assert [a["value"] for a in buckets["lifestyle"]] == ["Weekly"]
    assert [a["value"] for a in buckets["referral"]] == ["Instagram"]
    assert "Blue" in [a["value"] for a in buckets["other"]]
    assert [a["value"] for a in clinical_answers(ANSWERS)] == ["2.5mg", "Yes"]


def test_generate_intake_pdf():
    pdf = generate_intake_pdf(IntakePdfInput(
        intake_id="hf-1",
        patient=PdfPatient(first_name="Jane", last_name="Doe", email="jane@example.com",
                           address_line1="1 Main St", city="Tampa", state="FL", zip_code="33601"),
        answers=ANSWERS,
        submitted_at_iso="2025-01-02T15:04:00Z",
        ip_address="203.0.113.9",
        consents=IntakeConsents(terms_and_conditions=True, florida_consent=True),
    ))
    assert pdf.startswith(b"%PDF")
    assert len(pdf) > 1000


def test_generate_intake_pdf_with_no_answers():
    pdf = generate_intake_pdf(IntakePdfInput(intake_id="hf-2", patient=PdfPatient()))
    assert pdf.startswith(b"%PDF")


def test_generate_invoice_pdf():
    pdf = generate_invoice_pdf(InvoicePdfInput(
        payment_intent_id="pi_1",
        amount=24899,
        paid_at_iso="2025-01-02T15:04:00+00:00",
        patient_name="Jane Doe",
        medication="Tirzepatide",
        plan="Monthly Recurring",
        addons=["Nausea Relief Prescription"],
        expedited_shipping=True,
        shipping_address={"line1": "1 Main St", "city": "Tampa", "state": "FL", "zip": "33601"},
    ))
    assert pdf.startswith(b"%PDF")
