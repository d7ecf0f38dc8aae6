"""Shared fixtures for qualify-core tests."""

from io import BytesIO

import pytest
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

PAY_STUB_TEXT = """ACME CORP EARNINGS STATEMENT
Employee Name: Jane Q Doe
Company: Acme Corp
Pay Period Start: 03/02/2024
Pay Period End: 03/15/2024
Pay Date: 03/20/2024
Pay Frequency: Biweekly
Gross Pay: $2,000.00
Net Pay: $1,540.25
YTD Gross: $12,000.00
"""

W2_TEXT = """Form W-2 Wage and Tax Statement 2023
Employer's name, address: Acme Corp
Employer identification number 12-3456789
Wages, tips, other compensation: 60,000.00
Federal income tax withheld: 7,200.00
"""


def render_pdf(text: str) -> bytes:
    """Single-page PDF with one text line per input line."""
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=letter)
    y = 720
    for line in text.splitlines():
        pdf.drawString(72, y, line)
        y -= 16
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


@pytest.fixture
def pay_stub_text() -> str:
    return PAY_STUB_TEXT


@pytest.fixture
def w2_text() -> str:
    return W2_TEXT


@pytest.fixture
def pay_stub_pdf() -> bytes:
    return render_pdf(PAY_STUB_TEXT)
