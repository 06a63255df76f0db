# tenderly/services/pdf_service.py
from io import BytesIO
from typing import Any, Dict, List, Optional
import logging

import bleach
from xhtml2pdf import pisa

logger = logging.getLogger(__name__)


class PDFRenderError(Exception):
    pass


def _text(value: Any) -> str:
    """Escape user-supplied text; no markup survives."""
    if value is None:
        return ""
    return bleach.clean(str(value), tags=set(), strip=True)


def _items(values: Optional[List[Any]]) -> str:
    if not values:
        return "<p>None</p>"
    rows = []
    for v in values:
        if isinstance(v, dict):
            v = v.get("name") or v.get("text") or ""
        rows.append(f"<li>{_text(v)}</li>")
    return "<ul>" + "".join(rows) + "</ul>"


def _medication_rows(medications: List[Dict[str, Any]]) -> str:
    rows = []
    for i, med in enumerate(medications, start=1):
        rows.append(
            "<tr>"
            f"<td>{i}</td>"
            f"<td>{_text(med.get('name'))}</td>"
            f"<td>{_text(med.get('dosage'))}</td>"
            f"<td>{_text(med.get('frequency'))}</td>"
            f"<td>{_text(med.get('duration'))}</td>"
            f"<td>{_text(med.get('instructions'))}</td>"
            "</tr>"
        )
    return "".join(rows)


STYLE = """
@page { size: a4 portrait; margin: 1.5cm; }
body { font-family: Helvetica; font-size: 10pt; color: #222; }
h1 { font-size: 16pt; margin-bottom: 2px; }
h2 { font-size: 11pt; border-bottom: 1px solid #999; margin-top: 14px; }
table { width: 100%; border-collapse: collapse; }
th, td { border: 1px solid #bbb; padding: 4px; text-align: left; }
.watermark { color: #c0392b; font-size: 28pt; text-align: center; }
.signature { margin-top: 20px; font-size: 8pt; color: #555; }
"""


def build_prescription_html(document: Dict[str, Any], draft: bool = False,
                            signature: Optional[Dict[str, Any]] = None) -> str:
    diagnosis = document.get("diagnosis") or {}
    follow_up = document.get("followUp") or {}
    parts = [
        f"<html><head><style>{STYLE}</style></head><body>",
        '<div class="watermark">DRAFT - NOT VALID FOR DISPENSING</div>' if draft else "",
        "<h1>Prescription</h1>",
        f"<p>Consultation: {_text(document.get('consultationId'))}<br/>",
        f"Patient: {_text(document.get('patientName'))} (ID {_text(document.get('patientId'))})<br/>",
        f"Doctor: {_text(document.get('doctorName'))} (ID {_text(document.get('doctorId'))})<br/>",
        f"Date: {_text(document.get('date'))}</p>",
        "<h2>Diagnosis</h2>",
        f"<p>{_text(diagnosis.get('primaryDiagnosis'))}</p>",
        _items(diagnosis.get("differentialDiagnosis")),
        "<h2>Medications</h2>",
        "<table><tr><th>#</th><th>Medicine</th><th>Dosage</th><th>Frequency</th>"
        "<th>Duration</th><th>Instructions</th></tr>",
        _medication_rows(document.get("medications") or []),
        "</table>",
        "<h2>Investigations</h2>",
        _items(document.get("investigations")),
        "<h2>Advice</h2>",
        _items(document.get("lifestyleAdvice")),
    ]
    if follow_up:
        parts.append(f"<h2>Follow-up</h2><p>{_text(follow_up.get('timeline') or follow_up.get('date'))} "
                     f"{_text(follow_up.get('instructions'))}</p>")
    if document.get("additionalNotes"):
        parts.append(f"<h2>Notes</h2><p>{_text(document['additionalNotes'])}</p>")
    if signature:
        parts.append(
            '<div class="signature">Digitally signed '
            f"({_text(signature.get('algorithm'))}, certificate {_text(signature.get('certificateId'))}) "
            f"at {_text(signature.get('signedAt'))}<br/>"
            f"Signature: {_text(str(signature.get('signature', ''))[:64])}...</div>"
        )
    parts.append("</body></html>")
    return "".join(parts)


def render_pdf(html: str) -> bytes:
    pdf_io = BytesIO()
    result = pisa.CreatePDF(src=html, dest=pdf_io)
    if result.err:
        logger.error(f"PDF rendering failed with {result.err} errors")
        raise PDFRenderError("Could not render prescription PDF")
    return pdf_io.getvalue()


def render_prescription_pdf(document: Dict[str, Any], draft: bool = False,
                            signature: Optional[Dict[str, Any]] = None) -> bytes:
    return render_pdf(build_prescription_html(document, draft=draft, signature=signature))
