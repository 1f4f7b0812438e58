import asyncio
import os
from datetime import datetime
from typing import Optional

import pdfkit
from jinja2 import Environment, FileSystemLoader, select_autoescape
from loguru import logger

from app.core.config import settings
from app.core.timeutils import utcnow
from app.models.leave import LeaveRequest
from app.models.marksheet import Marksheet

# -----------------------------
# Setup Jinja2 Environment
# -----------------------------
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
template_dir = os.path.join(BASE_DIR, 'templates', 'pdf')

pdf_env = Environment(
    loader=FileSystemLoader(template_dir),
    autoescape=select_autoescape(['html', 'xml'])
)

pdf_options = {
    'page-size': 'A4',
    'margin-top': '15mm',
    'margin-right': '15mm',
    'margin-bottom': '15mm',
    'margin-left': '15mm',
    'encoding': "UTF-8",
    'no-outline': None,
    'disable-smart-shrinking': None,
    'enable-local-file-access': None
}


def format_day(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y") if value else "-"


def exam_period(value: Optional[datetime]) -> str:
    return value.strftime("%B %Y") if value else ""


class DocumentRenderer:
    """
    HTML -> PDF through wkhtmltopdf.
    Returns None instead of raising when the binary is missing, so the
    WhatsApp pipeline can fall through to the URL path.
    """

    def __init__(self, wkhtmltopdf_path: Optional[str] = None):
        self.wkhtmltopdf_path = wkhtmltopdf_path or settings.WKHTMLTOPDF_PATH
        self._config = None

    @property
    def available(self) -> bool:
        return bool(self.wkhtmltopdf_path) and os.path.exists(self.wkhtmltopdf_path)

    def _configuration(self):
        if self._config is None:
            self._config = pdfkit.configuration(wkhtmltopdf=self.wkhtmltopdf_path)
        return self._config

    # -----------------------------
    # HTML
    # -----------------------------
    def leave_letter_html(self, leave: LeaveRequest) -> str:
        context = {
            "college_name": settings.COLLEGE_NAME,
            "sender_signature": settings.SENDER_SIGNATURE,
            "student": leave.student_snapshot,
            "start_date": format_day(leave.start_date),
            "end_date": format_day(leave.end_date),
            "reason": leave.reason,
            "approved_on": format_day(leave.approved_at or utcnow()),
            "hod_name": leave.hod_name,
            "hod_signature": leave.hod_signature,
            "reference": str(leave.id)[:8].upper(),
        }
        return pdf_env.get_template("leave_letter.html").render(context)

    def marksheet_html(self, marksheet: Marksheet) -> str:
        context = {
            "college_name": settings.COLLEGE_NAME,
            "sender_signature": settings.SENDER_SIGNATURE,
            "student": marksheet.student_snapshot,
            "examination_name": marksheet.examination_name,
            "exam_period": exam_period(marksheet.examination_date),
            "semester": marksheet.semester,
            "subjects": marksheet.subjects or [],
            "overall_result": marksheet.overall_result,
            "generated_on": format_day(utcnow()),
        }
        return pdf_env.get_template("marksheet.html").render(context)

    # -----------------------------
    # PDF
    # -----------------------------
    def _to_pdf(self, html: str) -> Optional[bytes]:
        if not self.available:
            logger.warning(f"wkhtmltopdf not found at {self.wkhtmltopdf_path}; skipping inline PDF")
            return None
        try:
            return pdfkit.from_string(html, False, options=pdf_options, configuration=self._configuration())
        except OSError as e:
            logger.error(f"PDF generation failed: {e}")
            return None

    async def render_leave_letter(self, leave: LeaveRequest) -> Optional[bytes]:
        html = self.leave_letter_html(leave)
        return await asyncio.to_thread(self._to_pdf, html)

    async def render_marksheet(self, marksheet: Marksheet) -> Optional[bytes]:
        html = self.marksheet_html(marksheet)
        return await asyncio.to_thread(self._to_pdf, html)
