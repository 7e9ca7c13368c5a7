"""
Low-level PDF utilities for stamping application forms.

A stamped form is the fixed template with the applicant's serial number and a
QR code drawn on the first page. The overlay is rendered with reportlab and
merged onto the template page with pypdf; merging several stamped forms back
into one document is plain page concatenation.
"""

from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

import requests
from pypdf import PdfReader, PdfWriter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "Hatua_Application_"

SERIAL_FONT = "Helvetica"
SERIAL_FONT_SIZE = 14
# Same text drawn at sub-point offsets; renders as faux bold on the form line.
SERIAL_POSITIONS = ((140, 554), (140.5, 554), (140, 553.5))

QR_POSITION = (500, 700)
QR_SCALE = 0.5
QR_TIMEOUT = 15

PathLike = Union[str, Path]


def output_filename(serial_number, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}{serial_number}.pdf"


def fetch_qr_image(url: str, timeout: int = QR_TIMEOUT) -> bytes:
    r = requests.get(url, timeout=timeout)
    r.raise_for_status()
    return r.content


def _render_overlay(page_width: float, page_height: float, serial_number, qr_bytes: bytes) -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=(page_width, page_height))

    c.setFillColorRGB(0, 0, 0)
    c.setFont(SERIAL_FONT, SERIAL_FONT_SIZE)
    for x, y in SERIAL_POSITIONS:
        c.drawString(x, y, f"{serial_number}")

    qr_image = ImageReader(io.BytesIO(qr_bytes))
    width, height = qr_image.getSize()
    c.drawImage(
        qr_image,
        QR_POSITION[0],
        QR_POSITION[1],
        width=width * QR_SCALE,
        height=height * QR_SCALE,
        mask="auto",
    )

    c.showPage()
    c.save()
    return buffer.getvalue()


def stamp_application(
    serial_number,
    qr_code_url: str,
    template_path: PathLike,
    output_dir: PathLike,
    prefix: str = DEFAULT_PREFIX,
) -> Optional[Path]:
    """
    Stamp one application form.

    Args:
        serial_number: Printed on the first page and used in the output filename.
        qr_code_url: URL of a PNG/JPEG QR code, fetched over HTTP.
        template_path: The blank application form.
        output_dir: Directory that receives ``<prefix><serial>.pdf``.

    Returns:
        Path of the written PDF, or None if anything failed. Callers treat None
        as "skip this record".
    """
    template_path = Path(template_path)
    try:
        logger.info("Loading PDF template %s for serial %s", template_path.name, serial_number)
        reader = PdfReader(str(template_path), strict=False)
        writer = PdfWriter(clone_from=reader)
        first_page = writer.pages[0]

        logger.info("Fetching QR code for serial %s", serial_number)
        qr_bytes = fetch_qr_image(qr_code_url)

        overlay_bytes = _render_overlay(
            float(first_page.mediabox.width),
            float(first_page.mediabox.height),
            serial_number,
            qr_bytes,
        )
        overlay_page = PdfReader(io.BytesIO(overlay_bytes)).pages[0]
        first_page.merge_page(overlay_page)

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / output_filename(serial_number, prefix)
        with output_path.open("wb") as f:
            writer.write(f)

        logger.info("Saved stamped form %s", output_path.name)
        return output_path

    except Exception as exc:
        logger.error("Error stamping form for serial %s: %s", serial_number, exc, exc_info=True)
        return None


def extract_serial_number(file_name: PathLike, prefix: str = DEFAULT_PREFIX) -> int:
    """Serial number encoded in a stamped form's filename; 0 if it doesn't match."""
    match = re.search(rf"{re.escape(prefix)}(\d+)\.pdf", Path(file_name).name)
    return int(match.group(1)) if match else 0


def sort_by_serial(pdf_paths: Iterable[PathLike], prefix: str = DEFAULT_PREFIX) -> List[Path]:
    return sorted((Path(p) for p in pdf_paths), key=lambda p: extract_serial_number(p, prefix))


def merge_pdfs(pdf_paths: Sequence[PathLike], output_path: PathLike, prefix: str = DEFAULT_PREFIX) -> Path:
    """Concatenate every page of `pdf_paths` in ascending serial order."""
    writer = PdfWriter()
    for pdf_path in sort_by_serial(pdf_paths, prefix):
        writer.append(str(pdf_path))

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("wb") as f:
        writer.write(f)
    return output_path
