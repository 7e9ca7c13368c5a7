"""Shared pytest fixtures for the fulfillment backend tests."""

import io
import sys
from pathlib import Path

import pytest
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

# Ensure the backend/ modules are importable from any working directory
BACKEND_DIR = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from form_fulfillment import FulfillmentService, Settings  # noqa: E402
from form_fulfillment.jobs import JobStore  # noqa: E402
from form_fulfillment.pdf_utils import output_filename  # noqa: E402


def make_pdf(path: Path, text: str, pages: int = 1) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    c = canvas.Canvas(str(path), pagesize=A4)
    for i in range(pages):
        c.drawString(72, 720, f"{text} page {i + 1}")
        c.showPage()
    c.save()
    return path


def png_bytes(size: int = 120) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), "black").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def template_pdf(tmp_path):
    return make_pdf(tmp_path / "template.pdf", "Application Form")


@pytest.fixture
def settings(tmp_path, template_pdf):
    return Settings(
        webhook_api_key="test-key",
        template_path=template_pdf,
        data_dir=tmp_path / "data",
        email_subject="Your application forms",
        email_body="Hi, call {{SCHOLARSHIP_APPLICANTS_CHAMPION}} on {{phoneNumber}}.",
    )


class FakeUploader:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.uploads = []

    def upload(self, file_path, file_name):
        self.uploads.append((str(file_path), file_name))
        if file_name in self.fail_for:
            return None
        return f"https://files.example.com/{file_name}"


class FakeTracker:
    def __init__(self):
        self.updates = []

    def update_record(self, record_id, link):
        self.updates.append((record_id, link))
        return bool(record_id)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def send(self, recipient, pdf_path, csv_path, phone_number):
        # Snapshot the files: the batch work directory is removed afterwards.
        self.sent.append({
            "recipient": recipient,
            "pdf_path": Path(pdf_path),
            "pdf_bytes": Path(pdf_path).read_bytes(),
            "csv_text": Path(csv_path).read_text(encoding="utf-8"),
            "phone_number": phone_number,
        })
        return True


def fake_stamp(fail_serials=()):
    """Stamper that writes a one-page PDF labelled with the serial number."""
    calls = []

    def stamp(serial_number, qr_code_url, template_path, output_dir, prefix="Hatua_Application_"):
        calls.append(serial_number)
        if str(serial_number) in {str(s) for s in fail_serials}:
            return None
        return make_pdf(Path(output_dir) / output_filename(serial_number, prefix), f"SERIAL-{serial_number}")

    stamp.calls = calls
    return stamp


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def service(settings, uploader, tracker, notifier):
    return FulfillmentService(
        settings,
        uploader=uploader,
        tracker=tracker,
        notifier=notifier,
        jobs=JobStore(settings.jobs_dir),
        stamp=fake_stamp(),
    )
