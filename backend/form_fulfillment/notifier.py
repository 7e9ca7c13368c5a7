"""
Applicant notification emails.

The body comes from a configured template with ``{{TOKEN}}`` placeholders;
the merged application PDF and the summary CSV go along as attachments.
"""

from __future__ import annotations

import logging
import mimetypes
import smtplib
import time
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


def render_body(template: str, values: Dict[str, str]) -> str:
    body = template or ""
    for token, value in values.items():
        body = body.replace("{{" + token + "}}", "" if value is None else str(value))
    return body


class Notifier:
    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        username: str,
        password: str,
        subject: str,
        body_template: str,
        sender_name: str = "",
        sender_team: str = "",
        applicants_champion: str = "",
        applicants_label: str = "",
        email_domain: str = "localhost",
        use_tls: bool = True,
        timeout: int = 30,
        smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.subject = subject
        self.body_template = body_template
        self.sender_name = sender_name
        self.sender_team = sender_team
        self.applicants_champion = applicants_champion
        self.applicants_label = applicants_label
        self.email_domain = email_domain
        self.use_tls = use_tls
        self.timeout = timeout
        self.smtp_factory = smtp_factory or smtplib.SMTP

    def render(self, phone_number: str) -> str:
        return render_body(self.body_template, {
            "SCHOLARSHIP_APPLICANTS_CHAMPION": self.applicants_champion,
            "phoneNumber": phone_number,
            "SCHOLARSHIP_APPLICANTS": self.applicants_label,
            "SENDER_NAME": self.sender_name,
            "SENDER_TEAM": self.sender_team,
        })

    def build_message(self, recipient: str, pdf_path, csv_path, phone_number: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = f'"{self.sender_name}" <{self.username}>'
        msg["To"] = recipient
        msg["Subject"] = self.subject
        msg["Message-ID"] = make_msgid(domain=self.email_domain)
        msg["X-Entity-Ref-ID"] = str(int(time.time() * 1000))
        msg.set_content(self.render(phone_number))

        for path in (Path(pdf_path), Path(csv_path)):
            ctype, _ = mimetypes.guess_type(path.name)
            maintype, subtype = (ctype or "application/octet-stream").split("/", 1)
            msg.add_attachment(path.read_bytes(), maintype=maintype, subtype=subtype, filename=path.name)
        return msg

    def send(self, recipient: str, pdf_path, csv_path, phone_number: str) -> bool:
        """Send the applicant their documents. Failures are logged, never raised."""
        try:
            msg = self.build_message(recipient, pdf_path, csv_path, phone_number)
            with self.smtp_factory(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                refused = server.send_message(msg)
        except smtplib.SMTPAuthenticationError:
            logger.exception("SMTP auth failed for %s", self.username)
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email to %s: %s", recipient, exc, exc_info=True)
            return False
        except Exception as exc:
            logger.error("Unexpected error emailing %s: %s", recipient, exc, exc_info=True)
            return False

        if refused:
            logger.warning("Email to %s was rejected: %s", recipient, refused)
            return False
        logger.info("Email sent successfully to %s", recipient)
        return True
