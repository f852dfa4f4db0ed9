import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from .base import BaseReceiver

class EmailReceiver(BaseReceiver):
    def __init__(self, smtp_server, smtp_port, smtp_user, smtp_pass, sender, recipients: list):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.sender = sender
        self.recipients = recipients

    def build_message(self, subject: str, description: str, metadata: dict) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg['From'] = self.sender
        msg['To'] = ", ".join(self.recipients)
        severity = metadata.get('severity', 'WARNING')
        msg['Subject'] = f"[SQL Perfmon {severity}] {subject}"

        body = (
            f"SQL Server Performance Monitor\n"
            f"==============================\n"
            f"Server: {metadata.get('server', 'Unknown')}\n"
            f"Severity: {severity}\n"
            f"Area: {metadata.get('problem_area', '')}\n"
            f"Source: {metadata.get('source_collector', '')}\n"
            f"------------------------------\n\n"
            f"{description}\n"
        )
        investigate = metadata.get('investigate_query')
        if investigate:
            body += f"\nInvestigate with:\n{investigate}\n"
        msg.attach(MIMEText(body, 'plain'))
        return msg

    def send(self, subject: str, description: str, metadata: dict) -> bool:
        if not all([self.smtp_server, self.recipients]):
            logging.warning("Email configuration incomplete (missing server or recipients). Skipping.")
            return False

        msg = self.build_message(subject, description, metadata)
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
                server.starttls()
                if self.smtp_user and self.smtp_pass:
                    server.login(self.smtp_user, self.smtp_pass)
                server.send_message(msg)

            logging.info(f"Email alert sent to {len(self.recipients)} recipients: {', '.join(self.recipients)}")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logging.error(f"Failed to send Email alert: {e}")
            return False
