import html
import requests
import logging
from .base import BaseReceiver

SEVERITY_ICONS = {'CRITICAL': '🔥', 'WARNING': '⚠️', 'INFO': 'ℹ️'}

class TelegramReceiver(BaseReceiver):
    def __init__(self, bot_token: str, chat_id: str):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"

    def format_message(self, subject: str, description: str, metadata: dict) -> str:
        severity = metadata.get('severity', 'WARNING')
        icon = SEVERITY_ICONS.get(severity, '⚠️')
        return (
            f"{icon} <b>{html.escape(subject)}</b>\n"
            f"──────────────────\n"
            f"🖥️ <b>Server:</b> {html.escape(str(metadata.get('server', 'Unknown')))}\n"
            f"📌 <b>Severity:</b> {severity}\n"
            f"🧭 <b>Area:</b> {html.escape(str(metadata.get('problem_area', '')))}\n\n"
            f"📝 {html.escape(description)}"
        )

    def send(self, subject: str, description: str, metadata: dict) -> bool:
        if not self.bot_token or not self.chat_id:
            logging.warning("Telegram configuration missing. Skipping.")
            return False

        payload = {
            "chat_id": self.chat_id,
            "text": self.format_message(subject, description, metadata),
            "parse_mode": "HTML"
        }

        try:
            response = requests.post(self.api_url, json=payload, timeout=10)
            response.raise_for_status()
            logging.info(f"Telegram alert sent for {metadata.get('server')}")
            return True
        except requests.RequestException as e:
            logging.error(f"Failed to send Telegram alert: {e}")
            return False
