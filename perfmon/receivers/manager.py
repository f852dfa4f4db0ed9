import logging
from typing import List
from .base import BaseReceiver
from .telegram import TelegramReceiver
from .email import EmailReceiver
from ..core.config import settings


class AlertManager:
    def __init__(self, cfg=settings, receivers: List[BaseReceiver] = None):
        self.server = cfg.SQLSERVER_SERVER
        if receivers is not None:
            self.receivers = list(receivers)
            return

        self.receivers: List[BaseReceiver] = []
        logging.info(f"Checking Telegram: ENABLED={cfg.TELEGRAM_ENABLED}")
        if cfg.TELEGRAM_ENABLED:
            self.receivers.append(TelegramReceiver(
                bot_token=cfg.TELEGRAM_BOT_TOKEN,
                chat_id=cfg.TELEGRAM_CHAT_ID
            ))
            logging.info("Telegram receiver enabled.")

        logging.info(f"Checking Email: ENABLED={cfg.EMAIL_ENABLED}")
        if cfg.EMAIL_ENABLED:
            self.receivers.append(EmailReceiver(
                smtp_server=cfg.SMTP_SERVER,
                smtp_port=cfg.SMTP_PORT,
                smtp_user=cfg.SMTP_AUTH_USERNAME,
                smtp_pass=cfg.SMTP_AUTH_PASSWORD,
                sender=cfg.SMTP_FROM,
                recipients=cfg.EMAIL_RECIPIENTS
            ))
            logging.info("Email receiver enabled.")

    def broadcast(self, subject: str, description: str, metadata: dict) -> bool:
        if not self.receivers:
            logging.debug("No alert receivers enabled, skipping broadcast")
            return False

        any_success = False
        for receiver in self.receivers:
            receiver_name = receiver.__class__.__name__
            try:
                success = receiver.send(subject, description, metadata)
                if success:
                    any_success = True
                    logging.info(f"Broadcast to {receiver_name} succeeded.")
                else:
                    logging.warning(f"Broadcast to {receiver_name} failed.")
            except Exception as e:
                # a broken receiver must not stop the others
                logging.error(f"Broadcast to {receiver_name} crashed: {e}")

        return any_success

    def notify_issues(self, issues) -> int:
        """Broadcast each newly logged critical issue; returns how many reached a receiver."""
        delivered = 0
        for issue in issues:
            metadata = {
                'server': self.server,
                'severity': issue.severity,
                'problem_area': issue.problem_area,
                'source_collector': issue.source_collector,
                'investigate_query': issue.investigate_query,
            }
            if self.broadcast(issue.problem_area, issue.message, metadata):
                delivered += 1
        return delivered
