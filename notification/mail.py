import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage

from common import config


class MailDeliveryError(Exception):
    pass


class MailTransport(ABC):

    @abstractmethod
    async def send(self, to: str, subject: str, body: str):
        """Deliver one message or raise ``MailDeliveryError``."""


class LoggingMailTransport(MailTransport):
    """Development transport: writes the message to the log instead of sending it."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)

    async def send(self, to: str, subject: str, body: str):
        self.logger.info(f"[EMAIL] To: {to} | Subject: {subject}")
        self.logger.debug(f"[EMAIL BODY] {body}")


class SMTPMailTransport(MailTransport):

    def __init__(self, host: str, port: int, from_addr: str, username: str = None, password: str = None,
                 starttls: bool = False, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.from_addr = from_addr
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.from_addr
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body, charset="utf-8")
        return message

    def _send_blocking(self, message: EmailMessage):
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send(self, to: str, subject: str, body: str):
        message = self.build_message(to, subject, body)
        try:
            await asyncio.to_thread(self._send_blocking, message)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"failed to deliver mail to {to}: {e}") from e


def create_transport(logger=None) -> MailTransport:
    if config.MAIL_TRANSPORT == "smtp":
        return SMTPMailTransport(
            config.SMTP_HOST,
            config.SMTP_PORT,
            config.MAIL_FROM,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            starttls=config.SMTP_STARTTLS,
        )
    return LoggingMailTransport(logger)
