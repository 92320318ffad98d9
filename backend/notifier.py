import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText


class NotificationError(Exception):
    """A notification could not be handed to the transport."""


class EmailNotifier:
    """Lightweight SMTP sender configured from environment variables."""

    def __init__(self, host=None, port=587, user=None, password=None, from_addr=None, use_tls=True, timeout=30):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr or user
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_env(cls):
        return cls(
            host=os.environ.get('SMTP_HOST'),
            port=int(os.environ.get('SMTP_PORT', 587)),
            user=os.environ.get('SMTP_USER'),
            password=os.environ.get('SMTP_PASSWORD'),
            from_addr=os.environ.get('SMTP_FROM'),
            use_tls=os.environ.get('SMTP_STARTTLS', '1') == '1',
        )

    def _build_message(self, to_addr, subject, body, html_body=None):
        if html_body:
            msg = MIMEMultipart('alternative')
            msg.attach(MIMEText(body, 'plain'))
            msg.attach(MIMEText(html_body, 'html'))
        else:
            msg = MIMEText(body, 'plain')
        msg['Subject'] = subject
        msg['From'] = self.from_addr
        msg['To'] = to_addr
        return msg

    def send(self, to_addr, subject, body, html_body=None):
        if not self.host or not self.from_addr:
            raise NotificationError("SMTP host/from missing; email not sent")
        if not to_addr:
            raise NotificationError("No recipient address")

        msg = self._build_message(to_addr, subject, body, html_body=html_body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_addr, [to_addr], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP send failed: {e}") from e
        return True
