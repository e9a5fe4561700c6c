"""SMTP client used for delivery and confirmation emails.

Every failure is turned into one of two errors so callers only have to decide
between "try again later" (DeliveryTransientError) and "this address will never
work" (DeliveryRejected).
"""
from email.message import EmailMessage
from errors import DeliveryTransientError, DeliveryRejected
from html import escape
import smtplib, ssl, logging

logger = logging.getLogger(__name__)

class MailSender:
    def __init__(self, host: str, port: int, username: str = None, password: str = None,
                 sender: str = None, use_ssl: bool = True, timeout: float = 10):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.use_ssl = use_ssl
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(host=config['MAIL_SERVER'], port=int(config['MAIL_PORT']),
                   username=config.get('MAIL_USERNAME'), password=config.get('MAIL_PASSWORD'),
                   sender=config.get('MAIL_SENDER'), use_ssl=config.get('MAIL_USE_SSL', True),
                   timeout=float(config.get('MAIL_TIMEOUT_SECONDS', 10)))

    def _connect(self):
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout,
                                    context=ssl.create_default_context())
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)

    def send(self, to: str, subject: str, html_body: str):
        message = EmailMessage()
        message['From'] = f'LegacyNote <{self.sender}>'
        message['To'] = to
        message['Subject'] = subject
        message.set_content('This message is best viewed in an HTML capable email client.')
        message.add_alternative(html_body, subtype='html')

        try:
            with self._connect() as smtp:
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as e:
            codes = [code for code, _ in e.recipients.values()]
            if codes and all(code >= 500 for code in codes):
                raise DeliveryRejected(f'Recipient {to} refused by the mail server: {codes}')
            raise DeliveryTransientError(f'Recipient {to} temporarily refused: {codes}')
        except (smtplib.SMTPException, OSError) as e:
            # OSError covers timeouts and refused connections
            raise DeliveryTransientError(f'Sending to {to} failed: {e}')
        logger.info('Email sent to %s', to)

def delivery_subject(note_title: str, sender_name: str, is_self_message: bool) -> str:
    if is_self_message:
        return f'Your scheduled message "{note_title}" has arrived'
    return f'A LegacyNote from {sender_name or "Someone"} has been delivered to you'

def render_delivery_email(note_title: str, sender_name: str, access_url: str, recipient_name: str = None) -> str:
    sender_name = escape(sender_name or 'Someone')
    greeting = f'Dear {escape(recipient_name)},' if recipient_name else 'Hello,'
    return f'''<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Your LegacyNote Has Arrived</title></head>
<body style="font-family: 'Segoe UI', Arial, sans-serif; color: #333333; max-width: 650px; margin: 0 auto;">
  <h1 style="text-align: center;">Your LegacyNote Has Arrived</h1>
  <p>{greeting}</p>
  <p>A special message from <strong>{sender_name}</strong> titled "<strong>{escape(note_title)}</strong>" has been delivered to you today.</p>
  <p style="text-align: center;"><a href="{escape(access_url, quote=True)}">View Your LegacyNote</a></p>
  <p>This secure link will take you directly to your note.</p>
</body>
</html>'''

def render_creation_confirmation(note_title: str, owner_name: str, delivery_date, recipients) -> str:
    if recipients:
        names = ', '.join(escape(r.name or r.email) for r in recipients)
        target = f'<p>This note will be delivered to <strong>{names}</strong> on the scheduled date.</p>'
    else:
        target = '<p>This note will be delivered to you on the scheduled date.</p>'
    return f'''<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Your LegacyNote Has Been Scheduled</title></head>
<body style="font-family: 'Segoe UI', Arial, sans-serif; color: #333333; max-width: 650px; margin: 0 auto;">
  <p>Dear {escape(owner_name or 'there')},</p>
  <p>Your LegacyNote titled "<strong>{escape(note_title)}</strong>" has been successfully created and scheduled for delivery.</p>
  <p>Scheduled delivery: <strong>{delivery_date.strftime('%Y-%m-%d %H:%M')} UTC</strong></p>
  {target}
</body>
</html>'''
