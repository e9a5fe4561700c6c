import os, sys
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'legacynote_source'))

from faker import Faker
from datetime import timedelta
from server import create_app
from server_schema import db, User, Note, NoteRecipient
from errors import DeliveryTransientError, DeliveryRejected
import lifecycle, note_cipher

fake = Faker()

TEST_ENCRYPTION_KEY = note_cipher.generate_key()
FRONTEND_URL = 'http://legacynote.test'

class RecordingMailSender:
    """Stands in for the SMTP relay, remembering every attempt.

    Addresses in fail_for time out, addresses in reject_for are refused for good."""
    def __init__(self, fail_for=(), reject_for=()):
        self.fail_for = set(fail_for)
        self.reject_for = set(reject_for)
        self.attempts = []
        self.sent = []

    def send(self, to, subject, html_body):
        self.attempts.append(to)
        if to in self.fail_for:
            raise DeliveryTransientError(f'Timed out sending to {to}')
        if to in self.reject_for:
            raise DeliveryRejected(f'550 mailbox unavailable: {to}')
        self.sent.append({'to': to, 'subject': subject, 'html_body': html_body})

    def sent_to(self):
        return [message['to'] for message in self.sent]

def make_app(mail_sender=None, **overrides):
    config = {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SECRET_JWT_KEY': 'test-jwt-secret',
        'ENCRYPTION_KEY': TEST_ENCRYPTION_KEY,
        'FRONTEND_URL': FRONTEND_URL,
        'SCHEDULER_ENABLED': False,
    }
    config.update(overrides)
    return create_app(test_config=config, mail_sender=mail_sender or RecordingMailSender())

def add_user(name=None, email=None):
    user = User(name=name or fake.name(), email=email or fake.unique.email(), password='unused', salt='unused')
    db.session.add(user)
    db.session.commit()
    return user

def add_note(owner, delivery_date, recipients=(), content=None, title=None, exact_time_delivery=True,
             key=TEST_ENCRYPTION_KEY):
    note = Note(owner_id=owner.id, title=title or fake.sentence(nb_words=4)[:100],
                delivery_date=delivery_date, exact_time_delivery=exact_time_delivery)
    note.set_content(content or fake.paragraph(), key)
    note.recipients = [NoteRecipient(name=name, email=email) for name, email in recipients]
    lifecycle.normalize_visibility(note)
    db.session.add(note)
    db.session.commit()
    return note

def future(**delta):
    return lifecycle.utcnow() + timedelta(**(delta or {'days': 1}))

def past(**delta):
    return lifecycle.utcnow() - timedelta(**(delta or {'days': 1}))
