from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy.ext.hybrid import hybrid_property
from dataclasses import dataclass
from datetime import datetime
from lifecycle import utcnow
import uuid
import note_cipher

db = SQLAlchemy()

def new_note_id():
    return uuid.uuid4().hex

@dataclass
class User(db.Model, UserMixin):
    __tablename__ = 'user'
    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(256), nullable=False)
    email: str = db.Column(db.String(256), unique=True, nullable=False)
    password = db.Column(db.String(256), nullable=False)
    salt = db.Column(db.String(256), nullable=False)
    notes = db.relationship('Note', back_populates='owner', cascade='all, delete-orphan')
    def __repr__(self):
        return '<User %r>' % self.email

@dataclass
class NoteRecipient(db.Model):
    __tablename__ = 'note_recipient'
    id = db.Column(db.Integer, primary_key=True)
    note_id = db.Column(db.String(32), db.ForeignKey('note.id'), nullable=False)
    name: str = db.Column(db.String(256))
    email: str = db.Column(db.String(256), nullable=False)
    # Set once the delivery email went out, or once the relay refused the address for good
    notified_at: datetime = db.Column(db.DateTime)
    failed_at: datetime = db.Column(db.DateTime)
    last_error = db.Column(db.String(512))
    note = db.relationship('Note', back_populates='recipients')

    @property
    def is_resolved(self):
        return self.notified_at is not None or self.failed_at is not None

    def __repr__(self):
        return '<NoteRecipient %r>' % self.email

@dataclass
class MediaFile(db.Model):
    __tablename__ = 'media_file'
    id = db.Column(db.Integer, primary_key=True)
    note_id = db.Column(db.String(32), db.ForeignKey('note.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    file_name: str = db.Column(db.String(256), nullable=False)
    file_path: str = db.Column(db.String(1024), nullable=False) # Local path or storage URL
    file_type: str = db.Column(db.String(128))
    file_size: int = db.Column(db.Integer)
    note = db.relationship('Note', back_populates='media_files')
    def __repr__(self):
        return '<MediaFile %r>' % self.file_name

@dataclass
class Note(db.Model):
    __tablename__ = 'note'
    id: str = db.Column(db.String(32), primary_key=True, default=new_note_id)
    owner_id: int = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title: str = db.Column(db.String(100), nullable=False)
    encrypted_content = db.Column(db.Text, nullable=False)
    delivery_date: datetime = db.Column(db.DateTime, nullable=False, index=True)
    delivery_timezone: str = db.Column(db.String(64), nullable=False, default='UTC')
    exact_time_delivery: bool = db.Column(db.Boolean, nullable=False, default=True)
    # The only delivery field that is stored, is_delivered is derived from it
    delivered_at: datetime = db.Column(db.DateTime, index=True)
    is_public: bool = db.Column(db.Boolean, nullable=False, default=False)
    is_self_message: bool = db.Column(db.Boolean, nullable=False, default=False)
    shareable_link: str = db.Column(db.String(512))
    access_key = db.Column(db.String(128))
    # Held by a scheduler process while it is sending the note
    claim_token = db.Column(db.String(32))
    claimed_at = db.Column(db.DateTime)
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    owner = db.relationship('User', back_populates='notes')
    recipients = db.relationship('NoteRecipient', back_populates='note', cascade='all, delete-orphan',
                                 order_by='NoteRecipient.id')
    media_files = db.relationship('MediaFile', back_populates='note', cascade='all, delete-orphan',
                                  order_by='MediaFile.position')

    @hybrid_property
    def is_delivered(self):
        return self.delivered_at is not None

    @is_delivered.expression
    def is_delivered(cls):
        return cls.delivered_at.isnot(None)

    def set_content(self, content: str, key):
        # The previous ciphertext is simply overwritten, plaintext is never stored
        self.encrypted_content = note_cipher.encrypt(content, key)

    def decrypt_content(self, key) -> str:
        return note_cipher.decrypt(self.encrypted_content, key)

    def __repr__(self):
        return '<Note %r>' % self.id
