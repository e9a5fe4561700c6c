# Capability links for notes: whoever holds the access key can read the note once it is delivered
from dataclasses import dataclass
from datetime import datetime
from errors import LinkGenerationError
import secrets, hmac
import lifecycle

# 32 random bytes, 256 bits of entropy
ACCESS_KEY_BYTES = 32

@dataclass(frozen=True)
class ShareLink:
    access_key: str
    url: str

@dataclass(frozen=True)
class Allowed:
    pass

@dataclass(frozen=True)
class NotYetAvailable:
    delivery_date: datetime

@dataclass(frozen=True)
class Denied:
    reason: str = 'Access denied'

def build_url(base_url: str, note_id: str, access_key: str) -> str:
    if not base_url or not note_id:
        raise LinkGenerationError('A base URL and a saved note are required to build a share link')
    return f'{base_url.rstrip("/")}/shared-note/{note_id}/{access_key}'

def generate_link(note, base_url: str, regenerate: bool = False) -> ShareLink:
    # Keep the existing link unless a new one is explicitly requested,
    # a regenerated key silently invalidates the old link
    if note.access_key and note.shareable_link and not regenerate:
        note.is_public = True
        return ShareLink(note.access_key, note.shareable_link)

    access_key = secrets.token_urlsafe(ACCESS_KEY_BYTES)
    url = build_url(base_url, note.id, access_key)
    note.access_key = access_key
    note.shareable_link = url
    note.is_public = True
    return ShareLink(access_key, url)

def access_key_matches(note, access_key) -> bool:
    if not access_key or not note.access_key:
        return False
    return hmac.compare_digest(note.access_key.encode(), access_key.encode())

def is_recipient(note, email) -> bool:
    if not email:
        return False
    return any(recipient.email.lower() == email.lower() for recipient in note.recipients)

def check_access(note, access_key=None, requester_id=None, requester_email=None, now=None):
    is_owner = requester_id is not None and requester_id == note.owner_id
    recipient = is_recipient(note, requester_email)
    # A link only works while the note is public, and only with the current key.
    # is_public gates key holders, it never grants access on its own.
    link_holder = note.is_public and access_key_matches(note, access_key)

    if not (link_holder or is_owner or recipient):
        if note.is_public and access_key:
            return Denied('The access key provided is not valid')
        return Denied()

    if is_owner or recipient:
        return Allowed()

    if now is None:
        now = lifecycle.utcnow()
    if note.delivered_at is None and now < lifecycle.delivery_instant(note):
        return NotYetAvailable(note.delivery_date)
    return Allowed()
