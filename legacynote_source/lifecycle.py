"""Rules every create/update/delete path goes through.

A note is Pending until its delivery instant, Due once the instant has passed
and Delivered(at) after the scheduler sent it. Only the delivery timestamp is
stored, the state is computed here so the delivered flag and the delivered
timestamp can never disagree.

Nothing in this module touches the database or the request, the functions work
on any object with the Note attributes.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from errors import MutationRejected, ValidationError
import re

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

def utcnow():
    # SQLite does not keep tzinfo, every timestamp in the database is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)

@dataclass(frozen=True)
class Pending:
    delivery_date: datetime
    name = 'PENDING'

@dataclass(frozen=True)
class Due:
    delivery_date: datetime
    name = 'DUE'

@dataclass(frozen=True)
class Delivered:
    at: datetime
    name = 'DELIVERED'

def truncate_to_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)

def delivery_instant(note) -> datetime:
    # Without exact time delivery a note is due from the start of its delivery minute
    if note.exact_time_delivery:
        return note.delivery_date
    return truncate_to_minute(note.delivery_date)

def is_due(note, now: datetime) -> bool:
    return note.delivered_at is None and delivery_instant(note) <= now

def due_before(now: datetime):
    """Return (exact_cutoff, minute_cutoff) for selecting due notes in a query.

    Exact notes are due when delivery_date <= exact_cutoff, the others when
    delivery_date < minute_cutoff."""
    return now, truncate_to_minute(now) + timedelta(minutes=1)

def delivery_state(note, now: datetime):
    if note.delivered_at is not None:
        return Delivered(note.delivered_at)
    if delivery_instant(note) <= now:
        return Due(note.delivery_date)
    return Pending(note.delivery_date)

def can_mutate(note, now: datetime) -> bool:
    return mutation_rejection_reason(note, now) is None

def mutation_rejection_reason(note, now: datetime):
    if note.delivered_at is not None:
        return MutationRejected.ALREADY_DELIVERED
    # Past due but not picked up by the scheduler yet, the note is being processed
    if now > delivery_instant(note):
        return MutationRejected.PAST_DUE
    return None

def ensure_mutable(note, now: datetime):
    reason = mutation_rejection_reason(note, now)
    if reason is not None:
        raise MutationRejected(reason)

def normalize_visibility(note):
    if note.recipients:
        note.is_public = True
    return note

def normalize_recipients(payload: dict) -> list:
    """Read recipients from a request body.

    Accepts the current `recipients` list as well as the older single
    `recipient` object, and always returns a list of {'name', 'email'} dicts
    with duplicate emails removed."""
    recipients = payload.get('recipients')
    if recipients is None:
        legacy = payload.get('recipient')
        recipients = [legacy] if legacy else []
    if not isinstance(recipients, list):
        raise ValidationError('recipients', 'must be a list')

    normalized = []
    seen = set()
    for recipient in recipients:
        if not isinstance(recipient, dict):
            raise ValidationError('recipients', 'each recipient must be an object')
        email = recipient.get('email') or ''
        name = recipient.get('name') or ''
        if not isinstance(email, str) or not isinstance(name, str):
            raise ValidationError('recipients', 'name and email must be text')
        email, name = email.strip(), name.strip()
        # The old form sent an empty recipient object for self messages
        if not email and not name:
            continue
        if not EMAIL_RE.match(email):
            raise ValidationError('recipients', f'{email or "missing email"} is not a valid email address')
        if email.lower() in seen:
            continue
        seen.add(email.lower())
        normalized.append({'name': name or None, 'email': email})
    return normalized
