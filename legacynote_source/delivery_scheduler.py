"""Background delivery of due notes.

Every DELIVERY_INTERVAL_SECONDS the scheduler looks for notes whose delivery
instant has passed and that are not delivered yet. Each note is first claimed
with a conditional UPDATE, so when several server processes run their own
scheduler only one of them sends a given note. The claim expires after
DELIVERY_CLAIM_LEASE_SECONDS in case the process holding it dies.

Recipients are tracked one by one. A recipient whose email went out is never
emailed again, a recipient the relay refused for good is marked failed, and
anyone left over is retried on the next cycle. The note is marked delivered
once every recipient is resolved.
"""
from apscheduler.schedulers.background import BackgroundScheduler
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from sqlalchemy import and_, or_
from server_schema import db, Note
from errors import DecryptionError, DeliveryRejected, LinkGenerationError
import uuid, logging, signal, sys, threading
import lifecycle, mailer, share_link

logger = logging.getLogger(__name__)

JOB_ID = 'deliver_due_notes'

def exit_on_sigterm(signum, frame):
    # A normal exit runs the atexit hooks, which let the current cycle finish
    sys.exit(0)

def install_sigterm_handler():
    # Signal handlers can only be set from the main thread, and a server that set its own keeps it
    if threading.current_thread() is not threading.main_thread():
        return False
    if signal.getsignal(signal.SIGTERM) is not signal.SIG_DFL:
        return False
    signal.signal(signal.SIGTERM, exit_on_sigterm)
    return True

@dataclass
class CycleResult:
    started_at: datetime
    found: int = 0
    delivered: list = field(default_factory=list)
    retrying: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

class DeliveryScheduler:
    def __init__(self, app, mail_sender, interval_seconds: int = 60, claim_lease_seconds: int = 600):
        self.app = app
        self.mail_sender = mail_sender
        self.interval_seconds = interval_seconds
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self._scheduler = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        if self.running:
            return
        self._scheduler = BackgroundScheduler(timezone=timezone.utc)
        # One cycle at a time, missed runs collapse into a single one
        self._scheduler.add_job(func=self._run_job, trigger='interval', seconds=self.interval_seconds,
                                id=JOB_ID, max_instances=1, coalesce=True,
                                next_run_time=datetime.now(timezone.utc))
        self._scheduler.start()
        install_sigterm_handler()
        logger.info('Note delivery scheduler started, checking every %s seconds', self.interval_seconds)

    def stop(self, wait: bool = True):
        # With wait=True the cycle in progress finishes before we return
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info('Note delivery scheduler stopped')

    def _run_job(self):
        with self.app.app_context():
            try:
                self.run_cycle()
            except Exception:
                db.session.rollback()
                logger.exception('Note delivery cycle failed')

    def find_due_note_ids(self, now: datetime) -> list:
        exact_cutoff, minute_cutoff = lifecycle.due_before(now)
        rows = db.session.query(Note.id).filter(
            Note.delivered_at.is_(None),
            or_(and_(Note.exact_time_delivery.is_(True), Note.delivery_date <= exact_cutoff),
                and_(Note.exact_time_delivery.is_(False), Note.delivery_date < minute_cutoff)),
        ).all()
        return [row.id for row in rows]

    def run_cycle(self, now: datetime = None) -> CycleResult:
        if now is None:
            now = lifecycle.utcnow()
        result = CycleResult(started_at=now)
        note_ids = self.find_due_note_ids(now)
        result.found = len(note_ids)
        logger.info('Found %d notes to deliver', result.found)

        for note_id in note_ids:
            try:
                delivered = self.deliver_note(note_id, now)
            except Exception:
                # One broken note must not stop the others, deliver_note already released its own claim
                db.session.rollback()
                logger.exception('Error processing note %s', note_id)
                result.retrying.append(note_id)
                continue
            if delivered is None:
                result.skipped.append(note_id)
            elif delivered:
                result.delivered.append(note_id)
            else:
                result.retrying.append(note_id)

        logger.info('Delivery cycle done: %d delivered, %d retrying, %d skipped',
                    len(result.delivered), len(result.retrying), len(result.skipped))
        return result

    def claim(self, note_id: str, now: datetime):
        token = uuid.uuid4().hex
        stale_before = now - self.claim_lease
        claimed = db.session.query(Note).filter(
            Note.id == note_id,
            Note.delivered_at.is_(None),
            or_(Note.claimed_at.is_(None), Note.claimed_at < stale_before),
        ).update({Note.claim_token: token, Note.claimed_at: now}, synchronize_session=False)
        db.session.commit()
        return token if claimed == 1 else None

    def release_claim(self, note_id: str, token: str):
        db.session.query(Note).filter(Note.id == note_id, Note.claim_token == token).update(
            {Note.claim_token: None, Note.claimed_at: None}, synchronize_session=False)
        db.session.commit()

    def release_claim_quietly(self, note_id: str, token: str):
        # Used after an unexpected error, the lease takes over if even this fails
        try:
            self.release_claim(note_id, token)
        except Exception:
            db.session.rollback()
            logger.exception('Could not release the claim on note %s', note_id)

    def mark_delivered(self, note_id: str, token: str, now: datetime) -> bool:
        updated = db.session.query(Note).filter(
            Note.id == note_id, Note.claim_token == token, Note.delivered_at.is_(None),
        ).update({Note.delivered_at: now, Note.claim_token: None, Note.claimed_at: None},
                 synchronize_session=False)
        db.session.commit()
        return updated == 1

    def deliver_note(self, note_id: str, now: datetime):
        """Deliver one note.

        Returns True when the note was marked delivered, False when it stays due
        for the next cycle and None when another process holds it."""
        token = self.claim(note_id, now)
        if token is None:
            logger.info('Note %s is already claimed or delivered, skipping', note_id)
            return None

        try:
            return self._deliver_claimed(note_id, token, now)
        except Exception:
            db.session.rollback()
            # Only the claim we hold is released, never one taken over by another process
            self.release_claim_quietly(note_id, token)
            raise

    def _deliver_claimed(self, note_id: str, token: str, now: datetime):
        note = db.session.get(Note, note_id)
        config = self.app.config
        try:
            note.decrypt_content(config['ENCRYPTION_KEY'])
        except DecryptionError as e:
            logger.error('Could not decrypt note %s, will retry next cycle: %s', note_id, e)
            self.release_claim(note_id, token)
            return False

        if note.recipients:
            try:
                link = share_link.generate_link(note, config['FRONTEND_URL'])
            except LinkGenerationError as e:
                db.session.rollback()
                logger.error('Could not create a share link for note %s: %s', note_id, e)
                self.release_claim(note_id, token)
                return False
            db.session.commit()
            self.send_to_recipients(note, link.url, now)

        if any(not recipient.is_resolved for recipient in note.recipients):
            self.release_claim(note_id, token)
            logger.warning('Note %s has recipients left to notify, will retry next cycle', note_id)
            return False

        if not self.mark_delivered(note_id, token, now):
            logger.warning('Lost the claim on note %s before it could be marked delivered', note_id)
            return None
        logger.info('Note %s marked as delivered', note_id)
        return True

    def send_to_recipients(self, note, access_url: str, now: datetime):
        sender_name = note.owner.name if note.owner else None
        subject = mailer.delivery_subject(note.title, sender_name, note.is_self_message)
        note_id = note.id
        pending = [recipient for recipient in note.recipients if not recipient.is_resolved]
        # Every pending recipient gets an attempt, a failure for one does not stop the rest
        for recipient in pending:
            body = mailer.render_delivery_email(note.title, sender_name, access_url, recipient.name)
            try:
                self.mail_sender.send(recipient.email, subject, body)
            except DeliveryRejected as e:
                recipient.failed_at = now
                recipient.last_error = str(e)[:512]
                logger.error('Recipient %s of note %s was rejected: %s', recipient.email, note_id, e)
            except Exception as e:
                recipient.last_error = str(e)[:512]
                logger.warning('Sending note %s to %s failed, will retry: %s', note_id, recipient.email, e)
            else:
                recipient.notified_at = now
                recipient.last_error = None
                logger.info('Email sent to %s for note %s', recipient.email, note_id)
            # Record each send right away so a crash does not cause a second email
            db.session.commit()
