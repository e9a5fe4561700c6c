import unittest, signal
from unittest import mock
from datetime import datetime, timedelta
from helpers import fake, make_app, add_user, add_note, RecordingMailSender, FRONTEND_URL
from server_schema import db, Note
from delivery_scheduler import DeliveryScheduler
import delivery_scheduler, note_cipher

DELIVERY = datetime(2030, 1, 1, 10, 0, 0)

class SchedulerTestCase(unittest.TestCase):
    def setUp(self):
        self.mail_sender = RecordingMailSender()
        self.app = make_app(mail_sender=self.mail_sender)
        self.context = self.app.app_context()
        self.context.push()
        self.scheduler = self.app.extensions['legacynote']['scheduler']
        self.owner = add_user()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.context.pop()

    def reload(self, note_id):
        db.session.expire_all()
        return db.session.get(Note, note_id)

class DueSelectionTestCase(SchedulerTestCase):
    def test_1_exact_time_boundary(self):
        """Test if a note due at 10:00:00.000 is not picked up at 09:59:59.999 but is at 10:00:00.001"""

        note = add_note(self.owner, DELIVERY)

        result = self.scheduler.run_cycle(now=datetime(2030, 1, 1, 9, 59, 59, 999000))
        self.assertEqual(result.found, 0)
        self.assertFalse(self.reload(note.id).is_delivered)

        result = self.scheduler.run_cycle(now=datetime(2030, 1, 1, 10, 0, 0, 1000))
        self.assertEqual(result.delivered, [note.id])
        self.assertTrue(self.reload(note.id).is_delivered)

    def test_2_minute_precision(self):
        """Test if a note without exact time delivery is picked up from the start of its delivery minute"""

        note = add_note(self.owner, datetime(2030, 1, 1, 10, 0, 45), exact_time_delivery=False)

        self.assertEqual(self.scheduler.find_due_note_ids(datetime(2030, 1, 1, 9, 59, 59)), [])
        self.assertEqual(self.scheduler.find_due_note_ids(datetime(2030, 1, 1, 10, 0, 1)), [note.id])

    def test_3_delivered_notes_are_not_selected(self):
        """Test if a delivered note is never picked up again and keeps its delivery time"""

        note = add_note(self.owner, DELIVERY)
        self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=1))
        delivered_at = self.reload(note.id).delivered_at

        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(days=1))
        self.assertEqual(result.found, 0)
        note = self.reload(note.id)
        self.assertTrue(note.is_delivered)
        self.assertEqual(note.delivered_at, delivered_at)

class DeliveryTestCase(SchedulerTestCase):
    def test_1_note_without_recipients(self):
        """Test if a note without recipients is marked delivered without any email or share link"""

        note = add_note(self.owner, DELIVERY)
        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(minutes=1))

        self.assertEqual(result.delivered, [note.id])
        self.assertEqual(self.mail_sender.attempts, [])
        note = self.reload(note.id)
        self.assertEqual(note.delivered_at, DELIVERY + timedelta(minutes=1))
        self.assertIsNone(note.shareable_link)

    def test_2_two_recipients(self):
        """Test if a note with two recipients sends exactly two emails and is delivered once"""

        alice, bob = fake.unique.email(), fake.unique.email()
        note = add_note(self.owner, DELIVERY, recipients=[('Alice', alice), ('Bob', bob)])

        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=5))
        self.assertEqual(result.delivered, [note.id])
        self.assertEqual(sorted(self.mail_sender.sent_to()), sorted([alice, bob]))

        # Another cycle sends nothing more
        self.scheduler.run_cycle(now=DELIVERY + timedelta(minutes=5))
        self.assertEqual(len(self.mail_sender.sent), 2)

        note = self.reload(note.id)
        self.assertTrue(note.is_delivered)
        self.assertTrue(all(recipient.notified_at for recipient in note.recipients))

    def test_3_emails_carry_the_share_link(self):
        """Test if a share link is created on delivery and sent in every email"""

        note = add_note(self.owner, DELIVERY, recipients=[('Carol', fake.unique.email())])
        self.assertIsNone(note.shareable_link)
        self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=1))

        note = self.reload(note.id)
        self.assertTrue(note.shareable_link.startswith(f'{FRONTEND_URL}/shared-note/{note.id}/'))
        self.assertTrue(note.is_public)
        message = self.mail_sender.sent[0]
        self.assertIn(note.shareable_link, message['html_body'])
        self.assertIn(self.owner.name, message['subject'])

    def test_4_self_message_subject(self):
        """Test if a note scheduled to the owner's own address gets the self message subject"""

        note = add_note(self.owner, DELIVERY, recipients=[(self.owner.name, self.owner.email)])
        note.is_self_message = True
        db.session.commit()
        self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=1))
        self.assertIn('Your scheduled message', self.mail_sender.sent[0]['subject'])

class FailureTestCase(SchedulerTestCase):
    def test_1_partial_failure_retries_only_the_failed_recipient(self):
        """Test if a failed send for one recipient does not stop the other and only the failed one is retried"""

        alice, bob = fake.unique.email(), fake.unique.email()
        self.mail_sender.fail_for.add(alice)
        note = add_note(self.owner, DELIVERY, recipients=[('Alice', alice), ('Bob', bob)])

        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=1))
        self.assertEqual(result.retrying, [note.id])
        self.assertEqual(sorted(self.mail_sender.attempts), sorted([alice, bob]))
        self.assertEqual(self.mail_sender.sent_to(), [bob])

        note = self.reload(note.id)
        self.assertFalse(note.is_delivered)
        self.assertIsNone(note.delivered_at)
        self.assertIsNone(note.claim_token)

        # The relay is back, only Alice gets an email now
        self.mail_sender.fail_for.clear()
        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(minutes=1))
        self.assertEqual(result.delivered, [note.id])
        self.assertEqual(self.mail_sender.sent_to(), [bob, alice])
        self.assertTrue(self.reload(note.id).is_delivered)

    def test_2_rejected_recipient(self):
        """Test if a recipient refused for good is marked failed and the note is still delivered"""

        alice, bob = fake.unique.email(), fake.unique.email()
        self.mail_sender.reject_for.add(alice)
        note = add_note(self.owner, DELIVERY, recipients=[('Alice', alice), ('Bob', bob)])

        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=1))
        self.assertEqual(result.delivered, [note.id])

        note = self.reload(note.id)
        failed = [recipient for recipient in note.recipients if recipient.email == alice][0]
        self.assertIsNotNone(failed.failed_at)
        self.assertIsNone(failed.notified_at)
        self.assertIn('550', failed.last_error)

    def test_3_undecryptable_note_does_not_block_others(self):
        """Test if a note that can't be decrypted stays due while the other notes are delivered"""

        broken = add_note(self.owner, DELIVERY, recipients=[('Dan', fake.unique.email())],
                          key=note_cipher.generate_key())
        healthy = add_note(self.owner, DELIVERY)

        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=1))
        self.assertEqual(result.retrying, [broken.id])
        self.assertEqual(result.delivered, [healthy.id])
        self.assertEqual(self.mail_sender.attempts, [])

        broken = self.reload(broken.id)
        self.assertFalse(broken.is_delivered)
        self.assertIsNone(broken.claim_token)

        # Retried forever, there is no retry limit
        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(minutes=1))
        self.assertEqual(result.retrying, [broken.id])

    def test_4_unexpected_sender_errors_are_isolated(self):
        """Test if any exception from the mail sender is contained to its recipient"""

        class BrokenSender(RecordingMailSender):
            def send(self, to, subject, html_body):
                self.attempts.append(to)
                raise RuntimeError('relay exploded')

        self.scheduler.mail_sender = BrokenSender()
        note = add_note(self.owner, DELIVERY, recipients=[('Eve', fake.unique.email())])
        other = add_note(self.owner, DELIVERY)

        result = self.scheduler.run_cycle(now=DELIVERY + timedelta(seconds=1))
        self.assertEqual(result.retrying, [note.id])
        self.assertEqual(result.delivered, [other.id])

class ClaimTestCase(SchedulerTestCase):
    def test_1_only_one_scheduler_claims_a_note(self):
        """Test if a note claimed by one scheduler can't be claimed by another"""

        note = add_note(self.owner, DELIVERY)
        now = DELIVERY + timedelta(seconds=1)
        other = DeliveryScheduler(self.app, RecordingMailSender())

        token = self.scheduler.claim(note.id, now)
        self.assertIsNotNone(token)
        self.assertIsNone(other.claim(note.id, now))
        self.assertIsNone(other.deliver_note(note.id, now))
        self.assertFalse(self.reload(note.id).is_delivered)

        self.assertTrue(self.scheduler.mark_delivered(note.id, token, now))
        self.assertTrue(self.reload(note.id).is_delivered)

    def test_2_claims_expire(self):
        """Test if a claim left behind by a dead process expires after the lease"""

        note = add_note(self.owner, DELIVERY)
        now = DELIVERY + timedelta(seconds=1)
        self.assertIsNotNone(self.scheduler.claim(note.id, now))

        later = now + self.scheduler.claim_lease + timedelta(seconds=1)
        result = self.scheduler.run_cycle(now=later)
        self.assertEqual(result.delivered, [note.id])

    def test_3_stale_token_can_not_mark_delivered(self):
        """Test if a scheduler that lost its claim can't mark the note delivered"""

        note = add_note(self.owner, DELIVERY)
        now = DELIVERY + timedelta(seconds=1)
        stale_token = self.scheduler.claim(note.id, now)
        later = now + self.scheduler.claim_lease + timedelta(seconds=1)
        fresh_token = self.scheduler.claim(note.id, later)

        self.assertNotEqual(stale_token, fresh_token)
        self.assertFalse(self.scheduler.mark_delivered(note.id, stale_token, later))
        self.assertTrue(self.scheduler.mark_delivered(note.id, fresh_token, later))
        # Delivered exactly once
        self.assertFalse(self.scheduler.mark_delivered(note.id, fresh_token, later + timedelta(minutes=1)))

    def test_4_failed_claim_leaves_another_claim_alone(self):
        """Test if a scheduler whose claim blows up does not free the claim another scheduler holds"""

        note = add_note(self.owner, DELIVERY)
        now = DELIVERY + timedelta(seconds=1)
        holder = DeliveryScheduler(self.app, RecordingMailSender())
        holder_token = holder.claim(note.id, now)

        with mock.patch.object(self.scheduler, 'claim', side_effect=RuntimeError('db hiccup')):
            result = self.scheduler.run_cycle(now=now)
        self.assertEqual(result.retrying, [note.id])

        third = DeliveryScheduler(self.app, RecordingMailSender())
        self.assertIsNone(third.claim(note.id, now))
        self.assertEqual(self.reload(note.id).claim_token, holder_token)

    def test_5_error_after_claim_releases_own_claim(self):
        """Test if an unexpected error while delivering releases the claim this scheduler took"""

        note = add_note(self.owner, DELIVERY)
        now = DELIVERY + timedelta(seconds=1)

        with mock.patch.object(self.scheduler, '_deliver_claimed', side_effect=RuntimeError('boom')):
            result = self.scheduler.run_cycle(now=now)
        self.assertEqual(result.retrying, [note.id])
        self.assertIsNone(self.reload(note.id).claim_token)

        result = self.scheduler.run_cycle(now=now + timedelta(minutes=1))
        self.assertEqual(result.delivered, [note.id])

    def test_6_expired_claim_is_not_released_over_a_newer_one(self):
        """Test if releasing a stale claim keeps the claim another scheduler took after the lease"""

        note = add_note(self.owner, DELIVERY)
        now = DELIVERY + timedelta(seconds=1)
        stale_token = self.scheduler.claim(note.id, now)
        later = now + self.scheduler.claim_lease + timedelta(seconds=1)
        other = DeliveryScheduler(self.app, RecordingMailSender())
        fresh_token = other.claim(note.id, later)

        self.scheduler.release_claim_quietly(note.id, stale_token)
        self.assertEqual(self.reload(note.id).claim_token, fresh_token)
        self.assertIsNone(self.scheduler.claim(note.id, later))

class LifecycleTestCase(SchedulerTestCase):
    def test_1_start_and_stop(self):
        """Test if the scheduler starts a background job, hooks SIGTERM and stops cleanly"""

        with mock.patch('delivery_scheduler.install_sigterm_handler') as install:
            self.scheduler.start()
            self.assertTrue(self.scheduler.running)
            self.scheduler.start()
        install.assert_called_once_with()
        self.scheduler.stop()
        self.assertFalse(self.scheduler.running)
        # Stopping twice is harmless
        self.scheduler.stop()

    def test_2_sigterm_handler(self):
        """Test if SIGTERM is turned into a normal exit unless the server already handles it"""

        with mock.patch('signal.getsignal', return_value=signal.SIG_DFL), mock.patch('signal.signal') as install:
            self.assertTrue(delivery_scheduler.install_sigterm_handler())
        install.assert_called_once_with(signal.SIGTERM, delivery_scheduler.exit_on_sigterm)

        with mock.patch('signal.getsignal', return_value=lambda signum, frame: None), mock.patch('signal.signal') as install:
            self.assertFalse(delivery_scheduler.install_sigterm_handler())
        install.assert_not_called()

        with self.assertRaises(SystemExit) as context:
            delivery_scheduler.exit_on_sigterm(signal.SIGTERM, None)
        self.assertEqual(context.exception.code, 0)

if __name__ == '__main__':
    unittest.main()
