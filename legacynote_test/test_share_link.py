import unittest
from types import SimpleNamespace
from datetime import datetime, timedelta
from helpers import fake, FRONTEND_URL
from errors import LinkGenerationError
import share_link

DELIVERY = datetime(2030, 1, 1, 10, 0, 0)
BEFORE = DELIVERY - timedelta(hours=1)
AFTER = DELIVERY + timedelta(hours=1)

def make_note(recipients=(), is_public=False, delivered_at=None):
    return SimpleNamespace(id='a' * 32, owner_id=1, access_key=None, shareable_link=None, is_public=is_public,
                           recipients=[SimpleNamespace(name=None, email=email) for email in recipients],
                           delivery_date=DELIVERY, delivered_at=delivered_at, exact_time_delivery=True)

class GenerateLinkTestCase(unittest.TestCase):
    def test_1_generate(self):
        """Test if generating a link makes the note public and embeds the note ID and key in the URL"""

        note = make_note()
        link = share_link.generate_link(note, FRONTEND_URL + '/')
        self.assertTrue(note.is_public)
        self.assertEqual(link.url, f'{FRONTEND_URL}/shared-note/{note.id}/{link.access_key}')
        self.assertEqual(note.access_key, link.access_key)
        self.assertEqual(note.shareable_link, link.url)
        # token_urlsafe(32) gives 43 characters, 256 bits of randomness
        self.assertGreaterEqual(len(link.access_key), 43)

    def test_2_generate_twice_keeps_the_key(self):
        """Test if asking for a link again returns the same key"""

        note = make_note()
        first = share_link.generate_link(note, FRONTEND_URL)
        second = share_link.generate_link(note, FRONTEND_URL)
        self.assertEqual(first, second)

    def test_3_regenerate_invalidates_old_key(self):
        """Test if regenerating gives a new key and the old key stops working"""

        note = make_note(delivered_at=AFTER)
        old = share_link.generate_link(note, FRONTEND_URL)
        new = share_link.generate_link(note, FRONTEND_URL, regenerate=True)
        self.assertNotEqual(old.access_key, new.access_key)
        self.assertIsInstance(share_link.check_access(note, access_key=old.access_key, requester_id=99, now=AFTER),
                              share_link.Denied)
        self.assertIsInstance(share_link.check_access(note, access_key=new.access_key, requester_id=99, now=AFTER),
                              share_link.Allowed)

    def test_4_keys_are_unique(self):
        """Test if links of different notes never share a key"""

        keys = {share_link.generate_link(make_note(), FRONTEND_URL).access_key for _ in range(50)}
        self.assertEqual(len(keys), 50)

    def test_5_missing_base_url(self):
        """Test if a link can't be built without a base URL"""

        with self.assertRaises(LinkGenerationError):
            share_link.generate_link(make_note(), '')

class CheckAccessTestCase(unittest.TestCase):
    def setUp(self):
        self.recipient_email = fake.email()
        self.note = make_note(recipients=[self.recipient_email])
        self.link = share_link.generate_link(self.note, FRONTEND_URL)

    def test_1_link_holder_before_delivery(self):
        """Test if a stranger with the right key gets NotYetAvailable with the delivery date before delivery"""

        access = share_link.check_access(self.note, access_key=self.link.access_key, now=BEFORE)
        self.assertEqual(access, share_link.NotYetAvailable(DELIVERY))

    def test_2_link_holder_after_delivery(self):
        """Test if a stranger with the right key can read the note after the delivery date"""

        access = share_link.check_access(self.note, access_key=self.link.access_key, now=AFTER)
        self.assertIsInstance(access, share_link.Allowed)

    def test_3_owner_and_recipients(self):
        """Test if the owner and recipients can read the note without the key, even early"""

        self.assertIsInstance(share_link.check_access(self.note, requester_id=1, now=BEFORE), share_link.Allowed)
        self.assertIsInstance(share_link.check_access(self.note, requester_email=self.recipient_email.upper(), now=BEFORE),
                              share_link.Allowed)

    def test_4_strangers(self):
        """Test if a wrong key or no key at all is denied"""

        self.assertIsInstance(share_link.check_access(self.note, access_key='guess', now=AFTER), share_link.Denied)
        self.assertIsInstance(share_link.check_access(self.note, requester_id=2, requester_email=fake.email(), now=AFTER),
                              share_link.Denied)

    def test_5_link_stops_working_when_note_is_private(self):
        """Test if the key is not honored once the owner made the note private"""

        self.note.is_public = False
        access = share_link.check_access(self.note, access_key=self.link.access_key, now=AFTER)
        self.assertIsInstance(access, share_link.Denied)

    def test_6_public_without_key(self):
        """Test if a public note is still denied to a stranger who has no key"""

        self.assertTrue(self.note.is_public)
        access = share_link.check_access(self.note, requester_id=2, requester_email=fake.email(), now=AFTER)
        self.assertIsInstance(access, share_link.Denied)
        self.assertIsInstance(share_link.check_access(self.note, now=AFTER), share_link.Denied)

if __name__ == '__main__':
    unittest.main()
