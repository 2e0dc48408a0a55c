import unittest

from builders import AppTestCase, make_user
from attendance_portal import security
from attendance_portal.models import User


class PasswordHashTests(unittest.TestCase):

    def test_hash_format(self):
        parts = security.hash_password('Secret123!').split('$')
        self.assertEqual(len(parts), 4)
        self.assertEqual(parts[0], 'PBKDF2')
        self.assertEqual(parts[1], '100000')

    def test_round_trip(self):
        stored = security.hash_password('Secret123!')
        self.assertTrue(security.verify_password('Secret123!', stored))
        self.assertFalse(security.verify_password('secret123!', stored))

    def test_salts_differ(self):
        self.assertNotEqual(security.hash_password('same'), security.hash_password('same'))

    def test_malformed_hash_does_not_verify(self):
        for stored in ('', 'plain', 'PBKDF2$abc$def$ghi', 'SHA$1$2$3', 'PBKDF2$100000$!!$!!'):
            self.assertFalse(security.verify_password('x', stored))

    def test_none_password_rejected(self):
        with self.assertRaises(ValueError):
            security.hash_password(None)
        with self.assertRaises(ValueError):
            security.verify_password(None, security.hash_password('x'))

    def test_generated_password_shape(self):
        for _ in range(20):
            pw = security.generate_password(10)
            self.assertEqual(len(pw), 10)
            self.assertTrue(any(c.isupper() for c in pw) and any(c.islower() for c in pw))
            self.assertTrue(any(c.isdigit() for c in pw) and any(c in security.SPECIAL_CHARS for c in pw))
        self.assertEqual(len(security.generate_password(4)), 8)

    def test_generate_passwords_unique(self):
        self.assertEqual(len(set(security.generate_passwords(25))), 25)

    def test_password_policy(self):
        self.assertEqual(security.password_policy_error(''), 'New password is required.')
        self.assertEqual(security.password_policy_error('Ab1'), 'Password must be at least 8 characters.')
        self.assertEqual(security.password_policy_error('alllowercase1'),
                         'Password must include uppercase, lowercase, and a number.')
        self.assertIsNone(security.password_policy_error('alllowercase1', require_strong=False))
        self.assertIsNone(security.password_policy_error('Valid1234'))


class AuthenticateTests(AppTestCase):

    def test_authenticates_pbkdf2_user(self):
        make_user('ali@uni.edu', password='Secret123!')
        user = security.authenticate('  ALI@uni.edu ', 'Secret123!')
        self.assertIsNotNone(user)
        self.assertEqual(user.email, 'ali@uni.edu')

    def test_wrong_password(self):
        make_user('ali@uni.edu', password='Secret123!')
        self.assertIsNone(security.authenticate('ali@uni.edu', 'nope'))

    def test_blank_input(self):
        self.assertIsNone(security.authenticate('', 'x'))
        self.assertIsNone(security.authenticate('ali@uni.edu', ''))

    def test_inactive_user_rejected(self):
        make_user('ali@uni.edu', password='Secret123!', active=False)
        self.assertIsNone(security.authenticate('ali@uni.edu', 'Secret123!'))

    def test_plaintext_password_is_migrated(self):
        make_user('old@uni.edu', password_hash='legacy-pass')
        self.assertIsNotNone(security.authenticate('old@uni.edu', 'legacy-pass'))
        stored = User.query.filter_by(email='old@uni.edu').first().password_hash
        self.assertTrue(stored.startswith('PBKDF2$'))
        self.assertTrue(security.verify_password('legacy-pass', stored))

    def test_sha256_password_is_migrated(self):
        make_user('old@uni.edu', password_hash=security.sha256_base64('legacy-pass'))
        self.assertIsNotNone(security.authenticate('old@uni.edu', 'legacy-pass'))
        stored = User.query.filter_by(email='old@uni.edu').first().password_hash
        self.assertTrue(security.is_pbkdf2_hash(stored))

    def test_stored_hash_is_not_a_password(self):
        user = make_user('ali@uni.edu', password='Secret123!')
        stored = user.password_hash
        self.assertIsNone(security.authenticate('ali@uni.edu', stored))
        self.assertEqual(User.query.filter_by(email='ali@uni.edu').first().password_hash, stored)
        self.assertIsNotNone(security.authenticate('ali@uni.edu', 'Secret123!'))


if __name__ == "__main__":
    unittest.main()
