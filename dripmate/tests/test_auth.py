import json
import unittest
from unittest.mock import patch

from dripmate.auth import DeviceAuthenticator, describe_device, extract_credentials
from dripmate.db import InMemoryDbClient
from dripmate.errors import (
    ConflictError,
    DeviceMismatchError,
    InvalidInputError,
    InvalidTokenError,
)


class DeviceAuthenticatorTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.auth = DeviceAuthenticator(self.db)
        self.registration = self.db.create_registration("jane.doe@example.com", "BREW-7K3N9P")

    def test_missing_credentials_rejected_before_storage(self):
        with patch.object(self.db, "get_account_by_token") as lookup:
            with self.assertRaises(InvalidInputError):
                self.auth.validate(None, "abc123")
            with self.assertRaises(InvalidInputError):
                self.auth.validate("BREW-7K3N9P", "")
            lookup.assert_not_called()

    def test_unknown_token(self):
        with self.assertRaises(InvalidTokenError):
            self.auth.validate("BREW-ZZZZZZ", "abc123")
        self.assertEqual(self.db.accounts, {})

    def test_first_validation_materializes_and_binds(self):
        account = self.auth.validate("BREW-7K3N9P", "abc123", '{"os": "iOS"}')
        self.assertEqual(account.device_id, "abc123")
        self.assertEqual(account.device_info, '{"os": "iOS"}')
        self.assertTrue(account.username.startswith("janedoe_"))
        self.assertIsNotNone(account.last_login_at)
        self.assertEqual(len(self.db.accounts), 1)
        self.assertTrue(self.db.get_registration_by_token("BREW-7K3N9P").used)

    def test_repeat_validation_reuses_account(self):
        first = self.auth.validate("BREW-7K3N9P", "abc123")
        second = self.auth.validate("BREW-7K3N9P", "abc123")
        self.assertEqual(first.id, second.id)
        self.assertEqual(len(self.db.accounts), 1)

    def test_second_device_is_rejected(self):
        self.auth.validate("BREW-7K3N9P", "abc123")
        with self.assertRaises(DeviceMismatchError):
            self.auth.validate("BREW-7K3N9P", "xyz789")
        account = self.db.get_account_by_token("BREW-7K3N9P")
        self.assertEqual(account.device_id, "abc123")

    def test_unbound_account_gets_bound_once(self):
        account = self.db.create_account("legacy_0001", "BREW-LEGACY")
        self.assertIsNone(account.device_id)
        bound = self.auth.validate("BREW-LEGACY", "dev-1", "info")
        self.assertEqual(bound.device_id, "dev-1")
        with self.assertRaises(DeviceMismatchError):
            self.auth.validate("BREW-LEGACY", "dev-2")

    def test_lost_bind_race_compares_against_winner(self):
        self.db.create_account("legacy_0002", "BREW-RACE22")
        original_bind = self.db.bind_device

        def racing_bind(account_id, device_id, device_info=None):
            original_bind(account_id, "other-device", None)
            return original_bind(account_id, device_id, device_info)

        with patch.object(self.db, "bind_device", side_effect=racing_bind):
            with self.assertRaises(DeviceMismatchError):
                self.auth.validate("BREW-RACE22", "my-device")

    def test_concurrent_activation_uses_existing_account(self):
        winner = self.db.create_account("janedoe_9999", "BREW-7K3N9P", "abc123")
        lookups = iter([None, winner, winner])
        with patch.object(
            self.db, "get_account_by_token", side_effect=lambda t: next(lookups)
        ):
            account = self.auth.validate("BREW-7K3N9P", "abc123")
        self.assertEqual(account.id, winner.id)
        self.assertEqual(len(self.db.accounts), 1)
        self.assertTrue(self.db.get_registration_by_token("BREW-7K3N9P").used)

    def test_username_collision_is_conflict(self):
        with patch("dripmate.auth.derive_username", return_value="janedoe_0001"):
            self.db.create_account("janedoe_0001", "BREW-OTHER1", "x")
            with self.assertRaises(ConflictError):
                self.auth.validate("BREW-7K3N9P", "abc123")
        self.assertFalse(self.db.get_registration_by_token("BREW-7K3N9P").used)


class CredentialExtractionTests(unittest.TestCase):
    def test_headers_take_priority(self):
        token, device = extract_credentials(
            {"authorization": "Bearer BREW-HEADER", "x-device-id": "dev-header"},
            {"token": "BREW-BODY", "deviceId": "dev-body"},
            {"token": "BREW-QUERY", "deviceId": "dev-query"},
        )
        self.assertEqual((token, device), ("BREW-HEADER", "dev-header"))

    def test_body_then_query_fallback(self):
        self.assertEqual(
            extract_credentials({}, {"token": "BREW-BODY"}, {"deviceId": "dev-query"}),
            ("BREW-BODY", "dev-query"),
        )
        self.assertEqual(
            extract_credentials({}, None, {"token": "BREW-Q", "deviceId": "d"}),
            ("BREW-Q", "d"),
        )

    def test_non_bearer_authorization_is_ignored(self):
        token, _ = extract_credentials({"authorization": "Basic abc"}, {}, {})
        self.assertIsNone(token)

    def test_non_string_body_values_are_ignored(self):
        self.assertEqual(
            extract_credentials({}, {"token": 123, "deviceId": ["a"]}, {}),
            (None, None),
        )


class DescribeDeviceTests(unittest.TestCase):
    def test_iphone(self):
        info = json.loads(
            describe_device(
                "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148"
            )
        )
        self.assertEqual(info["platform"], "mobile")
        self.assertEqual(info["os"], "iOS")

    def test_android(self):
        info = json.loads(describe_device("Mozilla/5.0 (Linux; Android 14) Mobile Safari"))
        self.assertEqual(info["os"], "Android")

    def test_missing_user_agent(self):
        info = json.loads(describe_device(None))
        self.assertEqual(info, {"platform": "desktop", "os": "unknown", "userAgent": "unknown"})

    def test_user_agent_truncated(self):
        info = json.loads(describe_device("Windows " + "x" * 300))
        self.assertEqual(info["os"], "Windows")
        self.assertEqual(len(info["userAgent"]), 100)


if __name__ == "__main__":
    unittest.main()
