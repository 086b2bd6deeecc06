import unittest
from unittest.mock import MagicMock, patch

import requests

from dripmate.mailer import (
    RESEND_API_URL,
    InMemoryMailer,
    MailDeliveryError,
    ResendMailer,
    render_token_mail,
)


class InMemoryMailerTests(unittest.TestCase):
    def test_records_and_fails_on_demand(self):
        mailer = InMemoryMailer()
        mailer.send_token("a@example.com", "BREW-AAAAAA")
        self.assertEqual(mailer.sent, [("a@example.com", "BREW-AAAAAA")])
        mailer.fail = True
        with self.assertRaises(MailDeliveryError):
            mailer.send_token("a@example.com", "BREW-AAAAAA")
        self.assertEqual(len(mailer.sent), 1)


class ResendMailerTests(unittest.TestCase):
    def _mailer(self):
        return ResendMailer(
            api_key="re_test",
            sender="drip·mate <hello@dripmate.app>",
            subject="Beta",
            app_url="https://dripmate.app",
            timeout=5,
        )

    @patch("dripmate.mailer.requests.Session.post")
    def test_posts_token_mail(self, mock_post):
        mock_post.return_value = MagicMock(ok=True, status_code=200)
        mailer = self._mailer()
        mailer.send_token("a@example.com", "BREW-AAAAAA")

        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], RESEND_API_URL)
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["json"]["to"], "a@example.com")
        self.assertIn("BREW-AAAAAA", kwargs["json"]["text"])
        self.assertEqual(mailer._session.headers["Authorization"], "Bearer re_test")

    @patch("dripmate.mailer.requests.Session.post")
    def test_http_error_raises(self, mock_post):
        mock_post.return_value = MagicMock(ok=False, status_code=422, text="invalid from")
        with self.assertRaises(MailDeliveryError):
            self._mailer().send_token("a@example.com", "BREW-AAAAAA")

    @patch("dripmate.mailer.requests.Session.post")
    def test_network_error_raises(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("boom")
        with self.assertRaises(MailDeliveryError):
            self._mailer().send_token("a@example.com", "BREW-AAAAAA")


class RenderTokenMailTests(unittest.TestCase):
    def test_contains_token_and_recipient(self):
        body = render_token_mail("a@example.com", "BREW-AAAAAA", "https://dripmate.app")
        self.assertIn("BREW-AAAAAA", body)
        self.assertIn("a@example.com", body)
        self.assertIn("https://dripmate.app", body)


if __name__ == "__main__":
    unittest.main()
