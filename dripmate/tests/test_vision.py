import base64
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from google.genai import errors as genai_errors

from dripmate.tests.fakes import StubVisionClient
from dripmate.vision import (
    ANALYSIS_PROMPT,
    COFFEE_DEFAULTS,
    GeminiVisionClient,
    VisionInvalidResponseException,
    VisionProviderError,
    analyze_coffee_image,
    build_coffee_defaults,
    decode_image,
    extract_coffee_json,
    sanitize_coffee_data,
)


class ExtractCoffeeJsonTests(unittest.TestCase):
    def test_plain_json(self):
        self.assertEqual(
            extract_coffee_json('{"name":"Test Coffee","origin":"Ethiopia"}'),
            {"name": "Test Coffee", "origin": "Ethiopia"},
        )

    def test_fenced_block(self):
        text = 'Here is your data:\n```json\n{"name":"Bag","process":"natural"}\n```'
        self.assertEqual(extract_coffee_json(text), {"name": "Bag", "process": "natural"})

    def test_prose_around_object(self):
        text = 'Sure! {"roaster": "Acme"} Let me know if you need more.'
        self.assertEqual(extract_coffee_json(text), {"roaster": "Acme"})

    def test_empty_text(self):
        with self.assertRaises(VisionInvalidResponseException):
            extract_coffee_json("")

    def test_no_object(self):
        with self.assertRaises(VisionInvalidResponseException):
            extract_coffee_json("I cannot read this label.")

    def test_broken_json(self):
        with self.assertRaises(VisionInvalidResponseException):
            extract_coffee_json('{"name": "Bag",}')


class DefaultsAndSanitizingTests(unittest.TestCase):
    def test_defaults_for_missing_fields(self):
        now = datetime(2026, 1, 2, tzinfo=timezone.utc)
        defaults = build_coffee_defaults({"name": "Only Name"}, now=now)
        self.assertEqual(defaults["name"], "Only Name")
        self.assertEqual(defaults["origin"], "Unknown")
        self.assertEqual(defaults["process"], "washed")
        self.assertEqual(defaults["altitude"], "1500")
        self.assertEqual(defaults["tastingNotes"], "No notes")
        self.assertEqual(defaults["addedDate"], now.isoformat())
        self.assertEqual(set(defaults), set(COFFEE_DEFAULTS) | {"addedDate"})

    def test_unknown_keys_are_dropped(self):
        defaults = build_coffee_defaults({"name": "X", "price": "12 EUR"})
        self.assertNotIn("price", defaults)

    def test_sanitize(self):
        cleaned = sanitize_coffee_data(
            {
                "name": "  <b>Finca</b>\n  El\tPorvenir ",
                "altitude": 1850,
                "tastingNotes": "x" * 500,
            }
        )
        self.assertEqual(cleaned["name"], "Finca El Porvenir")
        self.assertEqual(cleaned["altitude"], "1850")
        self.assertEqual(len(cleaned["tastingNotes"]), 200)


class DecodeImageTests(unittest.TestCase):
    def test_valid(self):
        self.assertEqual(decode_image(base64.b64encode(b"img").decode()), b"img")

    def test_invalid(self):
        for value in (None, "", "not base64!!"):
            with self.assertRaises(ValueError):
                decode_image(value)


class AnalyzeCoffeeImageTests(unittest.TestCase):
    def test_pipeline(self):
        client = StubVisionClient(
            response_text='```json\n{"name": "<i>Gesha</i>", "origin": "Panama"}\n```'
        )
        data = analyze_coffee_image(client, b"bytes", "image/png")
        self.assertEqual(client.calls, [(b"bytes", "image/png")])
        self.assertEqual(data["name"], "Gesha")
        self.assertEqual(data["origin"], "Panama")
        self.assertEqual(data["roaster"], "Unknown")

    def test_provider_error_propagates(self):
        client = StubVisionClient(error=VisionProviderError("down", status_code=500))
        with self.assertRaises(VisionProviderError):
            analyze_coffee_image(client, b"bytes")


class GeminiVisionClientTests(unittest.TestCase):
    @patch("dripmate.vision.genai.Client")
    def test_sends_image_and_prompt(self, mock_client_cls):
        mock_client = mock_client_cls.return_value
        mock_client.models.generate_content.return_value = MagicMock(text='{"name": "A"}')

        client = GeminiVisionClient(api_key="key", model="gemini-test")
        self.assertEqual(client.describe_image(b"img", "image/jpeg"), '{"name": "A"}')

        mock_client_cls.assert_called_once_with(api_key="key")
        kwargs = mock_client.models.generate_content.call_args.kwargs
        self.assertEqual(kwargs["model"], "gemini-test")
        self.assertEqual(kwargs["contents"][1], ANALYSIS_PROMPT)

    @patch("dripmate.vision.genai.Client")
    def test_empty_response(self, mock_client_cls):
        mock_client_cls.return_value.models.generate_content.return_value = MagicMock(text="")
        client = GeminiVisionClient(api_key="key")
        with self.assertRaises(VisionInvalidResponseException):
            client.describe_image(b"img", "image/jpeg")

    @patch("dripmate.vision.genai.Client")
    def test_api_error_keeps_status(self, mock_client_cls):
        mock_client_cls.return_value.models.generate_content.side_effect = (
            genai_errors.ClientError(429, {"error": {"message": "quota"}})
        )
        client = GeminiVisionClient(api_key="key")
        with self.assertRaises(VisionProviderError) as ctx:
            client.describe_image(b"img", "image/jpeg")
        self.assertEqual(ctx.exception.status_code, 429)


if __name__ == "__main__":
    unittest.main()
