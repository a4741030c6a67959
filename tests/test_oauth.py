import base64
import hashlib
import hmac
import unittest

from flipside.clients.auth import OAuthCredentials
from flipside.clients.oauth import (
    make_authorization_header,
    oauth_parameters,
    percent_encode,
    signature_base_string,
)

CREDENTIALS = OAuthCredentials(
    consumer_key="ck",
    consumer_secret="cs",
    oauth_token="t",
    oauth_token_secret="ts",
    username="alice",
)

def header_params(header):
    assert header.startswith("OAuth ")
    pairs = [p.split("=", 1) for p in header[len("OAuth "):].split(", ")]
    return {k: v.strip('"') for k, v in pairs}

class TestSigning(unittest.TestCase):
    def test_percent_encoding_keeps_unreserved_only(self):
        self.assertEqual(percent_encode("a b&c=d~e.f_g-h"), "a%20b%26c%3Dd~e.f_g-h")
        self.assertEqual(percent_encode("ü"), "%C3%BC")

    def test_base_string_includes_query_parameters(self):
        params = oauth_parameters(CREDENTIALS, nonce="n", timestamp="1")

        base = signature_base_string("get", "https://API.discogs.com/users/alice/wants?page=2", params)

        self.assertEqual(
            base,
            "GET&https%3A%2F%2Fapi.discogs.com%2Fusers%2Falice%2Fwants&"
            "oauth_consumer_key%3Dck%26oauth_nonce%3Dn%26oauth_signature_method%3DHMAC-SHA1%26"
            "oauth_timestamp%3D1%26oauth_token%3Dt%26oauth_version%3D1.0%26page%3D2",
        )

    def test_signature_uses_both_secrets(self):
        url = "https://api.discogs.com/users/alice/wants?page=2"
        header = make_authorization_header("GET", url, CREDENTIALS, nonce="n", timestamp="1")

        base = signature_base_string("GET", url, oauth_parameters(CREDENTIALS, nonce="n", timestamp="1"))
        expected = base64.b64encode(hmac.new(b"cs&ts", base.encode(), hashlib.sha1).digest()).decode()
        self.assertEqual(header_params(header)["oauth_signature"], percent_encode(expected))

    def test_header_lists_every_parameter(self):
        header = make_authorization_header("GET", "https://api.discogs.com/oauth/identity", CREDENTIALS)

        params = header_params(header)

        self.assertEqual(
            sorted(params),
            ["oauth_consumer_key", "oauth_nonce", "oauth_signature", "oauth_signature_method",
             "oauth_timestamp", "oauth_token", "oauth_version"],
        )
        self.assertEqual(params["oauth_signature_method"], "HMAC-SHA1")

    def test_query_changes_signature(self):
        first = make_authorization_header("GET", "https://api.discogs.com/x?page=1", CREDENTIALS, nonce="n", timestamp="1")
        second = make_authorization_header("GET", "https://api.discogs.com/x?page=2", CREDENTIALS, nonce="n", timestamp="1")
        self.assertNotEqual(header_params(first)["oauth_signature"], header_params(second)["oauth_signature"])

    def test_request_token_step_has_no_token(self):
        consumer_only = OAuthCredentials(consumer_key="ck", consumer_secret="cs")

        header = make_authorization_header(
            "GET", "https://api.discogs.com/oauth/request_token", consumer_only, callback="flipside://oauth"
        )

        params = header_params(header)
        self.assertNotIn("oauth_token", params)
        self.assertEqual(params["oauth_callback"], "flipside%3A%2F%2Foauth")

    def test_invalid_url(self):
        with self.assertRaises(ValueError):
            make_authorization_header("GET", "/relative/path", CREDENTIALS)

if __name__ == '__main__':
    unittest.main()
