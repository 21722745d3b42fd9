from django.test import SimpleTestCase, TestCase

from chat.tests import UserFactory
from .auth import token_from_scope
from .serializers import UserSummarySerializer


class TokenFromScopeTest(SimpleTestCase):
    def test_query_string_token(self):
        scope = {"query_string": b"token=abc123", "headers": []}
        self.assertEqual(token_from_scope(scope), "abc123")

    def test_authorization_header_token(self):
        scope = {"query_string": b"", "headers": [(b"authorization", b"Token abc123")]}
        self.assertEqual(token_from_scope(scope), "abc123")

    def test_bearer_keyword_accepted(self):
        scope = {"query_string": b"", "headers": [(b"Authorization", b"Bearer abc123")]}
        self.assertEqual(token_from_scope(scope), "abc123")

    def test_query_string_wins_over_header(self):
        scope = {"query_string": b"token=fromquery", "headers": [(b"authorization", b"Token fromheader")]}
        self.assertEqual(token_from_scope(scope), "fromquery")

    def test_unknown_scheme_ignored(self):
        scope = {"query_string": b"", "headers": [(b"authorization", b"Basic dXNlcjpwYXNz")]}
        self.assertIsNone(token_from_scope(scope))

    def test_no_credential(self):
        self.assertIsNone(token_from_scope({"query_string": b"", "headers": []}))


class UserSummarySerializerTest(TestCase):
    def test_exposes_only_display_fields(self):
        user = UserFactory(profile_image_url="https://example.com/me.png", bio="hello")
        data = UserSummarySerializer(user).data
        self.assertEqual(set(data), {"id", "username", "profile_image_url"})
        self.assertEqual(data["profile_image_url"], "https://example.com/me.png")
