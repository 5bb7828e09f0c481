"""
Unit tests for request fingerprinting.
"""

from requestor.caching.fingerprint import canonical_form, compute_fingerprint
from requestor.models import RequestDescriptor


URL = "https://api.example.com/items"


class TestFingerprint:
    """Test cases for compute_fingerprint."""

    def test_is_deterministic(self):
        """Test equal requests produce equal fingerprints."""
        first = RequestDescriptor(url=URL, params={"a": "1", "b": "2"}, headers={"accept": "application/json"})
        second = RequestDescriptor(url=URL, params={"b": "2", "a": "1"}, headers={"Accept": "application/json"})
        assert compute_fingerprint(first) == compute_fingerprint(second)

    def test_is_sha256_hex(self):
        fingerprint = compute_fingerprint(RequestDescriptor(url=URL))
        assert len(fingerprint) == 64
        int(fingerprint, 16)

    def test_embedded_query_matches_params(self):
        """Test a query string in the url is equivalent to params."""
        embedded = RequestDescriptor(url=f"{URL}?page=2")
        explicit = RequestDescriptor(url=URL, params={"page": "2"})
        assert compute_fingerprint(embedded) == compute_fingerprint(explicit)

    def test_method_changes_fingerprint(self):
        get = RequestDescriptor(url=URL)
        head = RequestDescriptor(url=URL, method="HEAD")
        assert compute_fingerprint(get) != compute_fingerprint(head)

    def test_authenticated_user_changes_fingerprint(self):
        """Test per-user responses never share a cache entry."""
        alice = RequestDescriptor(url=URL, authenticated_user="alice")
        bob = RequestDescriptor(url=URL, authenticated_user="bob")
        assert compute_fingerprint(alice) != compute_fingerprint(bob)

    def test_volatile_headers_are_ignored(self):
        """Test cookie and correlation headers do not affect the fingerprint."""
        plain = RequestDescriptor(url=URL)
        noisy = RequestDescriptor(url=URL, headers={"cookie": "session=1", "x-request-id": "abc"})
        assert compute_fingerprint(plain) == compute_fingerprint(noisy)

    def test_custom_volatile_headers(self):
        plain = RequestDescriptor(url=URL)
        tagged = RequestDescriptor(url=URL, headers={"x-trace": "1"})
        assert compute_fingerprint(plain) != compute_fingerprint(tagged)
        assert compute_fingerprint(plain, ["x-trace"]) == compute_fingerprint(tagged, ["x-trace"])

    def test_canonical_form_sorts_params(self):
        form = canonical_form(RequestDescriptor(url=URL, params={"z": 1, "a": 2}))
        assert form["qs"] == [("a", "2"), ("z", "1")]
        assert form["uri"] == URL

    def test_repeated_query_keys_change_fingerprint(self):
        """Test every value of a repeated key takes part in the fingerprint."""
        both = RequestDescriptor(url=f"{URL}?tag=a&tag=b")
        last = RequestDescriptor(url=f"{URL}?tag=b")
        assert compute_fingerprint(both) != compute_fingerprint(last)
        assert compute_fingerprint(both) == compute_fingerprint(RequestDescriptor(url=URL, params={"tag": ["a", "b"]}))

    def test_canonical_form_keeps_repeated_values(self):
        form = canonical_form(RequestDescriptor(url=f"{URL}?tag=b&page=1&tag=a"))
        assert form["qs"] == [("page", "1"), ("tag", "b"), ("tag", "a")]
