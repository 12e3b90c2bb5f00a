from __future__ import annotations

import pytest

from app.tools.web_utils import canonicalize_url, clean_content, is_valid_url


@pytest.mark.parametrize(
    "url, expected",
    [
        ("HTTPS://Example.COM:443/Path/?b=2&a=1#section", "https://example.com/Path?a=1&b=2"),
        ("http://example.com:8080//a//b/", "http://example.com:8080/a/b"),
        ("https://example.com/x?utm_source=news&utm_medium=email&id=7&fbclid=abc", "https://example.com/x?id=7"),
        ("https://example.com/", "https://example.com"),
    ],
)
def test_canonicalize_url(url, expected):
    assert canonicalize_url(url) == expected


def test_canonical_forms_collide_for_the_same_page():
    assert canonicalize_url("https://example.com/a?utm_campaign=x") == canonicalize_url("https://EXAMPLE.com/a/")


def test_is_valid_url():
    assert is_valid_url("https://example.com/a")
    assert not is_valid_url("ftp://example.com/a")
    assert not is_valid_url("not a url")
    assert not is_valid_url("https://bad.example:99999/x")
    assert is_valid_url("https://example.com:8443/x")


def test_clean_content_collapses_whitespace_and_truncates():
    assert clean_content("  a \n\n b\t c ") == "a b c"
    assert clean_content("abcdef", max_length=3) == "abc..."
    assert clean_content(None) == ""
