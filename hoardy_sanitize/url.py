# Copyright (c) 2024 Jan Malakhovski <oxij@oxij.org>
#
# This file is a part of `hoardy-sanitize` project.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <http://www.gnu.org/licenses/>.

"""Checking URL protocols of attribute values."""

import logging as _logging
import re as _re
import typing as _t
import urllib.parse as _up

from kisstdlib.failure import *

__all__ = ["ANCHOR", "ResolutionFailure", "check_protocol", "get_scheme", "is_valid_anchor",
           "normalize_probe", "protocol_re", "resolve_url"]

# same-document anchor pseudo-protocol
ANCHOR = "#"

scheme_re = _re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*):")
protocol_re = _re.compile(r"^(?:#|[a-z][a-z0-9+.\-]*)$")
whitespace_re = _re.compile(r"\s")

# browsers strip these from both ends of a URL
_c0_and_space = "".join(map(chr, range(0, 0x21)))
# and ignore these anywhere inside
_ignored_chars = str.maketrans("", "", "\t\n\r")

def normalize_probe(value : str) -> str:
    """Turn an attribute value into the string a browser would interpret as a URL."""
    return value.strip(_c0_and_space).translate(_ignored_chars)

def get_scheme(value : str) -> str | None:
    """Get the explicit scheme of a given URL, lowercased, or `None` if it has none."""
    m = scheme_re.match(normalize_probe(value))
    if m is None:
        return None
    return m.group(1).lower()

def is_valid_anchor(value : str) -> bool:
    probe = normalize_probe(value)
    return probe.startswith("#") and whitespace_re.search(probe) is None

class ResolutionFailure(Failure, ValueError): pass

def resolve_url(base_url : str, url : str) -> str:
    base_scheme = get_scheme(base_url)
    if base_scheme is None:
        raise ResolutionFailure("base URL `%s` has no scheme", base_url)

    try:
        return _up.urljoin(base_url, url)
    except ValueError as exc:
        raise ResolutionFailure("failed to resolve `%s` against `%s`: %s", url, base_url, str(exc))

def check_protocol(value : str,
                   protocols : _t.Collection[str],
                   base_url : str = "",
                   preserve_relative_links : bool = False) -> str | None:
    """Check that `value` points to one of the given `protocols`.

    Returns the value that should be kept, which is either `value` itself or,
    for relative URLs when `preserve_relative_links` is unset, its absolute
    version resolved against `base_url`. Returns `None` when the value must be
    dropped.

    An empty `protocols` means "anything goes".
    """

    if len(protocols) == 0:
        return value

    probe = normalize_probe(value)

    if probe.startswith("#"):
        if ANCHOR in protocols and is_valid_anchor(probe):
            return value
        _logging.debug("dropping anchor `%s`", value)
        return None

    scheme = get_scheme(probe)
    if scheme is not None:
        if scheme in protocols:
            return value
        _logging.debug("dropping `%s`: protocol `%s` is not allowed", value, scheme)
        return None

    if probe == "" or base_url == "":
        return None

    try:
        resolved = resolve_url(base_url, probe)
    except ResolutionFailure as exc:
        _logging.debug("dropping `%s`: %s", value, str(exc))
        return None

    rscheme = get_scheme(resolved)
    if rscheme is None or rscheme not in protocols:
        _logging.debug("dropping `%s`: resolved `%s` has a disallowed protocol", value, resolved)
        return None

    if preserve_relative_links:
        return value
    return resolved

def test_get_scheme() -> None:
    assert get_scheme("http://example.com/") == "http"
    assert get_scheme("HTTPS://example.com/") == "https"
    assert get_scheme("  java\tscript:alert(1)") == "javascript"
    assert get_scheme("\x01javascript:alert(1)") == "javascript"
    assert get_scheme("svn+ssh://host/repo") == "svn+ssh"
    assert get_scheme("/foo") is None
    assert get_scheme("foo/bar:baz") is None
    assert get_scheme("1http://example.com") is None
    assert get_scheme("") is None

def test_is_valid_anchor() -> None:
    assert is_valid_anchor("#foo")
    assert is_valid_anchor("#")
    assert not is_valid_anchor("#foo bar")
    assert not is_valid_anchor("#foo\u00a0bar")
    assert not is_valid_anchor("foo#bar")

def test_resolve_url() -> None:
    assert resolve_url("http://example.com/a/b", "c") == "http://example.com/a/c"
    assert resolve_url("http://example.com/a/b", "//other.org/x") == "http://other.org/x"

    for base, url in [("example.com", "/foo"),
                      ("", "/foo"),
                      ("http://example.com/", "//[bad")]:
        try:
            resolve_url(base, url)
        except ResolutionFailure:
            pass
        else:
            assert False, "expected a ResolutionFailure for `%s` against `%s`" % (url, base)

def test_check_protocol() -> None:
    web = {"http", "https"}
    base = "http://example.com/dir/"

    def check(value : str, protocols : set[str], base_url : str, preserve : bool, expected : str | None) -> None:
        res = check_protocol(value, protocols, base_url, preserve)
        if res != expected:
            raise AssertionError("check_protocol(%s, %s, %s, %s) returned %s, expected %s" \
                                 % (repr(value), repr(sorted(protocols)), repr(base_url), preserve, repr(res), repr(expected)))

    # no protocol rules
    check("javascript:alert(1)", set(), "", False, "javascript:alert(1)")

    # explicit schemes, kept verbatim
    check("http://example.org/x", web, "", False, "http://example.org/x")
    check("HTTP://example.org/x", web, "", True, "HTTP://example.org/x")
    check("javascript:alert(1)", web, base, False, None)
    check(" JaVaScRiPt:alert(1)", web, base, True, None)
    check("java\nscript:alert(1)", web, base, True, None)
    check("SOMETHING://thing", {"something"}, "", False, "SOMETHING://thing")

    # relative URLs
    check("/foo", web, "", False, None)
    check("/foo", web, "", True, None)
    check("/foo", web, base, False, "http://example.com/foo")
    check("/foo", web, base, True, "/foo")
    check("bar", web, base, False, "http://example.com/dir/bar")
    check("//[bad", web, base, False, None)
    check("/foo", web, "example.com", False, None)
    check("/foo", {"ftp"}, base, True, None)
    check("", web, base, False, None)
    check("   ", web, base, True, None)

    # anchors
    check("#valid", {"#"}, "", False, "#valid")
    check("#valid", web | {"#"}, base, False, "#valid")
    check("#valid", web, base, False, None)
    check("#has spaces", {"#"}, "", False, None)
    check("#has spaces", web | {"#"}, base, True, None)
