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

"""Cleaning HTML documents with `Safelist`s.

`Cleaner` walks the `body` of a dirty `Document` and builds a fresh `Document`
that contains only the tags, attributes, and URL protocols the `Safelist`
allows. Elements with disallowed tags get unwrapped, i.e. their contents are
kept, except for elements with non-markup contents, like `script` and `style`,
which get dropped together with everything inside them.
"""

import concurrent.futures as _cf
import logging as _logging
import typing as _t
import xml.dom as _xd
import xml.dom.minidom as _md

from .dom import *
from .safelist import *

__all__ = ["DROP_CONTENT_TAGS", "Cleaner", "clean_html", "is_valid_html"]

# elements whose contents are not markup, so they are never unwrapped
DROP_CONTENT_TAGS = frozenset([
    "script", "style", "template",
    "iframe", "frame", "frameset", "noframes",
    "object", "embed", "applet", "noembed", "noscript",
    "xmp", "plaintext",
])

_text_nodes = frozenset([_xd.Node.TEXT_NODE, _xd.Node.CDATA_SECTION_NODE])

class _CleaningPass:
    """State of a single `Cleaner` run."""

    def __init__(self,
                 safelist : Safelist,
                 base_url : str,
                 out : _md.Document,
                 track_elements : bool = False,
                 track_attributes : bool = False,
                 fail_fast : bool = False) -> None:
        self.safelist = safelist
        self.base_url = base_url
        self.out = out
        self.track_elements = track_elements
        self.track_attributes = track_attributes
        self.fail_fast = fail_fast

        self.num_discarded = 0
        self.discarded_elements : list[Element] = []
        self.discarded_attributes : list[Element] = []

    def discard_element(self, el : Element, with_contents : bool) -> None:
        self.num_discarded += 1
        if with_contents:
            _logging.debug("dropping `%s` element with its contents", el.tagName)
        else:
            _logging.debug("unwrapping `%s` element", el.tagName)
        if self.track_elements:
            self.discarded_elements.append(el.cloneNode(True))

    def copy_children(self, source : Node, dest : Node) -> None:
        for node in source.childNodes:
            if self.fail_fast and self.num_discarded > 0:
                return

            typ = node.nodeType
            if typ in _text_nodes:
                dest.appendChild(self.out.createTextNode(node.data))
            elif typ == _xd.Node.ELEMENT_NODE:
                self.copy_element(node, dest)
            else:
                self.num_discarded += 1
                _logging.debug("dropping `%s` node", node.nodeName)

    def copy_element(self, source : Element, dest : Node) -> None:
        safelist = self.safelist
        name = source.tagName

        if not safelist.is_safe_tag(name):
            if name.lower() in DROP_CONTENT_TAGS:
                self.discard_element(source, True)
            else:
                self.discard_element(source, False)
                self.copy_children(source, dest)
            return

        el = self.out.createElementNS(source.namespaceURI, name)
        lost = 0
        for aname, avalue in source.attributes.items():
            value = safelist.safe_attribute_value(name, aname, avalue, self.base_url)
            if value is None:
                lost += 1
                _logging.debug("dropping `%s` attribute of `%s` element", aname, name)
                continue
            el.setAttribute(aname, value)

        if lost > 0:
            self.num_discarded += lost
            if self.track_attributes:
                self.discarded_attributes.append(source.cloneNode(True))

        for aname, avalue in safelist.get_enforced_attributes(name).items():
            el.setAttribute(aname, avalue)

        dest.appendChild(el)
        self.copy_children(source, el)

class Cleaner:
    """Clean documents with a `Safelist`.

       The `Safelist` is only read here, so a fully built one can be shared
       between threads.  A `Cleaner` keeps the discard logs of its last `clean`
       run, so each thread needs its own `Cleaner`.
    """

    def __init__(self, safelist : Safelist) -> None:
        self.safelist = safelist
        self._track_elements = False
        self._track_attributes = False
        self._discarded_elements : list[Element] = []
        self._discarded_attributes : list[Element] = []

    def track_discarded_elements(self, value : bool = True) -> "Cleaner":
        """Remember elements dropped by the next `clean` calls."""
        self._track_elements = value
        return self

    def track_discarded_attributes(self, value : bool = True) -> "Cleaner":
        """Remember kept elements that lost some of their attributes in the next `clean` calls."""
        self._track_attributes = value
        return self

    @property
    def discarded_elements(self) -> list[Element]:
        """Elements the last `clean` call discarded, in document order.

           Returns fresh copies on each access.
        """
        return [el.cloneNode(True) for el in self._discarded_elements]

    @property
    def discarded_attributes(self) -> list[Element]:
        """Elements the last `clean` call kept but removed attributes from, as
           they were before cleaning, in document order.

           Returns fresh copies on each access.
        """
        return [el.cloneNode(True) for el in self._discarded_attributes]

    def _make_pass(self, dirty : Document, out : Document, fail_fast : bool = False) -> _CleaningPass:
        return _CleaningPass(self.safelist, dirty.base_url, out.dom,
                             self._track_elements and not fail_fast,
                             self._track_attributes and not fail_fast,
                             fail_fast)

    def clean(self, dirty : Document) -> Document:
        """Clean the `body` of a given `Document`.

           Returns a new `Document` with the same base URL and a copy of the same
           output settings. `dirty` is left as is.
        """
        res = create_shell(dirty.base_url, dirty.settings.copy())
        cpass = self._make_pass(dirty, res)

        source = dirty.body
        dest = res.body
        assert dest is not None
        if source is not None:
            cpass.copy_children(source, dest)

        self._discarded_elements = cpass.discarded_elements
        self._discarded_attributes = cpass.discarded_attributes
        return res

    def _is_clean(self, dirty : Document) -> bool:
        out = create_shell(dirty.base_url)
        cpass = self._make_pass(dirty, out, True)
        source = dirty.body
        if source is not None:
            cpass.copy_children(source, out.dom.createDocumentFragment())
        return cpass.num_discarded == 0

    def is_valid(self, dirty : Document) -> bool:
        """Check that `clean` would not discard anything from a given `Document`
           and that its `head` is empty.

           Enforced attributes missing from the source and relative links that
           `clean` would make absolute do not make a `Document` invalid.
        """
        head = dirty.head
        if head is not None and head.hasChildNodes():
            return False
        return self._is_clean(dirty)

    def is_valid_body_html(self, body_html : str) -> bool:
        """Like `is_valid`, but for a piece of `body` HTML, which must also parse
           without errors.
        """
        dirty = parse_body_fragment(body_html)
        if len(dirty.errors) > 0:
            _logging.debug("not valid body HTML: %s", str(dirty.errors[0]))
            return False
        return self._is_clean(dirty)

def clean_html(body_html : str,
               safelist : Safelist,
               base_url : str = "",
               settings : OutputSettings | None = None) -> str:
    """Parse a piece of `body` HTML, clean it with a given `Safelist`, and render the result."""
    dirty = parse_body_fragment(body_html, base_url)
    if settings is not None:
        dirty.settings = settings
    return Cleaner(safelist).clean(dirty).body_html()

def is_valid_html(body_html : str, safelist : Safelist) -> bool:
    return Cleaner(safelist).is_valid_body_html(body_html)

def test_simple_text() -> None:
    h = "<div><p class=foo><a href='http://evil.com'>Hello <b id=bar>there</b>!</a></div>"
    assert clean_html(h, simple_text()) == "Hello <b>there</b>!"
    assert clean_html("Hello <b>there</b>!", simple_text()) == "Hello <b>there</b>!"

def test_basic() -> None:
    h = "<div><p><a href='javascript:sendAllMoney()'>Dodgy</a> <A HREF='HTTP://nice.com'>Nice</a></p><blockquote>Hello</blockquote>"
    assert clean_html(h, basic()) == '<p><a rel="nofollow">Dodgy</a> <a href="HTTP://nice.com" rel="nofollow">Nice</a></p><blockquote>Hello</blockquote>'

def test_basic_with_images() -> None:
    h = "<img src='http://example.com/x' alt=Image>"
    assert clean_html(h, basic_with_images()) == '<img src="http://example.com/x" alt="Image">'

    h = "<div><p><img src='http://example.com/' alt=Image></p><p><img src='ftp://ftp.example.com'></p></div>"
    assert clean_html(h, basic_with_images()) == '<p><img src="http://example.com/" alt="Image"></p><p><img></p>'

def test_relaxed() -> None:
    h = "<h1>Head</h1><table><tr><td>One<td>Two</td></tr></table>"
    assert clean_html(h, relaxed()) == "<h1>Head</h1><table><tbody><tr><td>One</td><td>Two</td></tr></tbody></table>"

def test_modified_safelists() -> None:
    h = "<div><p><A HREF='HTTP://nice.com'>Nice</a></p><blockquote>Hello</blockquote>"
    assert clean_html(h, basic().remove_tags("a")) == "<p>Nice</p><blockquote>Hello</blockquote>"
    assert clean_html(h, basic().remove_enforced_attribute("a", "rel")) == '<p><a href="HTTP://nice.com">Nice</a></p><blockquote>Hello</blockquote>'

    h = "<div><p>Nice</p><blockquote cite='http://example.com/quotations'>Hello</blockquote>"
    assert clean_html(h, basic().remove_attributes("blockquote", "cite")) == "<p>Nice</p><blockquote>Hello</blockquote>"

    h = "<p>Contact me <a href='mailto:info@example.com'>here</a></p>"
    assert clean_html(h, basic().remove_protocols("a", "href", "ftp", "mailto")) == '<p>Contact me <a rel="nofollow">here</a></p>'

def test_custom_protocols() -> None:
    sl = none().add_tags("a").add_attributes("a", "href").add_protocols("a", "href", "something")
    assert clean_html('<a href="SOMETHING://x"></a>', sl) == '<a href="SOMETHING://x"></a>'

    h = "<img src='cid:12345' /> <img src='data:gzzt' />"
    assert clean_html(h, basic_with_images()) == "<img> <img>"
    sl = basic_with_images().add_protocols("img", "src", "cid", "data")
    assert clean_html(h, sl) == '<img src="cid:12345"> <img src="data:gzzt">'

def test_drops_non_elements() -> None:
    assert clean_html("<p>Hello<!-- no --></p>", relaxed()) == "<p>Hello</p>"
    assert clean_html('<?import namespace="xss"><p>Hello</p>', relaxed()) == "<p>Hello</p>"

def test_drops_scripts() -> None:
    assert clean_html("<SCRIPT SRC=//ha.ckers.org/.j><SCRIPT>alert(/XSS/.source)</SCRIPT>", relaxed()) == ""
    assert clean_html("<p>a<style>p { color: red }</style>b<iframe src=http://evil.com>c</iframe></p>", relaxed()) == "<p>ab</p>"
    assert clean_html("<IMG SRC=\"javascript:alert('XSS')\">", relaxed()) == "<img>"
    assert clean_html("<A HREF=\"javascript:document.location='http://www.google.com/'\">XSS</A>", relaxed()) == "<a>XSS</a>"
    assert clean_html('<a href=" jav&#x09;ascript:alert(1)">XSS</a>', relaxed()) == "<a>XSS</a>"

def test_anchors() -> None:
    valid = '<a href="#valid">Valid anchor</a>'
    invalid = '<a href="#anchor with spaces">Invalid anchor</a>'
    assert clean_html(valid, relaxed()) == "<a>Valid anchor</a>"
    assert clean_html(invalid, relaxed()) == "<a>Invalid anchor</a>"

    sl = relaxed().add_protocols("a", "href", "#")
    assert clean_html(valid, sl) == valid
    assert clean_html(invalid, sl) == "<a>Invalid anchor</a>"
    assert clean_html("<a>One</a> <a href>Two</a>", sl) == "<a>One</a> <a>Two</a>"

def test_unknown_tags_and_attributes() -> None:
    assert clean_html("<p><custom foo=true>Test</custom></p>", relaxed()) == "<p>Test</p>"
    assert clean_html("<img alt=\"\" src= unknown=''>", basic_with_images()) == '<img alt="">'
    assert clean_html("<a href>Clean</a>", basic()) == '<a rel="nofollow">Clean</a>'
    assert clean_html("<a/\x06>", basic()) == '<a rel="nofollow"></a>'

def test_all_pseudo_tag() -> None:
    sl = Safelist().add_attributes(ALL, "class").add_attributes("p", "style").add_tags("p", "a")
    assert clean_html("<p class='foo' src='bar'><a class='qux'>link</a></p>", sl) == '<p class="foo"><a class="qux">link</a></p>'

    sl = Safelist().add_attributes("p", "class")
    assert clean_html("<p class='foo' src='bar'>One</p>", sl) == '<p class="foo">One</p>'

def test_relative_links() -> None:
    h = "<a href='/foo'>Link</a><img src='/bar'> <img src='javascript:alert()'>"
    assert clean_html(h, basic_with_images(), "http://example.com/") \
        == '<a href="http://example.com/foo" rel="nofollow">Link</a><img src="http://example.com/bar"> <img>'
    assert clean_html(h, basic_with_images().set_preserve_relative_links(), "http://example.com/") \
        == '<a href="/foo" rel="nofollow">Link</a><img src="/bar"> <img>'
    assert clean_html("<a href='/foo'>Link</a>", basic()) == '<a rel="nofollow">Link</a>'

def test_enforced_attributes() -> None:
    h = "<a href='http://example.com/' rel='noopener'>x</a><a rel=nofollow>y</a>"
    assert clean_html(h, basic()) == '<a href="http://example.com/" rel="nofollow">x</a><a rel="nofollow">y</a>'

def test_none() -> None:
    h = "<div><p class=x>Hello <b>there</b><br><img src='http://example.com/'></p><script>x</script></div>"
    cleaned = parse_body_fragment(clean_html(h, none()))
    body = cleaned.body
    assert body is not None
    assert [n.nodeType for n in body.childNodes] == [_xd.Node.TEXT_NODE] * len(body.childNodes)
    assert cleaned.body_html() == "Hello there"
    assert clean_html("привет", none()) == "привет"

def test_idempotent() -> None:
    inputs = [
        "<div><p class=foo><a href='http://evil.com' title=x>Hello <b id=bar>there</b>!</a></div>",
        "<table><tr><td colspan=2 onclick=x>One<td>Two<script>y</script></table><img src=/x alt=y>",
        "<ul><li>a<li>b<!-- c --></ul><q cite='javascript:x'>q</q><custom><h1>h</h1></custom>",
    ]
    for sl in safelists.values():
        for h in inputs:
            once = clean_html(h, sl(), "http://example.com/")
            twice = clean_html(once, sl(), "http://example.com/")
            assert once == twice
            assert is_valid_html(once, sl())

def test_is_valid_body_html() -> None:
    ok = "<p>Test <b><a href='http://example.com/' rel='nofollow'>OK</a></b></p>"
    ok1 = "<p>Test <b><a href='http://example.com/'>OK</a></b></p>"
    nok1 = "<p><script></script>Not <b>OK</b></p>"
    nok2 = "<p align=right>Test Not <b>OK</b></p>"
    nok3 = "<!-- comment --><p>Not OK</p>"
    nok4 = "<html><head>Foo</head><body><b>OK</b></body></html>"
    nok5 = "<p>Test <b><a href='http://example.com/' rel='nofollowme'>OK</a></b></p>"
    nok6 = "<p>Test <b><a href='http://example.com/'>OK</b></p>"
    nok7 = "</div>What"
    assert is_valid_html(ok, basic())
    assert is_valid_html(ok1, basic())
    for nok in [nok1, nok2, nok3, nok4, nok5, nok6, nok7]:
        assert not is_valid_html(nok, basic()), nok

    sl = relaxed().add_tags("script")
    assert is_valid_html("Hello<script>alert('Doh')</script>World !", sl)

    sl = relaxed().add_attributes("div", "style")
    h = "<div style=\"font-family: 'Calibri'\">Will (not) fail</div>"
    assert clean_html(h, sl) == h
    assert is_valid_html(h, sl)

def test_is_valid_document() -> None:
    ok = "<html><head></head><body><p>Hello</p></body><html>"
    nok = "<html><head><script>woops</script><title>Hello</title></head><body><p>Hello</p></body><html>"
    cleaner = Cleaner(relaxed())
    ok_doc = parse_html(ok)
    assert cleaner.is_valid(ok_doc)
    assert not cleaner.is_valid(parse_html(nok))
    assert not Cleaner(none()).is_valid(ok_doc)

    # validation leaves discard logs alone
    cleaner = Cleaner(none()).track_discarded_elements()
    assert not cleaner.is_valid(ok_doc)
    assert cleaner.discarded_elements == []

def test_clean_document() -> None:
    dirty = parse_html("<html><head><title>T</title><base href='http://example.com/a/'></head>"
                       "<body><p><a href='b'>b</a><script>x</script></p></body></html>")
    cleaner = Cleaner(basic())
    clean = cleaner.clean(dirty)
    assert clean.base_url == "http://example.com/a/"
    assert clean.head is not None and not clean.head.hasChildNodes()
    assert clean.body_html() == '<p><a href="http://example.com/a/b" rel="nofollow">b</a></p>'
    assert cleaner.is_valid(clean)
    # the source is left as is
    assert dirty.body_html() == "<p><a href=\"b\">b</a><script>x</script></p>"

def test_framesets() -> None:
    dirty = "<html><head><script></script><noscript></noscript></head><frameset><frame src=\"foo\" /><frame src=\"foo\" /></frameset></html>"
    assert clean_html(dirty, basic()) == ""

    clean = Cleaner(basic()).clean(parse_html(dirty))
    body = clean.body
    assert body is not None and len(body.childNodes) == 0

def test_output_settings() -> None:
    orig = parse_html("<p>test<br></p>")
    orig.settings.syntax = Syntax.XML
    clean = Cleaner(none().add_tags("p", "br")).clean(orig)
    assert clean.settings.syntax == Syntax.XML
    assert clean.settings is not orig.settings
    assert clean.body_html() == "<p>test<br /></p>"

    settings = OutputSettings(charset="ascii")
    assert clean_html("<div><p>café</p></div>", relaxed(), settings=settings) == "<div><p>caf&eacute;</p></div>"

def test_discard_logs_disabled_by_default() -> None:
    h = "<div><p class=foo><a href='http://evil.com'>Hello <b id=bar>there</b>!</a></div>"
    cleaner = Cleaner(simple_text())
    cleaner.clean(parse_html(h))
    assert cleaner.discarded_elements == []
    assert cleaner.discarded_attributes == []

def test_discarded_elements() -> None:
    doc = parse_html("<div><p><a>Hello <b>there</b>!</a></div>")
    cleaner = Cleaner(simple_text()).track_discarded_elements()
    cleaner.clean(doc)

    body = doc.body
    assert body is not None
    div = body.firstChild
    p = div.firstChild
    a = p.firstChild
    discarded = cleaner.discarded_elements
    assert [el.toxml() for el in discarded] == [div.toxml(), p.toxml(), a.toxml()]

def test_discarded_attributes() -> None:
    doc = parse_html("Hello <b id=bar><i class=cl>there</i></b>!")
    cleaner = Cleaner(simple_text()).track_discarded_elements().track_discarded_attributes()
    cleaner.clean(doc)

    discarded = cleaner.discarded_attributes
    assert [(el.tagName, el.attributes.items()) for el in discarded] \
        == [("b", [("id", "bar")]), ("i", [("class", "cl")])]
    assert cleaner.discarded_elements == []

    # attributes of discarded elements are not logged
    doc = parse_html("<div id=bar><p id=foo><a class=cl>Hello <b>there</b>!</a></div>")
    cleaner.clean(doc)
    assert cleaner.discarded_attributes == []
    assert len(cleaner.discarded_elements) == 3

def test_discard_logs_are_independent() -> None:
    h = "<div><p class=foo><a href='http://evil.com'>Hello <b id=bar>there</b>!</a></div>"

    cleaner = Cleaner(simple_text()).track_discarded_elements()
    cleaner.clean(parse_html(h))
    assert len(cleaner.discarded_elements) == 3
    assert cleaner.discarded_attributes == []

    cleaner = Cleaner(simple_text()).track_discarded_attributes()
    cleaner.clean(parse_html(h))
    assert cleaner.discarded_elements == []
    assert [el.tagName for el in cleaner.discarded_attributes] == ["b"]

    cleaner = Cleaner(simple_text()).track_discarded_elements().track_discarded_attributes()
    cleaner.clean(parse_html(h))
    assert [el.tagName for el in cleaner.discarded_elements] == ["div", "p", "a"]
    assert [el.tagName for el in cleaner.discarded_attributes] == ["b"]

def test_discard_logs_are_per_run() -> None:
    cleaner = Cleaner(simple_text())
    cleaner.clean(parse_html("<div>x</div>"))
    cleaner.track_discarded_elements()
    assert cleaner.discarded_elements == []

    cleaner.clean(parse_html("<div>x</div><p>y</p>"))
    assert len(cleaner.discarded_elements) == 2
    cleaner.clean(parse_html("<b>x</b>"))
    assert cleaner.discarded_elements == []

def test_discarded_records_are_copies() -> None:
    doc = parse_html("<div class=c>Hello <b id=bar>there</b>!</div>")
    cleaner = Cleaner(simple_text()).track_discarded_elements().track_discarded_attributes()
    clean = cleaner.clean(doc)

    body = doc.body
    assert body is not None
    div = body.firstChild
    b = div.childNodes[1]

    record = cleaner.discarded_elements[0]
    assert record.parentNode is None
    record.setAttribute("id", "unique")
    assert cleaner.discarded_elements[0].toxml() == '<div class="c">Hello <b id="bar">there</b>!</div>'
    assert not div.hasAttribute("id")

    record = cleaner.discarded_attributes[0]
    record.setAttribute("class", "unique")
    assert cleaner.discarded_attributes[0].attributes.items() == [("id", "bar")]
    assert b.attributes.items() == [("id", "bar")]
    assert clean.body_html() == "Hello <b>there</b>!"

def test_cleaner_per_thread() -> None:
    safelist = simple_text()
    inputs = ["<div>%d<p>x</p></div>" % (i,) for i in range(16)]

    def run(h : str) -> tuple[str, list[str]]:
        cleaner = Cleaner(safelist).track_discarded_elements()
        res = cleaner.clean(parse_body_fragment(h)).body_html()
        return res, [el.tagName for el in cleaner.discarded_elements]

    with _cf.ThreadPoolExecutor(4) as pool:
        results = list(pool.map(run, inputs))

    for i, (res, discarded) in enumerate(results):
        assert res == "%dx" % (i,)
        assert discarded == ["div", "p"]
