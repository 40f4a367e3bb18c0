# Copyright (c) 2023-2024 Jan Malakhovski <oxij@oxij.org>
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

"""Parsing and serialization of HTML documents.

Documents are `xml.dom.minidom` trees built by `html5lib`, wrapped into
`Document` objects that also remember their base URL, output settings, and
parse errors.
"""

import dataclasses as _dc
import enum as _enum
import itertools as _itertools
import typing as _t
import urllib.parse as _up
import xml.dom as _xd
import xml.dom.minidom as _md

import html5lib as _h5
import html5lib.constants as _h5c
import html5lib.filters.base as _h5fb
import html5lib.filters.whitespace as _h5ws
import html5lib.filters.optionaltags as _h5ot

from kisstdlib.failure import *

__all__ = ["Document", "Element", "Node", "OutputBoolOptions", "OutputOptionsError", "OutputSettings",
           "ParseIssue", "Syntax", "child_elements", "create_shell", "htmlns",
           "parse_body_fragment", "parse_html", "parse_output_options", "render_html"]

htmlns = _h5c.namespaces["html"]

HTML5Token = dict[str, _t.Any]
Node : _t.TypeAlias = _md.Node
Element : _t.TypeAlias = _md.Element

_html5treebuilder = _h5.treebuilders.getTreeBuilder("dom")
_html5walker = _h5.treewalkers.getTreeWalker("dom")

class Syntax(_enum.Enum):
    HTML = 0
    XML = 1

class OutputOptionsError(ParsingFailure): pass

@_dc.dataclass
class OutputSettings:
    # characters not representable in this charset get written as character references
    charset : str = _dc.field(default="utf-8")
    syntax : Syntax = _dc.field(default=Syntax.HTML)
    indent : bool = _dc.field(default=False)
    indent_step : int = _dc.field(default=2)
    whitespace : bool = _dc.field(default=True)
    optional_tags : bool = _dc.field(default=True)
    quote_attr_values : bool = _dc.field(default=True)
    escape_lt_in_attrs : bool = _dc.field(default=False)
    escape_rcdata : bool = _dc.field(default=False)
    alphabetical_attributes : bool = _dc.field(default=False)

    def copy(self) -> "OutputSettings":
        return _dc.replace(self)

    def serializer_options(self) -> dict[str, _t.Any]:
        xml = self.syntax == Syntax.XML
        return dict(quote_attr_values = "always" if self.quote_attr_values or xml else "legacy",
                    quote_char = '"',
                    use_best_quote_char = False,
                    minimize_boolean_attributes = not xml,
                    use_trailing_solidus = xml,
                    space_before_trailing_solidus = xml,
                    escape_lt_in_attrs = self.escape_lt_in_attrs,
                    escape_rcdata = self.escape_rcdata or xml,
                    alphabetical_attributes = self.alphabetical_attributes,
                    inject_meta_charset = False,
                    strip_whitespace = False,
                    omit_optional_tags = False)

OutputBoolOptions = ["indent", "whitespace", "optional_tags", "quote_attr_values",
                     "escape_lt_in_attrs", "escape_rcdata", "alphabetical_attributes"]

def parse_output_options(optstr : str, settings : OutputSettings | None = None) -> OutputSettings:
    """Parse a comma-separated list of `+option` and `-option` flags into
       `OutputSettings`, e.g. `+pretty,-optional_tags,+xml`.
    """
    res = settings.copy() if settings is not None else OutputSettings()
    if optstr in ("", "defaults"):
        return res

    for opt in optstr.split(","):
        oname = opt[1:]
        value = opt.startswith("+")
        if not value and not opt.startswith("-"):
            raise OutputOptionsError("unknown output option `%s`", opt)

        if oname == "pretty":
            res.whitespace = not value
            res.indent = value
        elif oname == "xml":
            res.syntax = Syntax.XML if value else Syntax.HTML
        elif oname in OutputBoolOptions:
            setattr(res, oname, value)
        else:
            raise OutputOptionsError("unknown output option `%s`", opt)
    return res

# HTML elements that must preserve space
_spacePreserveElements = _h5ws.Filter.spacePreserveElements
# HTML elements that ignore space completely (and so it can be added or removed arbitrarily)
_space_okElements = frozenset(["html", "head", "frameset"])

class IndentFilter(_h5fb.Filter):
    """html5lib filter that pretty-prints HTML by turning insignificant
       whitespace into newlines followed by indent.

       Inside elements that preserve space nothing gets changed.
    """

    def __init__(self, source : _t.Iterable[HTML5Token], step : int = 2) -> None:
        super().__init__(source)
        self.step = step

    def __iter__(self) -> _t.Iterator[HTML5Token]:
        stack : list[str] = []
        depth = 0
        preserving = 0
        after_space = True
        line_start = True

        def indent() -> _t.Iterator[HTML5Token]:
            if after_space or len(stack) == 0 or stack[-1] in _space_okElements:
                data = ("" if line_start else "\n") + " " * (self.step * depth)
                if data != "":
                    yield {"type": "SpaceCharacters", "data": data}

        for token in super().__iter__():
            typ = token["type"]
            if typ == "Doctype":
                pass
            elif typ == "EmptyTag":
                if preserving == 0:
                    yield from indent()
            elif typ == "StartTag":
                name = token["name"]
                stack.append(name)
                if preserving == 0:
                    yield from indent()
                depth += 1
                if preserving != 0 or name in _spacePreserveElements:
                    preserving += 1
            elif typ == "EndTag":
                depth -= 1
                if preserving == 0:
                    yield from indent()
                else:
                    preserving -= 1
                stack.pop()
            elif preserving == 0:
                if typ == "SpaceCharacters":
                    after_space = True
                    continue
                yield from indent()

            yield token
            if typ == "SpaceCharacters":
                after_space = True
                line_start = token["data"][-1:] == "\n"
            else:
                after_space = False
                line_start = False

@_dc.dataclass
class ParseIssue:
    line : int
    column : int
    code : str
    message : str

    def __str__(self) -> str:
        return "%d:%d: %s" % (self.line, self.column, self.message)

def _parse_issues(parser : _h5.html5parser.HTMLParser) -> list[ParseIssue]:
    res = []
    for (line, col), code, datavars in parser.errors:
        pattern = _h5c.E.get(code, code)
        try:
            message = pattern % datavars
        except (KeyError, TypeError):
            message = pattern
        res.append(ParseIssue(line, col, code, message))
    return res

def child_elements(node : Node, name : str | None = None) -> _t.Iterator[Element]:
    for child in node.childNodes:
        if child.nodeType == _xd.Node.ELEMENT_NODE and (name is None or child.tagName == name):
            yield child

def _first(it : _t.Iterator[Element]) -> Element | None:
    return next(it, None)

@_dc.dataclass
class Document:
    dom : _md.Document
    base_url : str = _dc.field(default="")
    settings : OutputSettings = _dc.field(default_factory=OutputSettings)
    errors : list[ParseIssue] = _dc.field(default_factory=list)

    @property
    def head(self) -> Element | None:
        return _first(child_elements(self.dom.documentElement, "head"))

    @property
    def body(self) -> Element | None:
        """The `body` element, or the `frameset` element for frameset documents."""
        html = self.dom.documentElement
        res = _first(child_elements(html, "body"))
        if res is None:
            res = _first(child_elements(html, "frameset"))
        return res

    def body_html(self) -> str:
        body = self.body
        if body is None:
            return ""
        return render_html(body.childNodes, self.settings)

    def document_html(self) -> str:
        return render_html([self.dom], self.settings)

def _parse(data : str | bytes, protocol_encoding : str | None, fragment : bool) \
        -> tuple[Node, list[ParseIssue], str | None]:
    parser = _h5.html5parser.HTMLParser(_html5treebuilder)
    kwargs : dict[str, _t.Any] = {}
    if isinstance(data, bytes):
        kwargs["likely_encoding"] = protocol_encoding
    if fragment:
        dom = parser.parseFragment(data, container="body", **kwargs)
    else:
        dom = parser.parse(data, **kwargs)

    charset = None
    if isinstance(data, bytes):
        charset = parser.tokenizer.stream.charEncoding[0].name
    return dom, _parse_issues(parser), charset

def create_shell(base_url : str = "", settings : OutputSettings | None = None) -> Document:
    """Create an empty document with only `html`, `head`, and `body` elements."""
    dom, _, _ = _parse("", None, False)
    return Document(dom, base_url, settings if settings is not None else OutputSettings())

def parse_html(data : str | bytes,
               base_url : str = "",
               protocol_encoding : str | None = None) -> Document:
    """Parse a full HTML document.

       The first `<base href>` in `<head>` sets the document's base URL,
       resolved against the given `base_url`.
    """
    dom, errors, charset = _parse(data, protocol_encoding, False)
    settings = OutputSettings()
    if charset is not None:
        settings.charset = charset

    res = Document(dom, base_url, settings, errors)
    head = res.head
    if head is not None:
        for el in child_elements(head, "base"):
            if not el.hasAttribute("href"):
                continue
            href = el.getAttribute("href").strip()
            try:
                res.base_url = _up.urljoin(base_url, href)
            except ValueError:
                pass
            # can only be set once
            break
    return res

def parse_body_fragment(data : str, base_url : str = "") -> Document:
    """Parse a piece of HTML as if it was the contents of `<body>` and put the
       result into a fresh document shell.
    """
    fragment, errors, _ = _parse(data, None, True)
    res = create_shell(base_url)
    res.errors = errors
    body = res.body
    assert body is not None
    for node in fragment.childNodes:
        body.appendChild(res.dom.importNode(node, True))
    return res

def render_html(nodes : _t.Iterable[Node], settings : OutputSettings) -> str:
    """Serialize given nodes, one after another, using given settings."""
    walker : _t.Iterable[HTML5Token] = _itertools.chain.from_iterable(map(_html5walker, nodes))
    if not settings.whitespace:
        walker = _h5ws.Filter(walker)
    if settings.indent:
        walker = IndentFilter(walker, settings.indent_step)
    if not settings.optional_tags:
        walker = _h5ot.Filter(walker)

    serializer = _h5.serializer.HTMLSerializer(**settings.serializer_options())
    return serializer.render(walker, settings.charset).decode(settings.charset) # type: ignore

def test_parse_output_options() -> None:
    assert parse_output_options("defaults") == OutputSettings()

    opts = parse_output_options("+pretty,-optional_tags,+xml")
    assert opts.indent and not opts.whitespace
    assert not opts.optional_tags
    assert opts.syntax == Syntax.XML

    base = OutputSettings(charset="ascii")
    opts = parse_output_options("+alphabetical_attributes", base)
    assert opts.charset == "ascii" and opts.alphabetical_attributes
    assert not base.alphabetical_attributes

    for bad in ["pretty", "+nonsense", "+indent,whitespace"]:
        try:
            parse_output_options(bad)
        except OutputOptionsError:
            pass
        else:
            assert False, "expected an OutputOptionsError for `%s`" % (bad,)

def test_parse_html() -> None:
    doc = parse_html("<!DOCTYPE html><title>T</title><p class=x>Hello <b>there</b>")
    assert doc.head is not None and doc.head.firstChild.tagName == "title"
    assert doc.body is not None and doc.body_html() == '<p class="x">Hello <b>there</b></p>'
    assert doc.errors == []
    assert doc.document_html() == '<!DOCTYPE html><html><head><title>T</title></head><body><p class="x">Hello <b>there</b></p></body></html>'

    doc = parse_html("<p>no doctype</p>")
    assert len(doc.errors) == 1
    assert doc.errors[0].code == "expected-doctype-but-got-start-tag"

def test_parse_html_base() -> None:
    doc = parse_html("<head><base href='/sub/'><base href='/other/'></head>", "http://example.com/dir/")
    assert doc.base_url == "http://example.com/sub/"

    doc = parse_html("<body><base href='/sub/'></body>", "http://example.com/dir/")
    assert doc.base_url == "http://example.com/dir/"

def test_parse_html_bytes() -> None:
    doc = parse_html("<meta charset=windows-1251><p>привет".encode("windows-1251"))
    assert doc.settings.charset == "windows-1251"
    assert doc.body_html() == "<p>привет</p>"

def test_parse_body_fragment() -> None:
    doc = parse_body_fragment("<p>One</p>Two<!-- c -->", "http://example.com/")
    assert doc.base_url == "http://example.com/"
    assert doc.errors == []
    assert doc.head is not None and not doc.head.hasChildNodes()
    assert doc.body_html() == "<p>One</p>Two<!-- c -->"

    doc = parse_body_fragment("<html><body><p>x</p></body></html>")
    assert len(doc.errors) > 0
    assert doc.body_html() == "<p>x</p>"

def test_render_html() -> None:
    doc = parse_body_fragment('<p title=\'say "hi"\'>a &amp; b &lt; c<br>café</p>')
    assert doc.body_html() == '<p title="say &quot;hi&quot;">a &amp; b &lt; c<br>café</p>'

    doc.settings.syntax = Syntax.XML
    assert doc.body_html() == '<p title="say &quot;hi&quot;">a &amp; b &lt; c<br />café</p>'

    doc.settings = OutputSettings(charset="ascii")
    assert doc.body_html() == '<p title="say &quot;hi&quot;">a &amp; b &lt; c<br>caf&eacute;</p>'

def test_render_html_whitespace() -> None:
    doc = parse_body_fragment("<div><p>a</p>   <p>b  c</p></div><pre>  x  </pre>")
    doc.settings.whitespace = False
    assert doc.body_html() == "<div><p>a</p> <p>b c</p></div><pre>  x  </pre>"

    doc.settings.indent = True
    assert doc.body_html() == "<div><p>a</p>\n  <p>b c</p></div><pre>  x  </pre>"

def test_render_html_optional_tags() -> None:
    doc = parse_body_fragment("<ul><li>a</li><li>b</li></ul>")
    assert doc.body_html() == "<ul><li>a</li><li>b</li></ul>"
    doc.settings.optional_tags = False
    assert doc.body_html() == "<ul><li>a<li>b</ul>"
