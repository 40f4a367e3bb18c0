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

"""Safelists: declarative policies of allowed HTML tags, attributes, and URL protocols.

A `Safelist` starts empty and everything not explicitly allowed by it is
forbidden. Builder methods return the `Safelist` itself, so calls can be
chained:

```
safelist = basic().add_tags("img").add_attributes("img", "src", "alt").add_protocols("img", "src", "https")
```
"""

import dataclasses as _dc
import re as _re
import typing as _t

from kisstdlib.failure import *

from .url import *

__all__ = ["ALL", "InvalidConfiguration", "Safelist", "safelists",
           "none", "simple_text", "basic", "basic_with_images", "relaxed"]

# pseudo-tag for attributes allowed on every tag
ALL = ":all"

class InvalidConfiguration(Failure, ValueError): pass

name_re = _re.compile(r"^[^\s\"'<>/=]+$")

# `noscript` content gets parsed differently depending on whether scripting is
# enabled, so it can not be cleaned consistently
forbidden_tags = frozenset(["noscript"])

def _tag_name(tag : str, allow_all : bool = False) -> str:
    if tag == ALL:
        if allow_all:
            return tag
        raise InvalidConfiguration("`%s` pseudo-tag is not allowed here", tag)
    if not name_re.match(tag):
        raise InvalidConfiguration("invalid tag name `%s`", tag)
    ltag = tag.lower()
    if ltag in forbidden_tags:
        raise InvalidConfiguration("`%s` is not supported in safelists", ltag)
    return ltag

def _attr_name(attr : str) -> str:
    if not name_re.match(attr):
        raise InvalidConfiguration("invalid attribute name `%s`", attr)
    return attr.lower()

def _protocol_name(protocol : str) -> str:
    lprotocol = protocol.lower()
    if not protocol_re.match(lprotocol):
        raise InvalidConfiguration("invalid protocol `%s`", protocol)
    return lprotocol

def _nonempty(what : str, values : tuple[str, ...]) -> None:
    if len(values) == 0:
        raise InvalidConfiguration("no %s given", what)

@_dc.dataclass
class Safelist:
    tag_names : set[str] = _dc.field(default_factory=set)
    attributes : dict[str, set[str]] = _dc.field(default_factory=dict)
    enforced_attributes : dict[str, dict[str, str]] = _dc.field(default_factory=dict)
    protocols : dict[tuple[str, str], set[str]] = _dc.field(default_factory=dict)
    preserve_relative_links : bool = _dc.field(default=False)

    def copy(self) -> "Safelist":
        return Safelist({*self.tag_names},
                        {k: set(v) for k, v in self.attributes.items()},
                        {k: dict(v) for k, v in self.enforced_attributes.items()},
                        {k: set(v) for k, v in self.protocols.items()},
                        self.preserve_relative_links)

    def add_tags(self, *tags : str) -> "Safelist":
        names = [_tag_name(t) for t in tags]
        self.tag_names.update(names)
        return self

    def remove_tags(self, *tags : str) -> "Safelist":
        """Forbid given tags, together with all of their attribute and protocol rules."""
        names = [_tag_name(t) for t in tags]
        for tag in names:
            self.tag_names.discard(tag)
            self.attributes.pop(tag, None)
            self.enforced_attributes.pop(tag, None)
            for key in [k for k in self.protocols if k[0] == tag]:
                del self.protocols[key]
        return self

    def add_attributes(self, tag : str, *attrs : str) -> "Safelist":
        """Allow given attributes on `tag`, which also allows the `tag` itself,
           unless it is the `ALL` pseudo-tag.
        """
        tag = _tag_name(tag, True)
        _nonempty("attribute names", attrs)
        names = [_attr_name(a) for a in attrs]

        if tag != ALL:
            self.tag_names.add(tag)
        self.attributes.setdefault(tag, set()).update(names)
        return self

    def remove_attributes(self, tag : str, *attrs : str) -> "Safelist":
        """Forbid given attributes on `tag`.

           Removing attributes from the `ALL` pseudo-tag removes them from all tags.
           Protocol rules of removed attributes are removed too.
        """
        tag = _tag_name(tag, True)
        _nonempty("attribute names", attrs)
        names = [_attr_name(a) for a in attrs]

        tags = list(self.attributes.keys()) if tag == ALL else [tag]
        for t in tags:
            current = self.attributes.get(t)
            if current is None:
                continue
            current.difference_update(names)
            if len(current) == 0:
                del self.attributes[t]
            for attr in names:
                self.protocols.pop((t, attr), None)
        return self

    def add_enforced_attribute(self, tag : str, attr : str, value : str) -> "Safelist":
        """Set `attr` to `value` on every `tag` element, overwriting any existing value.
           Also allows the `tag` itself.
        """
        tag = _tag_name(tag)
        attr = _attr_name(attr)

        self.tag_names.add(tag)
        self.enforced_attributes.setdefault(tag, {})[attr] = value
        return self

    def remove_enforced_attribute(self, tag : str, attr : str) -> "Safelist":
        tag = _tag_name(tag)
        attr = _attr_name(attr)

        enforced = self.enforced_attributes.get(tag)
        if enforced is not None and attr in enforced:
            del enforced[attr]
            if len(enforced) == 0:
                del self.enforced_attributes[tag]
        return self

    def add_protocols(self, tag : str, attr : str, *protocols : str) -> "Safelist":
        """Restrict values of `attr` on `tag` to URLs with given protocols.

           Protocols are given without the trailing colon, e.g. `"https"`.
           The `"#"` pseudo-protocol allows same-document anchors.
           The attribute must already be allowed, either on `tag` or on `ALL`.
        """
        tag = _tag_name(tag, True)
        attr = _attr_name(attr)
        _nonempty("protocols", protocols)
        names = [_protocol_name(p) for p in protocols]

        if attr not in self.attributes.get(tag, ()) and attr not in self.attributes.get(ALL, ()):
            raise InvalidConfiguration("can't add protocols to `%s` attribute of `%s` because it is not allowed", attr, tag)

        self.protocols.setdefault((tag, attr), set()).update(names)
        return self

    def remove_protocols(self, tag : str, attr : str, *protocols : str) -> "Safelist":
        tag = _tag_name(tag, True)
        attr = _attr_name(attr)
        _nonempty("protocols", protocols)
        names = [_protocol_name(p) for p in protocols]

        current = self.protocols.get((tag, attr))
        if current is None:
            raise InvalidConfiguration("`%s` attribute of `%s` has no protocols to remove", attr, tag)

        current.difference_update(names)
        if len(current) == 0:
            del self.protocols[(tag, attr)]
        return self

    def set_preserve_relative_links(self, value : bool = True) -> "Safelist":
        """Keep relative links as-is instead of making them absolute.

           Relative links still have to resolve to an allowed protocol against the
           document's base URL to be kept.
        """
        self.preserve_relative_links = value
        return self

    def is_safe_tag(self, tag : str) -> bool:
        return tag.lower() in self.tag_names

    def _check_value(self, key : tuple[str, str], value : str, base_url : str) -> str | None:
        protocols = self.protocols.get(key)
        if protocols is None:
            return value
        return check_protocol(value, protocols, base_url, self.preserve_relative_links)

    def safe_attribute_value(self, tag : str, attr : str, value : str, base_url : str = "") -> str | None:
        """Decide if `attr` with `value` is allowed on `tag`.

           Returns the value to keep, which can differ from `value` when a
           relative link gets resolved, or `None` if the attribute must be dropped.
        """
        tag = tag.lower()
        attr = attr.lower()

        if attr in self.attributes.get(tag, ()):
            return self._check_value((tag, attr), value, base_url)

        enforced = self.enforced_attributes.get(tag)
        if enforced is not None and enforced.get(attr) == value:
            return value

        if tag != ALL and attr in self.attributes.get(ALL, ()):
            key = (tag, attr)
            if key not in self.protocols:
                key = (ALL, attr)
            return self._check_value(key, value, base_url)

        return None

    def is_safe_attribute(self, tag : str, attr : str, value : str, base_url : str = "") -> bool:
        return self.safe_attribute_value(tag, attr, value, base_url) is not None

    def get_enforced_attributes(self, tag : str) -> dict[str, str]:
        return dict(self.enforced_attributes.get(tag.lower(), {}))

def none() -> Safelist:
    """Allow only text nodes, all HTML will be stripped."""
    return Safelist()

def simple_text() -> Safelist:
    """Allow only simple text formatting: `b, em, i, strong, u`."""
    return Safelist().add_tags("b", "em", "i", "strong", "u")

def basic() -> Safelist:
    """Allow a fuller range of text nodes, but no images or tables.

       Links can point only to `http`, `https`, `ftp`, and `mailto` URLs and get
       `rel="nofollow"` enforced.
    """
    return Safelist() \
        .add_tags("a", "b", "blockquote", "br", "cite", "code", "dd", "dl", "dt", "em",
                  "i", "li", "ol", "p", "pre", "q", "small", "span", "strike", "strong",
                  "sub", "sup", "u", "ul") \
        .add_attributes("a", "href") \
        .add_attributes("blockquote", "cite") \
        .add_attributes("q", "cite") \
        .add_protocols("a", "href", "ftp", "http", "https", "mailto") \
        .add_protocols("blockquote", "cite", "http", "https") \
        .add_protocols("q", "cite", "http", "https") \
        .add_enforced_attribute("a", "rel", "nofollow")

def basic_with_images() -> Safelist:
    """Like `basic`, but also allow `img` tags with `http` and `https` sources."""
    return basic() \
        .add_tags("img") \
        .add_attributes("img", "align", "alt", "height", "src", "title", "width") \
        .add_protocols("img", "src", "http", "https")

def relaxed() -> Safelist:
    return Safelist() \
        .add_tags("a", "b", "blockquote", "br", "caption", "cite", "code", "col",
                  "colgroup", "dd", "div", "dl", "dt", "em", "h1", "h2", "h3", "h4", "h5", "h6",
                  "i", "img", "li", "ol", "p", "pre", "q", "small", "span", "strike", "strong",
                  "sub", "sup", "table", "tbody", "td", "tfoot", "th", "thead", "tr", "u",
                  "ul") \
        .add_attributes("a", "href", "title") \
        .add_attributes("blockquote", "cite") \
        .add_attributes("col", "span", "width") \
        .add_attributes("colgroup", "span", "width") \
        .add_attributes("img", "align", "alt", "height", "src", "title", "width") \
        .add_attributes("ol", "start", "type") \
        .add_attributes("q", "cite") \
        .add_attributes("table", "summary", "width") \
        .add_attributes("td", "abbr", "axis", "colspan", "rowspan", "width") \
        .add_attributes("th", "abbr", "axis", "colspan", "rowspan", "scope", "width") \
        .add_attributes("ul", "type") \
        .add_protocols("a", "href", "ftp", "http", "https", "mailto") \
        .add_protocols("blockquote", "cite", "http", "https") \
        .add_protocols("img", "src", "http", "https") \
        .add_protocols("q", "cite", "http", "https")

safelists : dict[str, _t.Callable[[], Safelist]] = {
    "none": none,
    "simple_text": simple_text,
    "basic": basic,
    "basic_with_images": basic_with_images,
    "relaxed": relaxed,
}

def test_builders() -> None:
    sl = Safelist().add_tags("P", "b").add_attributes("IMG", "SRC", "alt")
    assert sl.tag_names == {"p", "b", "img"}
    assert sl.attributes == {"img": {"src", "alt"}}

    sl.add_attributes(ALL, "class")
    assert ALL not in sl.tag_names
    assert sl.is_safe_attribute("p", "class", "x")
    assert sl.is_safe_attribute("img", "Class", "x")
    assert not sl.is_safe_attribute("p", "alt", "x")

    sl.add_enforced_attribute("a", "rel", "nofollow")
    assert sl.is_safe_tag("A")
    assert sl.get_enforced_attributes("a") == {"rel": "nofollow"}
    sl.get_enforced_attributes("a")["rel"] = "other"
    assert sl.get_enforced_attributes("a") == {"rel": "nofollow"}

    sl.remove_enforced_attribute("a", "rel")
    assert sl.enforced_attributes == {}
    assert sl.is_safe_tag("a")
    sl.remove_enforced_attribute("a", "rel")

def test_remove_tags() -> None:
    sl = basic().remove_tags("a", "B")
    assert not sl.is_safe_tag("a")
    assert not sl.is_safe_tag("b")
    assert "a" not in sl.attributes
    assert "a" not in sl.enforced_attributes
    assert ("a", "href") not in sl.protocols
    assert ("q", "cite") in sl.protocols

def test_remove_attributes() -> None:
    sl = relaxed().add_attributes(ALL, "class", "title")
    sl.remove_attributes(ALL, "title")
    assert sl.attributes["a"] == {"href"}
    assert sl.attributes["img"] == {"align", "alt", "height", "src", "width"}
    assert sl.attributes[ALL] == {"class"}

    sl.remove_attributes("img", "src")
    assert ("img", "src") not in sl.protocols
    sl.remove_attributes("ul", "type")
    assert "ul" not in sl.attributes
    assert sl.is_safe_tag("ul")

    # removing from a tag that has no attributes is fine
    sl.remove_attributes("strike", "title")

def test_protocols() -> None:
    sl = Safelist().add_attributes("a", "href").add_protocols("a", "href", "HTTPS", "#")
    assert sl.protocols == {("a", "href"): {"https", "#"}}
    assert sl.is_safe_attribute("a", "href", "https://example.com/")
    assert sl.is_safe_attribute("a", "href", "#top")
    assert not sl.is_safe_attribute("a", "href", "http://example.com/")

    sl.remove_protocols("a", "href", "https")
    assert sl.protocols == {("a", "href"): {"#"}}
    sl.remove_protocols("a", "href", "#")
    assert sl.protocols == {}
    # no protocol rules means any value goes
    assert sl.is_safe_attribute("a", "href", "javascript:alert(1)")

    try:
        sl.remove_protocols("a", "href", "http")
    except InvalidConfiguration:
        pass
    else:
        assert False

def test_all_protocols() -> None:
    sl = Safelist().add_tags("img", "p").add_attributes(ALL, "src") \
        .add_protocols(ALL, "src", "https") \
        .add_protocols("img", "src", "http")
    assert sl.is_safe_attribute("img", "src", "http://example.com/x.png")
    assert not sl.is_safe_attribute("img", "src", "https://example.com/x.png")
    assert sl.is_safe_attribute("p", "src", "https://example.com/x.png")
    assert not sl.is_safe_attribute("p", "src", "http://example.com/x.png")

def test_decision_order() -> None:
    # the tag's own rule wins over `ALL`, even when it drops the value
    sl = Safelist().add_attributes("a", "href").add_attributes(ALL, "href") \
        .add_protocols("a", "href", "https")
    assert not sl.is_safe_attribute("a", "href", "ftp://example.com/")
    assert sl.is_safe_attribute("b", "href", "ftp://example.com/")

    # an enforced value is acceptable as is, other values are not
    sl = basic()
    assert sl.is_safe_attribute("a", "rel", "nofollow")
    assert not sl.is_safe_attribute("a", "rel", "noopener")

def test_relative_links() -> None:
    sl = basic()
    assert sl.safe_attribute_value("a", "href", "/foo") is None
    assert sl.safe_attribute_value("a", "href", "/foo", "http://example.com/") == "http://example.com/foo"
    sl.set_preserve_relative_links()
    assert sl.safe_attribute_value("a", "href", "/foo", "http://example.com/") == "/foo"
    assert sl.safe_attribute_value("a", "href", "/foo") is None

def test_invalid_configuration() -> None:
    def fails(func : _t.Callable[[Safelist], _t.Any]) -> None:
        sl = basic()
        before = sl.copy()
        try:
            func(sl)
        except InvalidConfiguration:
            pass
        else:
            assert False, "expected an InvalidConfiguration"
        assert sl == before

    fails(lambda sl: sl.add_tags("p", ""))
    fails(lambda sl: sl.add_tags("img", "no script"))
    fails(lambda sl: sl.add_tags("img", "noscript"))
    fails(lambda sl: sl.add_tags("NOSCRIPT"))
    fails(lambda sl: sl.add_tags(ALL))
    fails(lambda sl: sl.add_attributes("p"))
    fails(lambda sl: sl.add_attributes("noscript", "class"))
    fails(lambda sl: sl.add_attributes("p", "class", ""))
    fails(lambda sl: sl.add_enforced_attribute("", "rel", "nofollow"))
    fails(lambda sl: sl.add_protocols("a", "title", "http"))
    fails(lambda sl: sl.add_protocols("a", "href"))
    fails(lambda sl: sl.add_protocols("a", "href", "http:"))
    fails(lambda sl: sl.add_protocols("a", "href", "https", "ja va"))
    fails(lambda sl: sl.remove_protocols("img", "src", "http"))
    fails(lambda sl: sl.remove_attributes("p"))

def test_copy() -> None:
    sl = basic()
    copy = sl.copy()
    assert copy == sl
    copy.add_tags("img").add_attributes("a", "title").add_protocols("a", "href", "irc")
    copy.add_enforced_attribute("a", "target", "_blank")
    assert not sl.is_safe_tag("img")
    assert sl.attributes["a"] == {"href"}
    assert sl.protocols[("a", "href")] == {"ftp", "http", "https", "mailto"}
    assert sl.get_enforced_attributes("a") == {"rel": "nofollow"}

def test_presets() -> None:
    assert none().tag_names == set()
    assert simple_text().tag_names == {"b", "em", "i", "strong", "u"}
    assert simple_text().attributes == {}

    b = basic()
    assert not b.is_safe_tag("img")
    assert b.attributes == {"a": {"href"}, "blockquote": {"cite"}, "q": {"cite"}}
    assert b.get_enforced_attributes("a") == {"rel": "nofollow"}

    bi = basic_with_images()
    assert bi.tag_names == b.tag_names | {"img"}
    assert bi.protocols[("img", "src")] == {"http", "https"}

    r = relaxed()
    assert r.is_safe_tag("table") and r.is_safe_tag("h6") and r.is_safe_tag("img")
    assert r.enforced_attributes == {}
    for sl in safelists.values():
        for tag in ["script", "style", "iframe", "object", "embed", "form", "noscript"]:
            assert not sl().is_safe_tag(tag)

def test_presets_build() -> None:
    for name, factory in safelists.items():
        sl = factory()
        assert isinstance(sl, Safelist), name
        for tag, attr in sl.protocols:
            assert attr in sl.attributes.get(tag, set()) or attr in sl.attributes.get(ALL, set()), \
                "%s: `%s` protocol rule without an attribute rule" % (name, (tag, attr))
        assert sl.copy() == sl, name

    r = relaxed()
    assert r.protocols == {
        ("a", "href"): {"ftp", "http", "https", "mailto"},
        ("blockquote", "cite"): {"http", "https"},
        ("img", "src"): {"http", "https"},
        ("q", "cite"): {"http", "https"},
    }

def test_invalid_configuration_message() -> None:
    try:
        basic().add_protocols("a", "title", "http")
    except InvalidConfiguration as exc:
        assert isinstance(exc, ValueError)
        assert str(exc) == "can't add protocols to `title` attribute of `a` because it is not allowed"
    else:
        assert False
