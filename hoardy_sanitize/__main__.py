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

import os as _os
import subprocess as _subprocess
import sys as _sys
import typing as _t

from gettext import gettext

from kisstdlib import argparse_ext as argparse
from kisstdlib import setup_kisstdlib, run_kisstdlib_main
from kisstdlib.io.stdio import *
from kisstdlib.logging_ext import *

from .util import *
from .safelist import *
from .dom import *
from .cleaner import *

__prog__ = "hoardy-sanitize"
__version__ = "0.1.0"

def _split_spec(what : str, value : str, parts : int) -> list[str]:
    res = value.rsplit(":", parts - 1)
    if len(res) != parts or any(x == "" for x in res):
        raise InvalidConfiguration(gettext("malformed `%s` value `%s`"), what, value)
    return res

def make_safelist(cargs : _t.Any) -> Safelist:
    """Build a `Safelist` from command line options."""
    safelist = safelists[cargs.safelist]()

    if len(cargs.allow_tags) > 0:
        safelist.add_tags(*cargs.allow_tags)
    for spec in cargs.allow_attributes:
        tag, attr = _split_spec("--allow-attribute", spec, 2)
        safelist.add_attributes(tag, attr)
    for spec in cargs.allow_protocols:
        tag, attr, protocol = _split_spec("--allow-protocol", spec, 3)
        safelist.add_protocols(tag, attr, protocol)
    for spec in cargs.enforce:
        lhs, eq, value = spec.partition("=")
        if eq == "":
            raise InvalidConfiguration(gettext("malformed `%s` value `%s`"), "--enforce", spec)
        tag, attr = _split_spec("--enforce", lhs, 2)
        safelist.add_enforced_attribute(tag, attr, value)
    if len(cargs.remove_tags) > 0:
        safelist.remove_tags(*cargs.remove_tags)
    if cargs.preserve_relative_links:
        safelist.set_preserve_relative_links()
    return safelist

def make_settings(cargs : _t.Any) -> OutputSettings:
    settings = parse_output_options(cargs.output)
    if cargs.charset is not None:
        settings.charset = cargs.charset
    return settings

def load_document(cargs : _t.Any) -> Document:
    if cargs.document:
        data = read_input(cargs.path, True)
        return parse_html(data, cargs.base_url)
    data = read_input(cargs.path)
    assert isinstance(data, str)
    return parse_body_fragment(data, cargs.base_url)

def report_discarded(cleaner : Cleaner, base_url : str) -> None:
    for el in cleaner.discarded_elements:
        warning(gettext("discarded element `%s`: %s"), el.tagName, el.toxml())
    for el in cleaner.discarded_attributes:
        names = [name for name, value in el.attributes.items()
                 if not cleaner.safelist.is_safe_attribute(el.tagName, name, value, base_url)]
        warning(gettext("discarded attributes of element `%s`: %s"), el.tagName, ", ".join(names))

def cmd_clean(cargs : _t.Any) -> None:
    cleaner = Cleaner(make_safelist(cargs))
    if cargs.report_discarded:
        cleaner.track_discarded_elements().track_discarded_attributes()

    dirty = load_document(cargs)
    settings = make_settings(cargs)
    if cargs.charset is None and cargs.document:
        settings.charset = dirty.settings.charset
    dirty.settings = settings

    clean = cleaner.clean(dirty)
    if cargs.report_discarded:
        report_discarded(cleaner, dirty.base_url)

    if cargs.document:
        res = clean.document_html()
    else:
        res = clean.body_html()
    stdout.write_bytes(res.encode(clean.settings.charset))
    if not res.endswith("\n"):
        stdout.write_bytes(b"\n")
    stdout.flush()

def cmd_validate(cargs : _t.Any) -> None:
    cleaner = Cleaner(make_safelist(cargs))

    if cargs.document:
        valid = cleaner.is_valid(load_document(cargs))
    else:
        data = read_input(cargs.path)
        assert isinstance(data, str)
        valid = cleaner.is_valid_body_html(data)

    if not valid:
        if cargs.path == "-":
            die(gettext("input is not valid"), code=1)
        die(gettext("`%s` is not valid"), cargs.path, code=1)

def cmd_safelist(cargs : _t.Any) -> None:
    safelist = make_safelist(cargs)
    stdout.write_str_ln("tags: " + " ".join(sorted(safelist.tag_names)))
    for tag in sorted(safelist.attributes):
        stdout.write_str_ln("attributes %s: %s" % (tag, " ".join(sorted(safelist.attributes[tag]))))
    for tag in sorted(safelist.enforced_attributes):
        enforced = safelist.enforced_attributes[tag]
        stdout.write_str_ln("enforced %s: %s" % (tag, " ".join("%s=%s" % (k, enforced[k]) for k in sorted(enforced))))
    for tag, attr in sorted(safelist.protocols):
        stdout.write_str_ln("protocols %s %s: %s" % (tag, attr, " ".join(sorted(safelist.protocols[(tag, attr)]))))
    stdout.write_str_ln("preserve_relative_links: " + ("true" if safelist.preserve_relative_links else "false"))
    stdout.flush()

def add_safelist_options(cmd : argparse.BetterArgumentParser) -> None:
    _ = gettext

    agrp = cmd.add_argument_group(_("safelist"))
    agrp.add_argument("-s", "--safelist", choices=list(safelists.keys()), default="relaxed",
                      help=_("start from this preset; default: `%(default)s`"))
    agrp.add_argument("--allow-tag", metavar="TAG", dest="allow_tags", action="append", default=[],
                      help=_("allow elements with this tag; can be specified multiple times"))
    agrp.add_argument("--allow-attribute", metavar="TAG:ATTR", dest="allow_attributes", action="append", default=[],
                      help=_(f"allow this attribute on this tag, use `{ALL}` as `TAG` to allow it on all tags; can be specified multiple times"))
    agrp.add_argument("--allow-protocol", metavar="TAG:ATTR:PROTOCOL", dest="allow_protocols", action="append", default=[],
                      help=_("restrict URLs in this attribute of this tag to this protocol, use `#` as `PROTOCOL` to allow same-document anchors; can be specified multiple times"))
    agrp.add_argument("--enforce", metavar="TAG:ATTR=VALUE", action="append", default=[],
                      help=_("force this attribute to this value on all elements with this tag; can be specified multiple times"))
    agrp.add_argument("--remove-tag", metavar="TAG", dest="remove_tags", action="append", default=[],
                      help=_("forbid elements with this tag, together with all its attribute rules; can be specified multiple times"))
    agrp.add_argument("--preserve-relative-links", action="store_true",
                      help=_("keep relative URLs as-is instead of making them absolute"))

def add_input_options(cmd : argparse.BetterArgumentParser) -> None:
    _ = gettext

    cmd.add_argument("-u", "--base-url", default="",
                     help=_("base URL used to resolve relative URLs; relative URLs in protocol-restricted attributes get dropped when this is not set"))
    cmd.add_argument("--document", action="store_true",
                     help=_("treat input as a full HTML document instead of a piece of `body` HTML"))
    cmd.add_argument("path", metavar="PATH", nargs="?", default="-",
                     help=_("input file, `-` for `stdin`; default: `%(default)s`"))

def make_argparser() -> argparse.BetterArgumentParser:
    _ = gettext

    parser = argparse.BetterArgumentParser(
        prog=__prog__,
        add_version=True,
        version=__version__,
        description=_("Clean untrusted HTML with safelists of allowed tags, attributes, and URL protocols."))
    parser.add_argument("-v", "--verbose", action="store_true", help=_("log debugging messages"))

    subparsers = parser.add_subparsers(title="subcommands", dest="command", required=True)

    cmd = subparsers.add_parser("clean", help=_("clean HTML and print the result"),
                                description=_("Clean HTML from `PATH` with a safelist and print the result to `stdout`."))
    add_safelist_options(cmd)
    add_input_options(cmd)
    agrp = cmd.add_argument_group(_("output"))
    agrp.add_argument("--output", metavar="OPTIONS", default="defaults",
                      help=_("comma-separated list of `+option` and `-option` flags to set output options with; known options: " + \
                             ", ".join(["pretty", "xml"] + OutputBoolOptions) + "; default: `%(default)s`"))
    agrp.add_argument("--charset", default=None,
                      help=_("output charset, characters not representable in it will be written as character references; default: `utf-8` or input document's charset with `--document`"))
    agrp.add_argument("--report-discarded", action="store_true",
                      help=_("log a warning for each discarded element and each element that lost some of its attributes"))
    cmd.set_defaults(func=cmd_clean)

    cmd = subparsers.add_parser("validate", help=_("check that HTML is already clean"),
                                description=_("Check that cleaning HTML from `PATH` with a safelist would not change anything and exit with code 1 if it would."))
    add_safelist_options(cmd)
    add_input_options(cmd)
    cmd.set_defaults(func=cmd_validate)

    cmd = subparsers.add_parser("safelist", help=_("print safelist rules"),
                                description=_("Print the rules of a safelist built from given options."))
    add_safelist_options(cmd)
    cmd.set_defaults(func=cmd_safelist)

    return parser

def run(cargs : _t.Any) -> None:
    try:
        cargs.func(cargs)
    except (InvalidConfiguration, OutputOptionsError) as exc:
        die("%s", exc.get_message(gettext), code=2)

def main() -> None:
    setup_result = setup_kisstdlib(__prog__)
    _counter, handler = setup_result

    parser = make_argparser()
    cargs = parser.parse_args(_sys.argv[1:])

    if cargs.verbose:
        handler.setLevel(DEBUG)

    run_kisstdlib_main(setup_result, run, cargs)

def _run_cli(args : list[str], data : bytes = b"") -> tuple[int, bytes, bytes]:
    root = _os.path.dirname(_os.path.dirname(_os.path.abspath(__file__)))
    env = dict(_os.environ)
    env["PYTHONPATH"] = _os.pathsep.join([root] + ([env["PYTHONPATH"]] if "PYTHONPATH" in env else []))
    res = _subprocess.run([_sys.executable, "-m", "hoardy_sanitize"] + args,
                          input=data, capture_output=True, env=env, cwd=root)
    return res.returncode, res.stdout, res.stderr

def test_make_safelist() -> None:
    parser = make_argparser()
    cargs = parser.parse_args(["safelist", "-s", "basic",
                               "--allow-tag", "img",
                               "--allow-attribute", "img:src",
                               "--allow-attribute", ":all:class",
                               "--allow-protocol", "img:src:https",
                               "--allow-protocol", "a:href:#",
                               "--enforce", "a:target=_blank",
                               "--remove-tag", "blockquote",
                               "--preserve-relative-links"])
    sl = make_safelist(cargs)
    assert sl.is_safe_tag("img")
    assert sl.attributes["img"] == {"src"}
    assert sl.attributes[ALL] == {"class"}
    assert sl.protocols[("img", "src")] == {"https"}
    assert "#" in sl.protocols[("a", "href")]
    assert sl.get_enforced_attributes("a") == {"rel": "nofollow", "target": "_blank"}
    assert not sl.is_safe_tag("blockquote")
    assert sl.preserve_relative_links

def test_make_safelist_errors() -> None:
    parser = make_argparser()
    for args in [["--allow-attribute", "img"],
                 ["--allow-attribute", "img:"],
                 ["--allow-protocol", "img:src"],
                 ["--enforce", "a:rel"],
                 ["--enforce", "a=nofollow"],
                 ["--allow-protocol", "a:title:http"],
                 ["--allow-tag", "noscript"]]:
        cargs = parser.parse_args(["safelist"] + args)
        try:
            make_safelist(cargs)
        except InvalidConfiguration:
            pass
        else:
            assert False, "expected an InvalidConfiguration for %s" % (repr(args),)

def test_make_settings() -> None:
    parser = make_argparser()
    cargs = parser.parse_args(["clean", "--output", "+xml,-optional_tags", "--charset", "ascii"])
    settings = make_settings(cargs)
    assert settings.syntax == Syntax.XML
    assert not settings.optional_tags
    assert settings.charset == "ascii"

def test_cli_clean() -> None:
    code, out, _err = _run_cli(["clean", "-s", "basic"], b"<p>hi<script>x</script></p>")
    assert code == 0
    assert out == b"<p>hi</p>\n"

    # the default preset is `relaxed`
    code, out, _err = _run_cli(["clean"], b'<h1>x</h1><iframe src="x"></iframe>')
    assert code == 0
    assert out == b"<h1>x</h1>\n"

    code, out, _err = _run_cli(["clean", "-s", "basic", "--document", "-u", "http://example.com/"],
                               b'<html><head><title>t</title></head><body><a href="/x">l</a></body></html>')
    assert code == 0
    assert b'<a href="http://example.com/x" rel="nofollow">l</a>' in out
    assert b"<title>" not in out

def test_cli_clean_report_discarded() -> None:
    code, out, err = _run_cli(["clean", "-s", "basic", "--report-discarded"],
                              b'<p onclick="x">hi<script>y</script></p>')
    assert code == 0
    assert out == b"<p>hi</p>\n"
    assert b"discarded element `script`" in err
    assert b"discarded attributes of element `p`: onclick" in err
    assert b"There were 2 warnings!" in err

def test_cli_validate() -> None:
    code, out, err = _run_cli(["validate", "-s", "basic"], b"<p>hi</p>")
    assert code == 0
    assert out == b""

    code, out, err = _run_cli(["validate", "-s", "basic"], b'<p onclick="x">hi</p>')
    assert code == 1
    assert b"input is not valid" in err

def test_cli_safelist() -> None:
    code, out, _err = _run_cli(["safelist", "-s", "simple_text"])
    assert code == 0
    assert out == b"tags: b em i strong u\npreserve_relative_links: false\n"

    code, out, _err = _run_cli(["safelist"])
    assert code == 0
    assert b"protocols img src: http https\n" in out

def test_cli_errors() -> None:
    code, out, err = _run_cli(["safelist", "--allow-protocol", "a:title:http"])
    assert code == 2
    assert out == b""
    assert b"can't add protocols to `title` attribute of `a` because it is not allowed" in err

    code, _out, err = _run_cli(["safelist", "--allow-attribute", "img"])
    assert code == 2
    assert b"malformed `--allow-attribute` value `img`" in err

    code, _out, err = _run_cli(["clean", "--output", "+nonsense"], b"<p>hi</p>")
    assert code == 2
    assert b"unknown output option `+nonsense`" in err

    code, _out, _err = _run_cli(["clean", "-s", "bogus"], b"")
    assert code == 2

if __name__ == "__main__":
    main()
