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

import typing as _t

from gettext import gettext

from kisstdlib.failure import *
from kisstdlib.io.stdio import stdin

__all__ = ["read_input"]

def read_input(path : str, binary : bool = False) -> str | bytes:
    """Read all of `path`, with `-` meaning `stdin`."""
    if path == "-":
        data = stdin.read_all_bytes()
    else:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise Failure(gettext("failed to read `%s`: %s"), path, exc.strerror) from exc

    if binary:
        return data
    return data.decode("utf-8")

def test_read_input(tmp_path : _t.Any) -> None:
    path = tmp_path / "input.html"
    path.write_bytes("<p>café</p>".encode("utf-8"))
    assert read_input(str(path), True) == b"<p>caf\xc3\xa9</p>"
    assert read_input(str(path)) == "<p>café</p>"

    missing = str(tmp_path / "missing.html")
    try:
        read_input(missing)
    except Failure as exc:
        assert str(exc).startswith("failed to read `%s`: " % (missing,))
    else:
        assert False
