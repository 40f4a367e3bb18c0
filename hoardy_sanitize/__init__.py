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

"""Safelist-based HTML sanitizer."""

from .url import check_protocol, ResolutionFailure
from .safelist import ALL, InvalidConfiguration, Safelist, safelists, \
    none, simple_text, basic, basic_with_images, relaxed
from .dom import Document, OutputSettings, OutputOptionsError, ParseIssue, Syntax, \
    create_shell, parse_html, parse_body_fragment, parse_output_options, render_html
from .cleaner import DROP_CONTENT_TAGS, Cleaner, clean_html, is_valid_html
