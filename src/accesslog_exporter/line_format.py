from __future__ import annotations

import re
from typing import Dict, Mapping, Optional

from accesslog_exporter.errors import LineParseError

DEFAULT_FORMAT = (
    '$remote_addr - $remote_user [$time_local] "$request" $status $body_bytes_sent '
    '"$http_referer" "$http_user_agent" "$http_x_forwarded_for"'
)

_PLACEHOLDER_RE = re.compile(r"\$(\w+)")


def compile_format(template: str) -> "re.Pattern[str]":
    """
    Turns an nginx-style log_format template into a regex.

    Literal text must match exactly. Every $name captures up to the literal
    character that follows it in the template:
      '$status $body_bytes_sent' -> (?P<status>[^ ]*) (?P<body_bytes_sent>.*)
    """
    parts = []
    seen = set()
    pos = 0
    for m in _PLACEHOLDER_RE.finditer(template):
        name = m.group(1)
        parts.append(re.escape(template[pos:m.start()]))
        following = template[m.end():m.end() + 1]
        body = f"[^{re.escape(following)}]*" if following else ".*"
        if name in seen:
            # a field repeated in the format keeps its first value
            parts.append(f"(?:{body})")
        else:
            parts.append(f"(?P<{name}>{body})")
            seen.add(name)
        pos = m.end()
    parts.append(re.escape(template[pos:]))
    return re.compile("".join(parts))


class LineFormat:
    """
    Field extractor for one namespace. Stateless, safe to share across threads.

    A line has to fit the template from its start; anything after is ignored.
    """

    def __init__(self, template: str):
        self.template = template
        self._re = compile_format(template)

    def parse(self, line: str) -> Dict[str, str]:
        m = self._re.match(line.rstrip("\r\n"))
        if not m:
            raise LineParseError(line)
        return m.groupdict()


def float_field(record: Mapping[str, str], name: str) -> Optional[float]:
    """Numeric value of a field, or None when it is missing, '-' or not a number."""
    raw = record.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw or raw == "-":
        return None
    try:
        return float(raw)
    except ValueError:
        return None
