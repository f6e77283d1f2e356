"""
Identifier quoting, statement building, password generation and duration parsing.

Statements that interpolate role or database names are built with `statement()`,
which only accepts QuotedIdent values produced by `quote_ident()`. Everything
that is not an identifier is passed to psycopg2 as a bound parameter.
"""

import os
import re
import logging
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

from psycopg2 import sql

from tenantdb.config import LOGGER_NAME
from tenantdb.errors import SpecError

logger = logging.getLogger(LOGGER_NAME).getChild("pgutil")

PASSWORD_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    "0123456789"
    "-_"
)
DEFAULT_PASSWORD_LENGTH = 24

# Postgres truncates identifiers longer than NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63


class QuotedIdent:
    """A role or database name that has already been quoted"""

    __slots__ = ("raw", "quoted")

    def __init__(self, raw: str, quoted: str):
        self.raw = raw
        self.quoted = quoted

    def __repr__(self):
        return f"QuotedIdent({self.quoted})"

    def __eq__(self, other):
        return isinstance(other, QuotedIdent) and other.quoted == self.quoted

    def __hash__(self):
        return hash(self.quoted)


def quote_ident(name: str) -> QuotedIdent:
    """
    Quote a SQL identifier

    Wraps the name in double quotes and doubles any embedded double quote,
    so `a"b` becomes `"a""b"`.
    """
    if not isinstance(name, str) or not name:
        raise SpecError(f"identifier must be a non-empty string, got {name!r}")
    if "\x00" in name:
        raise SpecError("identifier must not contain NUL bytes")
    return QuotedIdent(name, '"' + name.replace('"', '""') + '"')


def statement(template: str, *idents: QuotedIdent) -> sql.Composed:
    """
    Build an administrative statement from a template and quoted identifiers

    Args:
        template: SQL text with one `{}` placeholder per identifier; `%s`
            placeholders stay in place for bound parameters
        idents: Identifiers produced by quote_ident()

    Returns:
        Composed statement ready for cursor.execute()
    """
    for ident in idents:
        if not isinstance(ident, QuotedIdent):
            raise TypeError(f"statement() only accepts quoted identifiers, got {type(ident).__name__}")
    # psycopg2 treats % as a placeholder marker whenever parameters are bound
    has_params = "%s" in template
    return sql.SQL(template).format(*(
        sql.SQL(ident.quoted.replace("%", "%%") if has_params else ident.quoted)
        for ident in idents
    ))


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """
    Generate a random password over PASSWORD_ALPHABET

    Bytes come one at a time from the OS entropy source. Values at or above the
    largest multiple of the alphabet size below 256 are discarded so every
    character is equally likely. Non-positive lengths fall back to 24.

    An unusable entropy source is fatal for the process.
    """
    if length <= 0:
        length = DEFAULT_PASSWORD_LENGTH

    size = len(PASSWORD_ALPHABET)
    limit = 256 - (256 % size)

    chars = []
    while len(chars) < length:
        try:
            value = os.urandom(1)[0]
        except (OSError, NotImplementedError) as e:
            logger.critical(f"Entropy source unavailable, refusing to generate credentials: {e}")
            raise SystemExit(1) from e
        if value >= limit:
            continue
        chars.append(PASSWORD_ALPHABET[value % size])
    return "".join(chars)


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Optional[str]) -> timedelta:
    """
    Parse a duration string such as "0s", "90m" or "1h30m"

    An empty or missing value is treated as zero. Negative durations and
    unknown units raise SpecError.
    """
    if value is None:
        return timedelta(0)
    text = str(value).strip()
    if text in ("", "0"):
        return timedelta(0)
    if text.startswith("-"):
        raise SpecError(f"duration must not be negative: {value!r}")
    if text.startswith("+"):
        text = text[1:]

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise SpecError(f"invalid duration: {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=seconds)


def tenant_uri(user: str, password: str, host: str, port: int, database: str, sslmode: str) -> str:
    """Tenant-facing postgresql:// URI with percent-encoded credentials"""
    return (
        f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}"
        f"@{host}:{port}/{quote(database, safe='')}?sslmode={sslmode}"
    )
