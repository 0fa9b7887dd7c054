"""
Structured editing of remote configuration files.

Remote config files are edited by parse -> mutate -> serialize -> write
rather than by substring substitution. Lines that were not changed are
written back exactly as they were read, so comments, blank lines and the
order of untouched keys survive a round trip.

Two ``key=value`` dialects are supported:
- "plain": ``key=value`` (keycloak.conf)
- "postgres": ``key = 'value'  # comment`` with '' escaping (postgresql.auto.conf)

``HbaFile`` handles the whitespace-separated records of pg_hba.conf.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Literal

Dialect = Literal["plain", "postgres"]


@dataclass
class _Entry:
    key: str | None
    value: str | None = None
    raw: str = ""
    dirty: bool = False


def _split_postgres_value(text: str) -> str:
    """Value of a postgres setting with quotes and any trailing comment removed."""
    if text.startswith("'"):
        chars: list[str] = []
        i = 1
        while i < len(text):
            if text[i] == "'":
                if text[i + 1:i + 2] == "'":
                    chars.append("'")
                    i += 2
                    continue
                return "".join(chars)
            chars.append(text[i])
            i += 1
        # Unterminated quote: keep what is there
        return text
    return text.partition("#")[0].strip()


@dataclass
class ConfFile:
    """Parsed key/value file that keeps unchanged lines verbatim."""

    dialect: Dialect = "plain"
    entries: list[_Entry] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str, dialect: Dialect = "plain") -> "ConfFile":
        conf = cls(dialect=dialect)
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                conf.entries.append(_Entry(key=None, raw=line))
                continue
            key, _, value = stripped.partition("=")
            conf.entries.append(
                _Entry(key=key.strip(), value=cls._decode(value.strip(), dialect), raw=line)
            )
        return conf

    @staticmethod
    def _decode(value: str, dialect: Dialect) -> str:
        if dialect == "postgres":
            return _split_postgres_value(value)
        return value

    def _encode(self, key: str, value: str) -> str:
        if self.dialect == "postgres":
            escaped = value.replace("'", "''")
            return f"{key} = '{escaped}'"
        return f"{key}={value}"

    def get(self, key: str, default: str | None = None) -> str | None:
        # Last assignment wins, as in both PostgreSQL and Keycloak
        value = default
        for entry in self.entries:
            if entry.key == key:
                value = entry.value
        return value

    def set(self, key: str, value: str) -> None:
        """Set ``key``, replacing the first assignment and dropping duplicates."""
        found = False
        kept: list[_Entry] = []
        for entry in self.entries:
            if entry.key == key:
                if found:
                    continue
                if entry.value != value:
                    entry.value = value
                    entry.dirty = True
                found = True
            kept.append(entry)
        if not found:
            kept.append(_Entry(key=key, value=value, dirty=True))
        self.entries = kept

    def serialize(self) -> str:
        lines = [
            self._encode(e.key, e.value or "") if e.key is not None and e.dirty else e.raw
            for e in self.entries
        ]
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class HbaRecord:
    """One pg_hba.conf record (``type database user address method``)."""

    type: str
    database: str
    user: str
    address: str | None
    method: str

    def render(self) -> str:
        fields = [self.type, self.database, self.user]
        if self.address is not None:
            fields.append(self.address)
        fields.append(self.method)
        return " ".join(fields)


def hba_address(host: str) -> str:
    """pg_hba address column for ``host``: a single-host CIDR for IPs, else the name."""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return host
    return f"{ip}/{ip.max_prefixlen}"


@dataclass
class HbaFile:
    """pg_hba.conf kept as raw lines plus the records parsed from them."""

    lines: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "HbaFile":
        return cls(lines=text.splitlines())

    @property
    def records(self) -> list[HbaRecord]:
        records = []
        for line in self.lines:
            fields = line.partition("#")[0].split()
            if len(fields) < 4 or fields[0].startswith("include"):
                continue
            if fields[0] == "local":
                records.append(HbaRecord(fields[0], fields[1], fields[2], None, fields[3]))
            elif len(fields) >= 5:
                records.append(HbaRecord(fields[0], fields[1], fields[2], fields[3], fields[4]))
        return records

    def allows_replication(self, user: str, address: str) -> bool:
        """True when a host record grants ``user`` replication from ``address``."""
        for record in self.records:
            if not record.type.startswith("host") or record.method == "reject":
                continue
            if "replication" not in record.database.split(","):
                continue
            users = record.user.split(",")
            if "all" not in users and user not in users:
                continue
            if record.address == address:
                return True
        return False

    def add(self, record: HbaRecord, comment: str | None = None) -> None:
        if comment:
            self.lines.append(f"# {comment}")
        self.lines.append(record.render())

    def serialize(self) -> str:
        return "\n".join(self.lines) + "\n"


def parse_conninfo(conninfo: str) -> dict[str, str]:
    """Split a libpq ``key=value key=value`` string. Quoted values are not supported."""
    result: dict[str, str] = {}
    for part in conninfo.split():
        key, sep, value = part.partition("=")
        if sep:
            result[key] = value
    return result


def format_conninfo(params: dict[str, str]) -> str:
    return " ".join(f"{k}={v}" for k, v in params.items())
