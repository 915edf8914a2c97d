"""CSV snapshot parsing and the loaders that feed the index.

CSV format (with header): ip,city,country

    ip,city,country
    1.2.3.4,Tel Aviv,IL
    5.6.7.8,San Francisco,US
"""

from __future__ import annotations

import csv
import io
import os
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Hashable, Mapping, Protocol

from geogate.errors import ConfigError

REQUIRED_COLUMNS = {"ip", "city", "country"}


@dataclass(frozen=True)
class Record:
    country: str
    city: str


Snapshot = Mapping[str, Record]


def _field(row: dict[str, str | None], name: str) -> str:
    return (row.get(name) or "").strip()


def parse_csv(text: str) -> Snapshot:
    """Parse CSV text into a read-only mapping keyed by ip.

    Fields are trimmed, rows without an ip are skipped and the last row wins
    for duplicate ips. Raises ValueError on a missing header, missing columns
    or malformed rows.
    """
    reader = csv.DictReader(io.StringIO(text), strict=True)
    try:
        if reader.fieldnames is None:
            raise ValueError("Empty or invalid CSV: no header row")
        reader.fieldnames = [name.strip() for name in reader.fieldnames]
        missing = REQUIRED_COLUMNS - set(reader.fieldnames)
        if missing:
            raise ValueError(f"CSV missing required columns: {sorted(missing)}")

        entries: dict[str, Record] = {}
        for row in reader:
            if None in row:
                raise ValueError(
                    f"Too many fields on line {reader.line_num}: "
                    f"expected {len(reader.fieldnames)}"
                )
            ip = _field(row, "ip")
            if not ip:
                continue
            entries[ip] = Record(country=_field(row, "country"), city=_field(row, "city"))
    except csv.Error as exc:
        raise ValueError(f"Malformed CSV on line {reader.line_num}: {exc}") from exc
    return MappingProxyType(entries)


class SnapshotLoader(Protocol):
    """Capability the index needs from a data source."""

    def marker(self, source: str) -> Hashable:
        """Cheap change marker; a different value means the source changed."""
        ...

    def load(self, source: str) -> Snapshot:
        """Read and parse the whole source into a new snapshot."""
        ...


class CsvFileLoader:
    """Loads snapshots from a CSV file on the local filesystem."""

    def marker(self, source: str) -> Hashable:
        st = os.stat(source)
        return (st.st_mtime_ns, st.st_size)

    def load(self, source: str) -> Snapshot:
        text = Path(source).read_text(encoding="utf-8-sig")
        return parse_csv(text)


_LOADERS: dict[str, type] = {
    "csv": CsvFileLoader,
}


def get_loader(kind: str) -> SnapshotLoader:
    """Return a loader for the configured database type."""
    try:
        factory = _LOADERS[kind.lower()]
    except (KeyError, AttributeError):
        raise ConfigError(f"Unsupported geolocation database type: {kind!r}") from None
    return factory()
