"""Read CSV/TSV settlement files into string-keyed rows with polars.

Every column is read as a string (no schema inference) so that amounts such
as ``"0,99"`` and identifiers with leading zeros reach the row parser
unchanged.  Any failure to read the resource is reported as
:class:`BatchInputError`, which aborts the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import polars as pl

from billing_core.storage.errors import BatchInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingFile:
    columns: list[str]
    rows: list[dict[str, Any]]


def _sniff_separator(header_line: str) -> str:
    if "\t" in header_line:
        return "\t"
    if header_line.count(";") > header_line.count(","):
        return ";"
    return ","


def read_billing_file(source: str | Path | bytes, separator: str | None = None) -> BillingFile:
    """Load a settlement file from a path or raw bytes.

    Raises:
        BatchInputError: The file is missing, not decodable, malformed, or
            has a header but no data rows.
    """
    try:
        data = source if isinstance(source, bytes) else Path(source).read_bytes()
    except OSError as exc:
        raise BatchInputError(f"Cannot read import file {source}: {exc}") from exc

    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    if not text.strip():
        raise BatchInputError("Import file is empty")

    sep = separator or _sniff_separator(text.splitlines()[0])
    try:
        df = pl.read_csv(
            text.encode("utf-8"),
            separator=sep,
            infer_schema=False,
            truncate_ragged_lines=True,
        )
    except (pl.exceptions.PolarsError, ValueError) as exc:
        raise BatchInputError(f"Malformed import file: {exc}") from exc

    if df.height == 0:
        raise BatchInputError("Import file has no data rows")
    logger.info("Read %d rows from import file (columns: %s)", df.height, df.columns)
    return BillingFile(columns=df.columns, rows=list(df.iter_rows(named=True)))
