"""Delimited-text encoding of exported rows."""

from __future__ import annotations

import csv
from datetime import date, datetime
from io import StringIO
from typing import Any, Sequence


class RecordEncoder:
    """Encode rows into delimited records with a fixed column order.

    Fields containing the delimiter, the quote character or a line break are
    quoted, and embedded quote characters are doubled.
    """

    def __init__(
        self,
        columns: Sequence[str],
        delimiter: str = ",",
        quote_char: str = '"',
        line_terminator: str = "\r\n",
    ) -> None:
        if len(delimiter) != 1 or len(quote_char) != 1:
            raise ValueError("delimiter and quote_char must be single characters")
        if delimiter == quote_char:
            raise ValueError("delimiter and quote_char must differ")
        if delimiter in "\r\n" or quote_char in "\r\n":
            raise ValueError("delimiter and quote_char cannot be line breaks")

        self.columns = list(columns)
        self._buffer = StringIO()
        self._writer = csv.writer(
            self._buffer,
            delimiter=delimiter,
            quotechar=quote_char,
            doublequote=True,
            quoting=csv.QUOTE_MINIMAL,
            lineterminator=line_terminator,
        )

    def header(self) -> str:
        return self._encode(self.columns)

    def encode(self, row: Sequence[Any]) -> str:
        if len(row) != len(self.columns):
            raise ValueError(f"Expected {len(self.columns)} fields, got {len(row)}")
        return self._encode([_format_value(value) for value in row])

    def _encode(self, fields: Sequence[str]) -> str:
        self._writer.writerow(fields)
        record = self._buffer.getvalue()
        self._buffer.seek(0)
        self._buffer.truncate()
        return record


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


__all__ = ["RecordEncoder"]
