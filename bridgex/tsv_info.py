#!/usr/bin/env python3
"""
TSV accumulation for one destination table within one export run
"""

import csv
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TextIO, Union

import polars as pl

from bridgex.exceptions import TsvError

# Upload descriptor settings. Cells are always quoted with quotes doubled; backslash is
# the import escape character so literal backslashes are doubled too.
SEPARATOR = "\t"
QUOTE_CHARACTER = '"'
ESCAPE_CHARACTER = "\\"


@dataclass
class Ready:
    file_path: str
    file: Optional[TextIO]
    writer: Any


@dataclass(frozen=True)
class Failed:
    error: BaseException


class TsvInfo:
    """
    Owns the TSV file, its writer and row bookkeeping for one table.

    Construction either opens the file and writes the header (Ready) or records
    why that failed (Failed). A Failed TsvInfo raises TsvError from every
    write and flush.
    """

    def __init__(self, column_names: List[str], state: Union[Ready, Failed]):
        self.column_names = list(column_names)
        self._state = state
        self._lock = threading.Lock()
        self._line_count = 0
        self._record_ids: List[str] = []

    @classmethod
    def open(cls, column_names: List[str], file_path: str) -> 'TsvInfo':
        """Create the file and write the header row"""
        try:
            file = open(file_path, 'w', encoding='utf-8', newline='')
            writer = csv.writer(file, delimiter=SEPARATOR, quotechar=QUOTE_CHARACTER,
                                quoting=csv.QUOTE_ALL, lineterminator='\n')
            writer.writerow(column_names)
        except OSError as e:
            return cls.failed(e)
        return cls(column_names, Ready(file_path=file_path, file=file, writer=writer))

    @classmethod
    def failed(cls, error: BaseException) -> 'TsvInfo':
        return cls([], Failed(error))

    @property
    def is_ready(self) -> bool:
        return isinstance(self._state, Ready)

    @property
    def init_error(self) -> Optional[BaseException]:
        return self._state.error if isinstance(self._state, Failed) else None

    def check_init_and_raise(self):
        if isinstance(self._state, Failed):
            raise TsvError(f"TSV was not successfully initialized: {self._state.error}") from self._state.error

    @property
    def file_path(self) -> str:
        self.check_init_and_raise()
        return self._state.file_path

    @property
    def line_count(self) -> int:
        return self._line_count

    @property
    def record_ids(self) -> List[str]:
        with self._lock:
            return list(self._record_ids)

    def add_record_id(self, record_id: str):
        with self._lock:
            self._record_ids.append(record_id)

    def write_row(self, row_values: Dict[str, Optional[str]]):
        """Write one row in column order. Missing or None values become empty cells."""
        self.check_init_and_raise()
        cells = []
        for name in self.column_names:
            value = row_values.get(name)
            cells.append('' if value is None else str(value).replace(ESCAPE_CHARACTER, ESCAPE_CHARACTER * 2))

        with self._lock:
            if self._state.file is None:
                raise TsvError(f"TSV {self._state.file_path} is already closed")
            self._state.writer.writerow(cells)
            self._line_count += 1

    def flush_and_close_writer(self):
        """Flush and close the file. Safe to call more than once."""
        self.check_init_and_raise()
        with self._lock:
            file = self._state.file
            if file is not None:
                file.flush()
                file.close()
                self._state.file = None

    def verify_file(self) -> int:
        """
        Read the closed file back and check it holds the header and every written row.

        Returns:
            int: number of data rows in the file

        Raises:
            TsvError: if the file can't be parsed, or its header or row count doesn't match what was written
        """
        self.check_init_and_raise()
        file_path = self._state.file_path
        try:
            frame = pl.scan_csv(file_path, separator=SEPARATOR, quote_char=QUOTE_CHARACTER, infer_schema_length=0)
            names = frame.collect_schema().names()
            row_count = frame.select(pl.len()).collect()[0, 0]
        except pl.exceptions.PolarsError as e:
            raise TsvError(f"Unreadable TSV {file_path}: {e}") from e

        if names != self.column_names:
            raise TsvError(f"TSV {file_path} header doesn't match its columns")
        if row_count != self._line_count:
            raise TsvError(f"TSV {file_path} verification failed: wrote {self._line_count} rows, "
                           f"file has {row_count} rows")
        return row_count
