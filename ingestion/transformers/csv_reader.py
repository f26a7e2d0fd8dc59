"""
Streaming CSV reader for large supplier exports.

Files are read with pandas in fixed-size chunks and all cells kept as
strings; numeric coercion is the normalizer's job. Nothing here holds more
than one chunk in memory.
"""

from pathlib import Path
from typing import Iterator, Sequence, Union
import logging

import pandas as pd

from core.config import settings
from core.exceptions import NormalizationError
from ingestion.extractors.base import RowChunk
from ingestion.transformers.columns import clean_header

logger = logging.getLogger(__name__)

DELIMITER_CANDIDATES = (",", ";", "\t", "|")


def detect_delimiter(sample_line: str, candidates: Sequence[str] = DELIMITER_CANDIDATES) -> str:
    """Pick the candidate that splits the sample into the most fields (ties: comma)."""
    best, best_count = ",", 0
    for candidate in candidates:
        count = len(sample_line.split(candidate)) - 1
        if count > best_count:
            best, best_count = candidate, count
    return best


def read_first_line(path: Union[str, Path], encoding: str = "utf-8-sig") -> str:
    with open(path, "r", encoding=encoding, errors="replace") as fh:
        for line in fh:
            if line.strip():
                return line.rstrip("\r\n")
    return ""


class CSVChunkReader:
    """
    Iterate a CSV file as RowChunks of at most ``chunk_rows`` rows.

    Example:
        for chunk in CSVChunkReader("/tmp/stock.csv"):
            for record in normalizer.normalize_rows(chunk.rows, chunk.headers):
                ...
    """

    def __init__(
        self,
        path: Union[str, Path],
        chunk_rows: int = None,
        encoding: str = "utf-8-sig",
    ):
        self.path = Path(path)
        self.chunk_rows = chunk_rows or settings.READ_CHUNK_ROWS
        self.encoding = encoding
        self.delimiter = None
        self.rows_read = 0

    def __iter__(self) -> Iterator[RowChunk]:
        first_line = read_first_line(self.path, self.encoding)
        if not first_line:
            logger.info(f"{self.path.name} is empty")
            return

        self.delimiter = detect_delimiter(first_line)
        logger.debug(f"{self.path.name}: detected delimiter {self.delimiter!r}")

        try:
            reader = pd.read_csv(
                self.path,
                sep=self.delimiter,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                on_bad_lines="skip",
                encoding=self.encoding,
                encoding_errors="replace",
                chunksize=self.chunk_rows,
            )
        except pd.errors.EmptyDataError:
            return
        except (pd.errors.ParserError, ValueError) as e:
            raise NormalizationError(
                f"Could not read CSV header of {self.path.name}",
                context={"file_name": self.path.name, "delimiter": self.delimiter},
                original_exception=e
            )

        with reader:
            try:
                for frame in reader:
                    if frame.empty:
                        continue
                    frame.columns = [clean_header(c) for c in frame.columns]
                    rows = frame.to_dict("records")
                    self.rows_read += len(rows)
                    yield RowChunk(headers=list(frame.columns), rows=rows)
                    del frame, rows
            except pd.errors.ParserError as e:
                raise NormalizationError(
                    f"CSV parsing stopped in {self.path.name}",
                    context={"file_name": self.path.name, "rows_read": self.rows_read},
                    original_exception=e
                )
