"""Tabular parser for CSV and XLSX invoice files

Turns raw file bytes into an ordered list of loosely-typed rows, each a
mapping from column name to string.

The CSV reader is deliberately naive: lines are split on newlines and
fields on commas, so quoted commas and embedded newlines are not
supported. Quotes and whitespace around each field are stripped.
"""

from datetime import date, datetime, time
from io import BytesIO
from typing import Any, Dict, List, Union
import logging
import zipfile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from invoice_workspace.exceptions import ParseError, UnsupportedFileTypeError
from invoice_workspace.models.invoice import FileType

logger = logging.getLogger(__name__)

RawRow = Dict[str, str]

_EXTENSIONS = {
    ".csv": FileType.CSV,
    ".xlsx": FileType.XLSX,
}


def detect_file_type(file_name: str) -> FileType:
    """
    Determine the file type from a file name

    Raises:
        UnsupportedFileTypeError: If the name does not end in .csv or .xlsx
    """
    lowered = file_name.lower()
    for extension, file_type in _EXTENSIONS.items():
        if lowered.endswith(extension):
            return file_type
    raise UnsupportedFileTypeError(
        f"Unsupported file '{file_name}': only CSV and Excel (.xlsx) files are supported"
    )


def parse(content: bytes, file_type: Union[FileType, str]) -> List[RawRow]:
    """
    Parse file bytes into raw rows

    Args:
        content: File content
        file_type: Declared type of the content

    Returns:
        Rows in file order; empty when the file holds fewer than two rows

    Raises:
        ParseError: If the bytes cannot be decoded as the declared type
    """
    file_type = FileType(file_type)
    if file_type == FileType.CSV:
        rows = parse_csv(content)
    else:
        rows = parse_xlsx(content)
    logger.info(f"Parsed {len(rows)} rows from {file_type.value} file")
    return rows


def _clean_csv_field(value: str) -> str:
    return value.strip().strip('"').strip()


def parse_csv(content: bytes) -> List[RawRow]:
    """Parse comma-delimited text with a header line"""
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"File is not valid UTF-8 CSV text: {e}") from e

    lines = [line for line in text.split("\n") if line.strip()]
    if len(lines) < 2:
        return []

    headers = [_clean_csv_field(header) for header in lines[0].split(",")]
    rows = []
    for line in lines[1:]:
        values = [_clean_csv_field(value) for value in line.split(",")]
        rows.append({
            header: values[index] if index < len(values) else ""
            for index, header in enumerate(headers)
        })
    return rows


def _cell_to_str(value: Any) -> str:
    """Render a worksheet cell the way it would appear in a CSV export"""
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_xlsx(content: bytes) -> List[RawRow]:
    """Parse the first worksheet of a workbook, using its first row as headers"""
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, SyntaxError, KeyError, ValueError, OSError) as e:
        raise ParseError(f"File is not a readable XLSX workbook: {e}") from e

    # Read-only workbooks parse sheet XML lazily, so a corrupt sheet
    # only surfaces while iterating rows (XML errors subclass SyntaxError)
    try:
        if not workbook.worksheets:
            return []
        sheet = workbook.worksheets[0]
        logger.debug(f"Reading worksheet '{sheet.title}' of {len(workbook.sheetnames)}")

        # Fully blank rows are skipped
        table = [
            row for row in sheet.iter_rows(values_only=True)
            if any(cell is not None and str(cell).strip() for cell in row)
        ]
    except (SyntaxError, zipfile.BadZipFile, KeyError, ValueError, OSError) as e:
        raise ParseError(f"Worksheet data is not readable: {e}") from e
    finally:
        workbook.close()

    if len(table) < 2:
        return []

    headers = [_cell_to_str(header) for header in table[0]]
    rows = []
    for values in table[1:]:
        row = {}
        for index, header in enumerate(headers):
            if not header:
                continue
            row[header] = _cell_to_str(values[index]) if index < len(values) else ""
        rows.append(row)
    return rows
