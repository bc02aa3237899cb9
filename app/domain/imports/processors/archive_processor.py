"""
Expansion of uploaded ZIP archives into per-file tabular text.

Each member becomes a ``SourceFile`` the parser can consume. Excel members are
flattened to CSV text so the rest of the pipeline only ever sees delimited text.
"""
import io
import logging
import os
import zipfile
from typing import List

import pandas as pd

from app.domain.imports.models import ArchiveError, SourceFile, SourceKind

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".csv", ".tsv", ".txt")
EXCEL_SUFFIXES = (".xlsx", ".xls")
ARCHIVE_SUPPORTED_SUFFIXES = TEXT_SUFFIXES + EXCEL_SUFFIXES
ARCHIVE_SUFFIXES = (".zip",)

# Arabic exports from Windows tools are frequently cp1256 rather than UTF-8.
TEXT_ENCODINGS = ("utf-8-sig", "cp1256")


def decode_text(content: bytes, name: str = "") -> str:
    for encoding in TEXT_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ArchiveError(f"Unable to decode '{name or 'file'}' as text")


def excel_to_csv_text(content: bytes, name: str = "") -> str:
    """Convert the first sheet of a workbook to CSV text."""
    try:
        df = pd.read_excel(io.BytesIO(content), dtype=str, engine="openpyxl" if name.lower().endswith(".xlsx") else None)
    except Exception as exc:
        raise ArchiveError(f"Could not read Excel file '{name}': {exc}") from exc

    buffer = io.StringIO()
    df.to_csv(buffer, index=False)
    return buffer.getvalue()


def member_to_text(name: str, content: bytes) -> str:
    if name.lower().endswith(EXCEL_SUFFIXES):
        return excel_to_csv_text(content, name)
    return decode_text(content, name)


def _is_supported_member(info: zipfile.ZipInfo) -> bool:
    if info.is_dir():
        return False
    archive_path = info.filename
    if not archive_path or archive_path.endswith("/"):
        return False
    # Skip macOS system files and hidden files
    if "__MACOSX" in archive_path or os.path.basename(archive_path).startswith("._"):
        return False
    return archive_path.lower().endswith(ARCHIVE_SUPPORTED_SUFFIXES)


def _read_member(zip_file: zipfile.ZipFile, info: zipfile.ZipInfo) -> SourceFile:
    """A member that cannot be read or decoded comes back with ``error`` set."""
    try:
        content = zip_file.read(info.filename)
    except (zipfile.BadZipFile, KeyError, RuntimeError, ValueError) as exc:
        message = f"Unable to read archive member '{info.filename}': {exc}"
    else:
        try:
            return SourceFile(name=info.filename, text=member_to_text(info.filename, content))
        except ArchiveError as exc:
            message = exc.message

    logger.warning("Archive member '%s' will be marked failed: %s", info.filename, message)
    return SourceFile(name=info.filename, text="", error=message)


def expand_archive(archive_bytes: bytes) -> List[SourceFile]:
    """
    Return the tabular members of a ZIP archive as (name, text) pairs.

    Members that cannot be read are still returned, carrying the reason in
    ``SourceFile.error``, so the rest of the archive can be imported.

    Raises:
        ArchiveError: when the archive itself is corrupt.
    """
    try:
        zip_file = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Archive is corrupted: {exc}") from exc

    files: List[SourceFile] = []
    skipped = 0
    try:
        for info in zip_file.infolist():
            if not _is_supported_member(info):
                skipped += 1
                continue
            files.append(_read_member(zip_file, info))
    finally:
        zip_file.close()

    logger.info("Expanded archive: %d tabular members, %d entries ignored", len(files), skipped)
    return files


def detect_source_kind(file_name: str) -> SourceKind:
    if file_name.lower().endswith(ARCHIVE_SUFFIXES):
        return SourceKind.ARCHIVE
    if file_name.lower().endswith(ARCHIVE_SUPPORTED_SUFFIXES):
        return SourceKind.SINGLE_FILE
    raise ValueError(f"Unsupported file type: {file_name}")


def expand_upload(file_name: str, content: bytes) -> List[SourceFile]:
    """Archive uploads are expanded; a bare tabular file becomes a one-element list."""
    if detect_source_kind(file_name) == SourceKind.ARCHIVE:
        return expand_archive(content)
    return [SourceFile(name=file_name, text=member_to_text(file_name, content))]
