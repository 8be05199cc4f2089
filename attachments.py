import base64
import csv
import zipfile
from dataclasses import dataclass
from io import BytesIO, StringIO
from typing import Literal, Optional
from xml.etree import ElementTree

import xlrd
from openpyxl import load_workbook
from xlrd.compdoc import CompDocError

AttachmentKind = Literal["image", "file", "audio", "doc", "sheet"]

_WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"


@dataclass(frozen=True)
class Attachment:
    name: str
    mime_type: str
    data: bytes

    @property
    def kind(self) -> AttachmentKind:
        return classify(self.name, self.mime_type)

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def classify(filename: str, mime_type: str) -> AttachmentKind:
    name = filename.lower()
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("audio/") or "webm" in mime:
        return "audio"
    if name.endswith((".doc", ".docx")) or "word" in mime:
        return "doc"
    if name.endswith((".xls", ".xlsx", ".csv")) or "sheet" in mime or "excel" in mime:
        return "sheet"
    return "file"


def is_binary_payload(filename: str, mime_type: str) -> bool:
    """Images, PDFs and audio go to the model untouched."""
    kind = classify(filename, mime_type)
    if kind in ("image", "audio"):
        return True
    return (mime_type or "").lower() == "application/pdf" or filename.lower().endswith(
        ".pdf"
    )


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _docx_text(data: bytes) -> str:
    with zipfile.ZipFile(BytesIO(data)) as archive:
        xml = archive.read("word/document.xml")
    root = ElementTree.fromstring(xml)
    paragraphs = []
    for paragraph in root.iter(f"{_WORD_NS}p"):
        text = "".join(node.text or "" for node in paragraph.iter(f"{_WORD_NS}t"))
        paragraphs.append(text)
    return "\n".join(paragraphs)


def _xlsx_text(data: bytes) -> str:
    workbook = load_workbook(BytesIO(data), read_only=True, data_only=True)
    try:
        parts = []
        for sheet in workbook.worksheets:
            output = StringIO()
            writer = csv.writer(output, lineterminator="\n")
            for row in sheet.iter_rows(values_only=True):
                writer.writerow(["" if cell is None else cell for cell in row])
            parts.append(f"Planilha {sheet.title}:\n{output.getvalue()}")
        return "".join(parts)
    finally:
        workbook.close()


def _xls_text(data: bytes) -> str:
    book = xlrd.open_workbook(file_contents=data, on_demand=True)
    try:
        parts = []
        for sheet in book.sheets():
            output = StringIO()
            writer = csv.writer(output, lineterminator="\n")
            for index in range(sheet.nrows):
                writer.writerow(sheet.row_values(index))
            parts.append(f"Planilha {sheet.name}:\n{output.getvalue()}")
        return "".join(parts)
    finally:
        book.release_resources()


def extract_text(filename: str, mime_type: str, data: bytes) -> Optional[str]:
    name = filename.lower()
    mime = (mime_type or "").lower()
    if is_binary_payload(filename, mime_type):
        return None
    if mime in ("text/plain", "text/csv") or name.endswith((".csv", ".txt")):
        return _decode_text(data)
    if name.endswith(".docx"):
        try:
            return _docx_text(data)
        except (zipfile.BadZipFile, KeyError, ElementTree.ParseError) as exc:
            raise ValueError(f"Could not read document {filename}") from exc
    if name.endswith(".xlsx"):
        try:
            return _xlsx_text(data)
        except (zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise ValueError(f"Could not read spreadsheet {filename}") from exc
    if name.endswith(".xls") or mime == "application/vnd.ms-excel":
        try:
            return _xls_text(data)
        except (xlrd.XLRDError, CompDocError) as exc:
            raise ValueError(f"Could not read spreadsheet {filename}") from exc
    if mime.startswith("text/"):
        return _decode_text(data)
    return None
