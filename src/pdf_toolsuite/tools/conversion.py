"""
Conversion Mixin - PDF to Word, Excel, text and premium report formats
"""

import io
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Tuple

# PDF processing libraries
import fitz  # PyMuPDF
import pandas as pd
from docx import Document
from docx.shared import Pt

from ..entitlements import PREMIUM_CONVERT_FORMATS
from ..errors import InvalidInput, PremiumRequired, ProcessingFailure
from ..security import sanitize_error_message
from .base import ToolMixin, ToolRequest, ToolResult, generate_result_filename, pdf_tool

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_CELL_SPLIT = re.compile(r"\s{2,}|\t")


def _xml_safe(text: str) -> str:
    return _CONTROL_CHARS.sub("", text)


def extract_text(data: bytes) -> Tuple[str, int]:
    """Return the document text and its page count"""
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        text = "\n".join(page.get_text() for page in doc)
        return text, doc.page_count
    finally:
        doc.close()


def text_to_rows(text: str) -> List[Dict[str, Any]]:
    """Split lines into columns on runs of two or more spaces or tabs"""
    rows = []
    for index, line in enumerate(text.split("\n")):
        if not line.strip():
            continue
        cells = [cell.strip() for cell in _CELL_SPLIT.split(line) if cell.strip()]
        if len(cells) > 1:
            rows.append({f"Column_{i + 1}": cell for i, cell in enumerate(cells)})
        else:
            rows.append({"Row": index + 1, "Content": line.strip()})
    return rows


class ConversionMixin(ToolMixin):
    """
    Handles PDF format conversion.
    """

    def get_mixin_name(self) -> str:
        return "Conversion"

    def _setup(self):
        self.converters = {
            "word": self._to_word,
            "excel": self._to_excel,
            "text": self._to_text,
            "powerpoint": self._to_powerpoint_outline,
            "images": self._to_image_report,
        }

    @pdf_tool(name="convert", description="Convert a PDF into another document format")
    def convert(self, request: ToolRequest) -> ToolResult:
        """
        Convert the first uploaded PDF.

        Options:
            convertTo: "word", "excel", "text", or premium "powerpoint"/"images"
        """
        target = request.options.get("convertTo")
        if not target:
            raise InvalidInput("No conversion format specified")

        converter = self.converters.get(target)
        if converter is None:
            raise ProcessingFailure(f"Unsupported conversion format: {target}")

        if target in PREMIUM_CONVERT_FORMATS and not request.is_premium:
            raise PremiumRequired(f"Premium access required for {target} conversion.", format=target)

        quality = "Premium Quality" if request.is_premium else "Professional Quality"
        logger.info(f"Professional PDF to {target} conversion...")
        try:
            data, filename = converter(request.first.data, quality)
        except (InvalidInput, ProcessingFailure):
            raise
        except Exception as e:
            raise ProcessingFailure(f"{target.capitalize()} conversion failed: {sanitize_error_message(str(e))}")

        logger.info(f"Professional {target} conversion completed - {quality}")
        return ToolResult(data=data, filename=filename, extra={"format": target})

    def _to_word(self, data: bytes, quality: str) -> Tuple[bytes, str]:
        text, _ = extract_text(data)
        document = Document()
        for paragraph in text.split("\n\n"):
            run = document.add_paragraph().add_run(_xml_safe(paragraph))
            run.font.name = "Calibri"
            run.font.size = Pt(12)

        buffer = io.BytesIO()
        document.save(buffer)
        return buffer.getvalue(), generate_result_filename("converted_to_word", ".docx")

    def _to_excel(self, data: bytes, quality: str) -> Tuple[bytes, str]:
        text, _ = extract_text(data)
        rows = text_to_rows(_xml_safe(text))
        frame = pd.DataFrame(rows) if rows else pd.DataFrame(columns=["Row", "Content"])

        buffer = io.BytesIO()
        frame.to_excel(buffer, sheet_name="PDF_Data", index=False, engine="openpyxl")
        return buffer.getvalue(), generate_result_filename("converted_to_excel", ".xlsx")

    def _to_text(self, data: bytes, quality: str) -> Tuple[bytes, str]:
        text, pages = extract_text(data)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text).strip()

        header = (
            f"Text Extraction Report - {quality}\n"
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
            f"Source: PDF Document\n"
            f"Pages: {pages}\n\n"
            f"=== EXTRACTED TEXT ===\n\n"
        )
        return (header + text).encode("utf-8"), generate_result_filename("extracted_text", ".txt")

    def _to_powerpoint_outline(self, data: bytes, quality: str) -> Tuple[bytes, str]:
        text, pages = extract_text(data)
        slides = [slide.strip() for slide in text.split("\n\n") if slide.strip()]

        lines = [
            f"PowerPoint Presentation Outline - {quality}",
            "",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Source Pages: {pages}",
            "",
        ]
        for index, slide in enumerate(slides):
            lines.extend([f"Slide {index + 1}:", slide, ""])
        lines.extend([
            "Presentation Summary:",
            f"- Total Slides: {len(slides)}",
            f"- Conversion Quality: {quality}",
        ])
        return "\n".join(lines).encode("utf-8"), generate_result_filename("powerpoint_outline", ".txt")

    def _to_image_report(self, data: bytes, quality: str) -> Tuple[bytes, str]:
        doc = fitz.open(stream=data, filetype="pdf")
        try:
            inventory = []
            for page in doc:
                for image in page.get_images(full=True):
                    xref, width, height = image[0], image[2], image[3]
                    inventory.append(f"- Page {page.number + 1}: image xref {xref}, {width}x{height}px")
            pages = doc.page_count
        finally:
            doc.close()

        lines = [
            f"Professional Image Extraction Report - {quality}",
            "",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "Source: PDF Document",
            f"Pages: {pages}",
            f"File Size: {len(data) / 1024 / 1024:.2f} MB",
            "",
            "=== IMAGE EXTRACTION ANALYSIS ===",
            "",
            f"Embedded images found: {len(inventory)}",
        ]
        lines.extend(inventory)
        lines.extend(["", f"Processing Quality: {quality}"])
        return "\n".join(lines).encode("utf-8"), generate_result_filename("image_extraction_report", ".txt")
