"""
Document Assembly Mixin - PDF merging and splitting
"""

import io
import logging
import math
import zipfile
from typing import List, Tuple

# PDF processing libraries
import fitz  # PyMuPDF

from ..errors import InvalidInput, ProcessingFailure
from ..security import parse_page_ranges, sanitize_error_message
from .base import ToolMixin, ToolRequest, ToolResult, generate_result_filename, pdf_tool

logger = logging.getLogger(__name__)

SPLIT_METHODS = ("all_pages", "page_ranges", "equal_parts")


def _extract_pages(doc: fitz.Document, indices: List[int]) -> bytes:
    part = fitz.open()
    try:
        for index in indices:
            part.insert_pdf(doc, from_page=index, to_page=index)
        return part.tobytes(garbage=3, deflate=True)
    finally:
        part.close()


def zip_files(files: List[Tuple[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for name, data in files:
            archive.writestr(name, data)
    return buffer.getvalue()


class DocumentAssemblyMixin(ToolMixin):
    """
    Handles PDF document assembly operations including merging and splitting.
    """

    def get_mixin_name(self) -> str:
        return "DocumentAssembly"

    @pdf_tool(name="merge", description="Merge multiple PDFs into one document")
    def merge(self, request: ToolRequest) -> ToolResult:
        """
        Concatenate every uploaded PDF in upload order.

        Returns:
            Merged document; its page count is the sum of the inputs
        """
        logger.info(f"Professional merge: Processing {len(request.files)} PDF files...")
        merged = fitz.open()
        total_pages = 0

        try:
            for upload in request.files:
                try:
                    source = fitz.open(stream=upload.data, filetype="pdf")
                except Exception as e:
                    raise ProcessingFailure(
                        f"Failed to process {upload.filename}: {sanitize_error_message(str(e))}"
                    )
                try:
                    if source.page_count == 0:
                        raise ProcessingFailure(f"Failed to process {upload.filename}: no pages found")
                    merged.insert_pdf(source)
                    total_pages += source.page_count
                    logger.info(f"Added {source.page_count} pages from {upload.filename}")
                finally:
                    source.close()

            data = merged.tobytes(garbage=3, deflate=True)
        finally:
            merged.close()

        logger.info(f"Professional merge completed: {total_pages} total pages, {len(data)} bytes")
        return ToolResult(
            data=data,
            filename=generate_result_filename("merged"),
            extra={"totalPages": total_pages},
        )

    @pdf_tool(name="split", description="Split a PDF into separate documents")
    def split(self, request: ToolRequest) -> ToolResult:
        """
        Split the first uploaded PDF.

        Options:
            splitMethod: "all_pages" (default), "page_ranges" or "equal_parts"
            pageRanges: e.g. "1-3,5" for page_ranges
            numberOfParts: part count for equal_parts

        Returns:
            A single PDF when one part results, otherwise a zip of all parts
        """
        options = request.options
        method = options.get("splitMethod") or "all_pages"
        if method not in SPLIT_METHODS:
            method = "all_pages"

        doc = fitz.open(stream=request.first.data, filetype="pdf")
        try:
            total_pages = doc.page_count
            logger.info(f"Splitting {total_pages} pages using method: {method}")
            parts = self._plan_parts(method, options, total_pages)
            if not parts:
                raise InvalidInput("No valid pages selected for splitting")
            outputs = [(name, _extract_pages(doc, indices)) for name, indices in parts]
        finally:
            doc.close()

        logger.info(f"Professional {method} split completed: {len(outputs)} files")
        if len(outputs) == 1:
            return ToolResult(data=outputs[0][1], filename=generate_result_filename("split"),
                              extra={"parts": 1})

        return ToolResult(
            data=zip_files(outputs),
            filename=generate_result_filename("split_pages", ".zip"),
            extra={"parts": len(outputs), "isZip": True},
        )

    def _plan_parts(self, method: str, options: dict, total_pages: int) -> List[Tuple[str, List[int]]]:
        if method == "page_ranges" and options.get("pageRanges"):
            parts = []
            for indices in parse_page_ranges(str(options["pageRanges"]), total_pages):
                if len(indices) == 1:
                    name = f"page_{indices[0] + 1}.pdf"
                else:
                    name = f"pages_{indices[0] + 1}-{indices[-1] + 1}.pdf"
                parts.append((name, indices))
            return parts

        if method == "equal_parts":
            try:
                count = int(options.get("numberOfParts") or 2)
            except (TypeError, ValueError):
                raise InvalidInput("numberOfParts must be an integer")
            if count < 1:
                raise InvalidInput("numberOfParts must be at least 1")
            # Never more parts than pages
            count = min(count, max(total_pages, 1))
            per_part = math.ceil(total_pages / count)
            parts = []
            for i in range(count):
                start = i * per_part
                end = min(start + per_part - 1, total_pages - 1)
                if start <= end:
                    parts.append((f"part_{i + 1}_pages_{start + 1}-{end + 1}.pdf", list(range(start, end + 1))))
            return parts

        return [(f"page_{i + 1}.pdf", [i]) for i in range(total_pages)]
