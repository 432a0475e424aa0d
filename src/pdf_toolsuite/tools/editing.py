"""
Editing Mixin - rotation, deletion, text, watermark and page numbering
"""

import logging
import math
from typing import Any, Dict, List, Tuple

# PDF processing libraries
import fitz  # PyMuPDF

from ..errors import InvalidInput, PDFToolsError, ProcessingFailure
from ..security import sanitize_error_message
from .base import ToolMixin, ToolRequest, ToolResult, generate_result_filename, pdf_tool

logger = logging.getLogger(__name__)

FREE_TEXT_ELEMENTS = 10
MAX_DIRECT_EDIT_PAGES = 100
VALID_ROTATIONS = (0, 90, 180, 270, -90, -180, -270)

FONT_MAPPING = {
    "Arial": "helv",
    "Helvetica": "helv",
    "Times New Roman": "tiro",
    "Times": "tiro",
    "Courier New": "cour",
    "Courier": "cour",
}

BOLD_FONT_MAPPING = {
    "Arial": "hebo",
    "Helvetica": "hebo",
    "Times New Roman": "tibo",
    "Times": "tibo",
    "Courier New": "cobo",
    "Courier": "cobo",
}

PRESET_COLORS = {
    "red": (1, 0, 0),
    "green": (0, 1, 0),
    "blue": (0, 0, 1),
    "black": (0, 0, 0),
    "white": (1, 1, 1),
    "gray": (0.5, 0.5, 0.5),
    "grey": (0.5, 0.5, 0.5),
}


def parse_color(value: Any) -> Tuple[float, float, float]:
    """Parse "#rrggbb" or a preset colour name, defaulting to black"""
    if not isinstance(value, str) or not value:
        return (0, 0, 0)
    if value.startswith("#") and len(value) == 7:
        try:
            return tuple(int(value[i:i + 2], 16) / 255 for i in (1, 3, 5))
        except ValueError:
            return (0, 0, 0)
    return PRESET_COLORS.get(value.lower(), (0, 0, 0))


def resolve_font(family: Any, weight: Any) -> str:
    bold = weight == "bold"
    if family in FONT_MAPPING:
        return BOLD_FONT_MAPPING[family] if bold else FONT_MAPPING[family]
    return "hebo" if bold else "helv"


def _number(value: Any, default: float, field: str, positive: bool = False) -> float:
    """Read a numeric edit option; missing, empty or zero falls back to the default"""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidInput(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{field} must be a number")
    if not math.isfinite(number):
        raise InvalidInput(f"{field} must be a finite number")
    if positive and number < 0:
        raise InvalidInput(f"{field} must be positive")
    return number or default


def validate_for_direct_edit(data: bytes) -> Dict[str, Any]:
    """Check whether a PDF is suitable for the client-side editor"""
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        return {
            "isValid": False,
            "pageCount": 0,
            "validPages": 0,
            "issues": [f"Validation failed: {sanitize_error_message(str(e))}"],
            "fileSize": len(data),
            "canDirectEdit": False,
        }

    try:
        page_count = doc.page_count
        valid_pages = 0
        issues: List[str] = []
        for index in range(page_count):
            try:
                page = doc[index]
                if page.rect.width > 0 and page.rect.height > 0:
                    valid_pages += 1
                else:
                    issues.append(f"Page {index + 1} has invalid dimensions")
                kind, raw = doc.xref_get_key(page.xref, "Rotate")
                if kind in ("int", "real") and float(raw) % 90 != 0:
                    issues.append(f"Page {index + 1} has non-standard rotation: {raw}°")
            except Exception as e:
                issues.append(f"Page {index + 1} structure error: {sanitize_error_message(str(e))}")

        metadata = doc.metadata or {}
        is_valid = page_count > 0 and valid_pages == page_count and not issues
        logger.info(f"PDF validation: {valid_pages}/{page_count} valid pages, {len(issues)} issues")
        return {
            "isValid": is_valid,
            "pageCount": page_count,
            "validPages": valid_pages,
            "issues": issues,
            "fileSize": len(data),
            "title": metadata.get("title") or "Untitled",
            "author": metadata.get("author") or "Unknown",
            "canDirectEdit": is_valid and page_count <= MAX_DIRECT_EDIT_PAGES,
        }
    finally:
        doc.close()


class EditingMixin(ToolMixin):
    """
    Handles PDF page edits and annotations.
    """

    def get_mixin_name(self) -> str:
        return "Editing"

    @pdf_tool(name="edit", description="Rotate, delete, annotate and number PDF pages")
    def edit(self, request: ToolRequest) -> ToolResult:
        """
        Apply an ``edits`` object to the first uploaded PDF.

        Supported keys: rotatePages, addText, deletePages, and for premium
        sessions watermark and addPageNumbers. Text and rotation indices refer
        to the original page numbering; deletions run afterwards from the
        highest index down.
        """
        edits = request.options.get("edits") or {}
        doc = fitz.open(stream=request.first.data, filetype="pdf")
        changes = 0

        try:
            changes += self._rotate_pages(doc, edits.get("rotatePages"))
            changes += self._add_text(doc, edits.get("addText"), request.is_premium)
            changes += self._delete_pages(doc, edits.get("deletePages"))
            if request.is_premium:
                changes += self._add_watermark(doc, edits.get("watermark"))
                changes += self._add_page_numbers(doc, edits.get("addPageNumbers"))

            if changes == 0:
                logger.info("No valid edits were applied to the PDF")
            data = doc.tobytes(garbage=3, deflate=True)
        except PDFToolsError:
            raise
        except Exception as e:
            logger.error(f"Enhanced PDF editing error: {e}")
            raise ProcessingFailure(f"PDF editing failed: {sanitize_error_message(str(e))}")
        finally:
            doc.close()

        logger.info(f"Enhanced PDF editing completed - {changes} changes applied")
        return ToolResult(data=data, filename=generate_result_filename("edited"),
                          extra={"changesApplied": changes})

    def _rotate_pages(self, doc: fitz.Document, rotations: Any) -> int:
        if not isinstance(rotations, list):
            return 0
        changes = 0
        for item in rotations:
            index = item.get("pageIndex") if isinstance(item, dict) else None
            degrees = item.get("degrees") if isinstance(item, dict) else None
            if isinstance(index, int) and 0 <= index < doc.page_count and degrees in VALID_ROTATIONS:
                doc[index].set_rotation(degrees % 360)
                logger.info(f"Rotated page {index + 1} by {degrees} degrees")
                changes += 1
        return changes

    def _add_text(self, doc: fitz.Document, elements: Any, is_premium: bool) -> int:
        if not isinstance(elements, list):
            return 0
        if not is_premium and len(elements) > FREE_TEXT_ELEMENTS:
            logger.info(f"Non-premium user limited to {FREE_TEXT_ELEMENTS} text elements")
            elements = elements[:FREE_TEXT_ELEMENTS]

        changes = 0
        for element in elements:
            if not isinstance(element, dict):
                continue
            index, text = element.get("pageIndex"), element.get("text")
            x, y = element.get("x"), element.get("y")
            if not (isinstance(index, int) and 0 <= index < doc.page_count and text
                    and isinstance(x, (int, float)) and isinstance(y, (int, float))):
                continue

            page = doc[index]
            size = _number(element.get("fontSize"), 12, "fontSize", positive=True)
            fontname = resolve_font(element.get("fontFamily"), element.get("fontWeight"))
            color = parse_color(element.get("color"))
            height = page.rect.height

            for line_index, line in enumerate(str(text).split("\n")):
                if line.strip():
                    # Element coordinates use a bottom-left origin
                    baseline = height - (y - line_index * size * 1.2)
                    page.insert_text((x, baseline), line, fontsize=size, fontname=fontname, color=color)

            logger.info(f"Added text \"{str(text)[:20]}...\" to page {index + 1} at ({x}, {y})")
            changes += 1
        return changes

    def _delete_pages(self, doc: fitz.Document, indices: Any) -> int:
        if not isinstance(indices, list):
            return 0
        valid = {i for i in indices if isinstance(i, int) and 0 <= i < doc.page_count}
        # Highest index first so the remaining indices stay valid
        for index in sorted(valid, reverse=True):
            doc.delete_page(index)
            logger.info(f"Deleted page {index + 1}")
        return len(valid)

    def _add_watermark(self, doc: fitz.Document, watermark: Any) -> int:
        if not isinstance(watermark, dict) or not watermark.get("text"):
            return 0
        text = str(watermark["text"])
        opacity = max(0.1, min(1.0, _number(watermark.get("opacity"), 0.3, "opacity")))
        size = _number(watermark.get("fontSize"), 50, "fontSize", positive=True)
        angle = _number(watermark.get("angle"), 45, "angle")

        changes = 0
        for page in doc:
            rect = page.rect
            width = fitz.get_text_length(text, fontname="helv", fontsize=size)
            origin = fitz.Point((rect.width - width) / 2, rect.height / 2)
            page.insert_text(origin, text, fontsize=size, fontname="helv", color=(0.5, 0.5, 0.5),
                             fill_opacity=opacity, morph=(origin, fitz.Matrix(-angle)))
            changes += 1
        return changes

    def _add_page_numbers(self, doc: fitz.Document, options: Any) -> int:
        if not isinstance(options, dict):
            return 0
        position = options.get("position") or "bottom-left"
        start = int(_number(options.get("startFrom"), 1, "startFrom"))
        size = _number(options.get("fontSize"), 10, "fontSize", positive=True)
        template = str(options.get("format") or "Page {n}")

        changes = 0
        for index, page in enumerate(doc):
            rect = page.rect
            label = template.replace("{n}", str(start + index))
            width = fitz.get_text_length(label, fontname="helv", fontsize=size)
            if position == "top-center":
                point = (rect.width / 2 - width / 2, 30)
            elif position == "bottom-center":
                point = (rect.width / 2 - width / 2, rect.height - 20)
            elif position == "bottom-right":
                point = (rect.width - width - 20, rect.height - 20)
            else:
                point = (20, rect.height - 20)
            page.insert_text(point, label, fontsize=size, fontname="helv", color=(0, 0, 0))
            changes += 1
        return changes
