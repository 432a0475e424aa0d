"""
PDF Repair Mixin - multi-stage load, validation and structural repair
Produces an auditable diagnostic trail alongside the repaired document
"""

import io
import logging
import math
import time
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

# PDF processing libraries
import fitz  # PyMuPDF
import pypdf
from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvalidInput, NoValidPages, ProcessingFailure, SeverelyCorrupted
from ..security import sanitize_error_message
from .base import ToolMixin, ToolRequest, ToolResult, generate_result_filename, pdf_tool

logger = logging.getLogger(__name__)

MAX_DIMENSION = 14400
DEFAULT_WIDTH = 612
DEFAULT_HEIGHT = 792
REPORT_LOG_LINES = 25


class LoadStrategy(str, Enum):
    STANDARD = "standard"
    RECOVERY_IGNORE_ENCRYPTION = "recovery"
    CAREFUL_SLOW_PARSE = "careful"
    FAILED = "failed"


def open_standard(data: bytes) -> fitz.Document:
    """Direct parse; anything that needed xref reconstruction or is encrypted fails"""
    doc = fitz.open(stream=data, filetype="pdf")
    if doc.is_encrypted or doc.needs_pass:
        doc.close()
        raise ValueError("Document is encrypted")
    if doc.is_repaired:
        doc.close()
        raise ValueError("Cross-reference table is damaged")
    if doc.page_count == 0:
        doc.close()
        raise ValueError("Document has no pages")
    return doc


def open_recovery(data: bytes) -> fitz.Document:
    """Parse tolerating xref reconstruction and empty-password encryption"""
    doc = fitz.open(stream=data, filetype="pdf")
    if doc.needs_pass and not doc.authenticate(""):
        doc.close()
        raise ValueError("Document requires a password")
    if doc.page_count == 0:
        doc.close()
        raise ValueError("No pages could be recovered")
    return doc


def open_careful(data: bytes) -> fitz.Document:
    """Slow, maximally tolerant parse: rebuild page by page through pypdf"""
    reader = pypdf.PdfReader(io.BytesIO(data), strict=False)
    if reader.is_encrypted:
        reader.decrypt("")

    writer = pypdf.PdfWriter()
    for index, page in enumerate(reader.pages):
        try:
            writer.add_page(page)
        except Exception as e:
            logger.warning(f"Careful parse skipped page {index + 1}: {e}")

    if len(writer.pages) == 0:
        raise ValueError("No recoverable pages")

    buffer = io.BytesIO()
    writer.write(buffer)
    return fitz.open(stream=buffer.getvalue(), filetype="pdf")


DEFAULT_STRATEGIES: List[Tuple[LoadStrategy, Callable[[bytes], fitz.Document]]] = [
    (LoadStrategy.STANDARD, open_standard),
    (LoadStrategy.RECOVERY_IGNORE_ENCRYPTION, open_recovery),
    (LoadStrategy.CAREFUL_SLOW_PARSE, open_careful),
]


class RepairStats(BaseModel):
    """Diagnostic counters surfaced verbatim in API responses"""
    model_config = ConfigDict(populate_by_name=True)

    issues_found: int = Field(default=0, alias="issuesFound")
    issues_fixed: int = Field(default=0, alias="issuesFixed")
    pages_repaired: int = Field(default=0, alias="pagesRepaired")
    total_pages: int = Field(default=0, alias="totalPages")
    load_method: LoadStrategy = Field(default=LoadStrategy.FAILED, alias="loadMethod")
    size_change_percent: float = Field(default=0.0, alias="sizeChangePercent")
    repair_log: List[str] = Field(default_factory=list, alias="repairLog")

    def to_dict(self):
        return self.model_dump(by_alias=True, mode="json")


class RepairResult(BaseModel):
    data: bytes
    stats: RepairStats


class _RepairState:
    """Mutable bookkeeping for one repair run"""

    def __init__(self):
        self.log: List[str] = []
        self.issues_found = 0
        self.issues_fixed = 0
        self.repaired_pages: Set[int] = set()

    def found(self, message: str) -> None:
        self.log.append(message)
        self.issues_found += 1

    def fixed(self, message: str, page_index: Optional[int] = None) -> None:
        self.log.append(message)
        self.issues_found += 1
        self.issues_fixed += 1
        if page_index is not None:
            self.repaired_pages.add(page_index)

    def counters(self) -> str:
        return f"Issues found: {self.issues_found}, Issues fixed: {self.issues_fixed}"


def _parse_box(value: str) -> Optional[Tuple[float, float, float, float]]:
    try:
        numbers = [float(v) for v in value.strip("[] ").split()]
    except ValueError:
        return None
    if len(numbers) != 4:
        return None
    return numbers[0], numbers[1], numbers[2], numbers[3]


def _valid_dimension(value: float) -> bool:
    return 0 < value <= MAX_DIMENSION


class RepairEngine:
    """
    Load a possibly malformed PDF, fix what can be fixed and report it.

    Load strategies are tried in order and the first success wins. The page
    validation pass then clamps bad dimensions, normalizes rotations and, for
    premium runs, recreates pages whose inspection fails.
    """

    def __init__(self, strategies: Optional[List[Tuple[LoadStrategy, Callable[[bytes], fitz.Document]]]] = None):
        self.strategies = strategies or DEFAULT_STRATEGIES

    def repair(self, data: bytes, is_premium: bool = False) -> RepairResult:
        if not data:
            raise InvalidInput("Uploaded file is empty")

        logger.info("Enhanced PDF repair - analyzing document structure...")
        state = _RepairState()

        try:
            doc, load_method = self._load(data, state)
            try:
                stats = self._repair_document(doc, load_method, state, is_premium)
                repaired = doc.tobytes(garbage=3, deflate=True)
            finally:
                doc.close()
        except ProcessingFailure as e:
            raise type(e)(
                f"PDF repair failed: {e.message}. {state.counters()}",
                issuesFound=state.issues_found,
                issuesFixed=state.issues_fixed,
            ) from e
        except Exception as e:
            logger.error(f"Enhanced PDF repair failed: {e}")
            raise ProcessingFailure(
                f"PDF repair failed: {sanitize_error_message(str(e))}. {state.counters()}",
                issuesFound=state.issues_found,
                issuesFixed=state.issues_fixed,
            ) from e

        stats.size_change_percent = round((len(repaired) - len(data)) / len(data) * 100, 1)

        logger.info(f"Repaired size: {len(repaired)} bytes ({stats.size_change_percent:+.1f}%)")
        logger.info(f"Issues found: {stats.issues_found}, Issues fixed: {stats.issues_fixed}")
        logger.info(f"Pages repaired: {stats.pages_repaired}/{stats.total_pages}")
        return RepairResult(data=repaired, stats=stats)

    def _load(self, data: bytes, state: _RepairState) -> Tuple[fitz.Document, LoadStrategy]:
        errors = []
        for strategy, opener in self.strategies:
            try:
                doc = opener(data)
            except Exception as e:
                errors.append(f"{strategy.value}: {e}")
                if strategy is LoadStrategy.STANDARD:
                    logger.info("Standard loading failed, trying recovery mode...")
                    state.found("Standard loading failed - attempting recovery")
                else:
                    state.log.append(f"{strategy.value.capitalize()} loading failed: {sanitize_error_message(str(e))}")
                continue

            if strategy is not LoadStrategy.STANDARD:
                state.log.append(f"PDF loaded using {strategy.value} mode")
                state.issues_fixed += 1
            logger.info(f"PDF loaded successfully with {strategy.value} method")
            return doc, strategy

        raise SeverelyCorrupted(
            f"PDF is severely corrupted and cannot be repaired ({'; '.join(errors)})"
        )

    def _repair_document(self, doc: fitz.Document, load_method: LoadStrategy,
                         state: _RepairState, is_premium: bool) -> RepairStats:
        total_pages = doc.page_count
        state.log.append(f"Document contains {total_pages} pages")

        self._sanitize_metadata(doc, state)

        valid_pages = 0
        for index in range(total_pages):
            try:
                self._inspect_page(doc, index, state)
                valid_pages += 1
            except Exception as e:
                logger.warning(f"Page {index + 1} has issues: {e}")
                state.found(f"Page {index + 1} has structural issues: {sanitize_error_message(str(e))}")
                if is_premium and self._recreate_page(doc, index, state):
                    valid_pages += 1

        if valid_pages == 0:
            raise NoValidPages("No valid pages found in document - cannot repair")

        if is_premium:
            self._embed_standard_fonts(doc, state)

        if is_premium and (state.issues_found > 0 or state.repaired_pages):
            self._append_report_page(doc, load_method, state)

        return RepairStats(
            issues_found=state.issues_found,
            issues_fixed=state.issues_fixed,
            pages_repaired=len(state.repaired_pages),
            total_pages=total_pages,
            load_method=load_method,
            repair_log=list(state.log),
        )

    def _sanitize_metadata(self, doc: fitz.Document, state: _RepairState) -> None:
        metadata = dict(doc.metadata or {})
        changed = False
        for key in ("title", "author"):
            value = metadata.get(key)
            if value and "\0" in value:
                metadata[key] = value.replace("\0", "")
                state.fixed(f"Cleaned corrupted {key} metadata")
                changed = True
        if changed:
            doc.set_metadata(metadata)

    def _inspect_page(self, doc: fitz.Document, index: int, state: _RepairState) -> None:
        """Validate one page in place; raises when the page cannot be inspected"""
        page = doc[index]
        xref = page.xref

        kind, raw_box = doc.xref_get_key(xref, "MediaBox")
        box = _parse_box(raw_box) if kind == "array" else None
        if box is None:
            rect = page.mediabox
            box = (rect.x0, rect.y0, rect.x1, rect.y1)
        width = box[2] - box[0]
        height = box[3] - box[1]

        if not _valid_dimension(width) or not _valid_dimension(height):
            new_width = width if _valid_dimension(width) else DEFAULT_WIDTH
            new_height = height if _valid_dimension(height) else DEFAULT_HEIGHT
            doc.xref_set_key(xref, "MediaBox", f"[0 0 {new_width:g} {new_height:g}]")
            if doc.xref_get_key(xref, "CropBox")[0] != "null":
                doc.xref_set_key(xref, "CropBox", "null")
            if not _valid_dimension(width):
                state.fixed(f"Fixed invalid width on page {index + 1}", index)
            if not _valid_dimension(height):
                state.fixed(f"Fixed invalid height on page {index + 1}", index)

        kind, raw_rotation = doc.xref_get_key(xref, "Rotate")
        if kind == "int":
            angle = int(raw_rotation)
        elif kind == "real":
            angle = float(raw_rotation)
        else:
            angle = page.rotation
        if angle % 90 != 0:
            normalized = int(math.floor(angle / 90 + 0.5)) * 90
            doc.xref_set_key(xref, "Rotate", str(normalized))
            state.fixed(f"Fixed invalid rotation on page {index + 1}: {angle:g}° → {normalized}°", index)

    def _recreate_page(self, doc: fitz.Document, index: int, state: _RepairState) -> bool:
        """Swap a broken page for a blank placeholder at the same position"""
        inserted = False
        try:
            page = doc.new_page(pno=index, width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT)
            inserted = True
            page.insert_text(
                (50, DEFAULT_HEIGHT - 750),
                f"Page {index + 1} was corrupted and has been recreated",
                fontsize=12,
                fontname="helv",
            )
            doc.delete_page(index + 1)
        except Exception as e:
            if inserted:
                doc.delete_page(index)
            state.log.append(f"Could not recreate page {index + 1}: {sanitize_error_message(str(e))}")
            return False

        state.log.append(f"Premium repair: Recreated corrupted page {index + 1}")
        state.issues_fixed += 1
        state.repaired_pages.add(index)
        return True

    def _embed_standard_fonts(self, doc: fitz.Document, state: _RepairState) -> None:
        page = doc[0]
        page.insert_font(fontname="helv")
        page.insert_font(fontname="hebo")
        state.log.append("Premium repair: Embedded standard fonts to prevent font issues")

    def _append_report_page(self, doc: fitz.Document, load_method: LoadStrategy, state: _RepairState) -> None:
        page = doc.new_page(pno=-1, width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT)

        def draw(y: float, text: str, size: float = 10, bold: bool = False) -> None:
            # Layout coordinates are measured from the bottom edge
            page.insert_text((50, DEFAULT_HEIGHT - y), text, fontsize=size,
                             fontname="hebo" if bold else "helv")

        draw(750, "PDF REPAIR REPORT", size=16, bold=True)
        draw(720, f"Repair Date: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        draw(700, f"Load Method: {load_method.value}")
        draw(680, f"Issues Found: {state.issues_found}")
        draw(660, f"Issues Fixed: {state.issues_fixed}")
        draw(640, f"Pages Repaired: {len(state.repaired_pages)}")
        draw(610, "REPAIR LOG:", size=12, bold=True)

        y = 590
        for entry in state.log[:REPORT_LOG_LINES]:
            if y <= 50:
                break
            draw(y, f"• {entry}", size=9)
            y -= 15

        state.log.append("Premium repair: Added detailed repair report page")


class RepairMixin(ToolMixin):
    """
    Handles PDF repair with structured diagnostics.
    """

    def _setup(self):
        self.engine = RepairEngine()

    def get_mixin_name(self) -> str:
        return "Repair"

    @pdf_tool(name="repair", description="Diagnose and repair a damaged PDF")
    def repair(self, request: ToolRequest) -> ToolResult:
        start_time = time.time()
        result = self.engine.repair(request.first.data, is_premium=request.is_premium)
        logger.info(f"=== PDF REPAIR COMPLETED in {time.time() - start_time:.2f}s ===")
        return ToolResult(
            data=result.data,
            filename=generate_result_filename("repaired"),
            extra={"repairStats": result.stats.to_dict()},
        )
