"""
Optimization Mixin - PDF compression
"""

import logging

# PDF processing libraries
import fitz  # PyMuPDF

from .base import ToolMixin, ToolRequest, ToolResult, generate_result_filename, pdf_tool

logger = logging.getLogger(__name__)

PRODUCER = "PDF Tools Suite - Professional"
OVERSIZE_WIDTH = 1200
OVERSIZE_HEIGHT = 1600
PREMIUM_SCALE = 0.85


class OptimizationMixin(ToolMixin):
    """
    Handles PDF size optimization.
    """

    def get_mixin_name(self) -> str:
        return "Optimization"

    @pdf_tool(name="compress", description="Compress a PDF by stripping metadata and unused objects")
    def compress(self, request: ToolRequest) -> ToolResult:
        """
        Compress the first uploaded PDF.

        Metadata is cleared and the document is rewritten with garbage
        collection and deflate. Premium runs also scale pages larger than
        1200x1600 points down to 85%.
        """
        original = request.first.data
        doc = fitz.open(stream=original, filetype="pdf")
        optimized_pages = 0

        try:
            doc.set_metadata({"producer": PRODUCER})

            if request.is_premium:
                logger.info("Applying premium compression optimizations...")
                for index, page in enumerate(doc):
                    rect = page.rect
                    if rect.width > OVERSIZE_WIDTH or rect.height > OVERSIZE_HEIGHT:
                        self._scale_page(page, PREMIUM_SCALE)
                        optimized_pages += 1
                        logger.info(f"Optimized oversized page {index + 1}")

            data = doc.tobytes(garbage=4, deflate=True, clean=True)
        finally:
            doc.close()

        reduction = (len(original) - len(data)) / len(original) * 100
        logger.info(f"Professional compression: {len(original)} → {len(data)} bytes ({reduction:.1f}% reduction)")
        return ToolResult(
            data=data,
            filename=generate_result_filename("compressed"),
            extra={
                "originalSize": len(original),
                "reductionPercent": round(reduction, 1),
                "optimizedPages": optimized_pages,
            },
        )

    @staticmethod
    def _scale_page(page: fitz.Page, factor: float) -> None:
        """Scale page content and boxes about the PDF origin"""
        box = page.mediabox
        page.wrap_contents()
        contents = page.get_contents()
        if contents:
            doc = page.parent
            prefix = f"{factor:g} 0 0 {factor:g} 0 0 cm\n".encode()
            doc.update_stream(contents[0], prefix + doc.xref_stream(contents[0]))
        page.set_mediabox(fitz.Rect(box.x0 * factor, box.y0 * factor, box.x1 * factor, box.y1 * factor))
