"""
Document tool mixins

Each mixin groups related tools and registers them by name through
``ToolMixin.register_all``.
"""

from .base import ToolMixin, ToolRegistry, ToolRequest, ToolResult, UploadedPDF, pdf_tool
from .conversion import ConversionMixin
from .document_assembly import DocumentAssemblyMixin
from .editing import EditingMixin
from .optimization import OptimizationMixin
from .repair import RepairMixin

ALL_MIXINS = [
    DocumentAssemblyMixin,
    OptimizationMixin,
    RepairMixin,
    ConversionMixin,
    EditingMixin,
]

__all__ = [
    "ToolMixin",
    "ToolRegistry",
    "ToolRequest",
    "ToolResult",
    "UploadedPDF",
    "pdf_tool",
    "DocumentAssemblyMixin",
    "OptimizationMixin",
    "RepairMixin",
    "ConversionMixin",
    "EditingMixin",
    "ALL_MIXINS",
]
