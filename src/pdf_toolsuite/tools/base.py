"""
Base ToolMixin class providing auto-registration of document tools
"""

import inspect
import logging
import secrets
import string
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..errors import InvalidInput

logger = logging.getLogger(__name__)

_FILENAME_ALPHABET = string.digits + string.ascii_lowercase


class UploadedPDF(BaseModel):
    """One uploaded input document"""
    filename: str
    data: bytes


class ToolRequest(BaseModel):
    """Everything a tool needs to run one operation"""
    files: List[UploadedPDF]
    is_premium: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)

    @property
    def first(self) -> UploadedPDF:
        if not self.files:
            raise InvalidInput("No files uploaded")
        return self.files[0]


class ToolResult(BaseModel):
    """Produced artifact plus any tool-specific response fields"""
    data: bytes
    filename: str
    extra: Dict[str, Any] = Field(default_factory=dict)


ToolHandler = Callable[[ToolRequest], ToolResult]


def generate_result_filename(prefix: str = "processed", extension: str = ".pdf") -> str:
    suffix = "".join(secrets.choice(_FILENAME_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}{extension}"


class ToolRegistry:
    """Maps tool names to the mixin methods that implement them"""

    def __init__(self):
        self._handlers: Dict[str, ToolHandler] = {}

    def add(self, name: str, handler: ToolHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Tool already registered: {name}")
        self._handlers[name] = handler

    def get(self, name: str) -> Optional[ToolHandler]:
        return self._handlers.get(name)

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


class ToolMixin(ABC):
    """
    Base mixin class for modular document tool groups.

    Provides:
    - Auto-registration of methods marked with ``@pdf_tool``
    - Consistent logging per mixin
    """

    def __init__(self, **kwargs):
        self.config = kwargs
        self._registered_tools: Set[str] = set()
        self._setup()

    @abstractmethod
    def get_mixin_name(self) -> str:
        """Return the name of this mixin for logging and identification"""
        pass

    def _setup(self):
        """Override for mixin-specific initialization"""
        pass

    def register_all(self, registry: ToolRegistry) -> None:
        """Discover decorated methods and add them to ``registry``"""
        mixin_name = self.get_mixin_name()
        logger.info(f"Auto-registering tools for {mixin_name}")

        for name, method in inspect.getmembers(self, predicate=inspect.ismethod):
            if name.startswith('_'):
                continue
            tool_config = getattr(method, '_pdf_tool_config', None)
            if tool_config is None:
                continue
            tool_name = tool_config.get('name') or name
            registry.add(tool_name, method)
            self._registered_tools.add(tool_name)
            logger.debug(f"Registered tool: {tool_name} from {mixin_name}")

    def get_registered_components(self) -> Dict[str, Any]:
        """Return summary of registered tools"""
        return {
            "mixin": self.get_mixin_name(),
            "tools": sorted(self._registered_tools),
        }


def pdf_tool(name: Optional[str] = None, description: Optional[str] = None):
    """
    Decorator to mark methods for tool registration.

    Usage:
        @pdf_tool(name="merge", description="Merge PDFs")
        def merge(self, request: ToolRequest) -> ToolResult:
            ...
    """
    def decorator(func):
        func._pdf_tool_config = {
            'name': name,
            'description': description,
        }
        return func
    return decorator
