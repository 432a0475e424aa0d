"""
Error taxonomy for the PDF tool suite.

Every error carries the HTTP status it maps to and optional structured
context that is merged into the JSON error body.
"""

from typing import Any, Dict, Optional


class PDFToolsError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        body.update(self.context)
        return body


class InvalidInput(PDFToolsError):
    status_code = 400


class InvalidTool(InvalidInput):
    def __init__(self, tool: Optional[str]):
        super().__init__("Invalid tool specified", tool=tool)


class PremiumRequired(PDFToolsError):
    status_code = 403


class QuotaExhausted(PDFToolsError):
    status_code = 403

    def __init__(self, tool: str, used: int, limit: int):
        super().__init__(
            f"Free limit reached for {tool}. You've used {used}/{limit} free uses.",
            used=used,
            limit=limit,
        )
        self.tool = tool
        self.used = used
        self.limit = limit


class InvalidCode(PDFToolsError):
    status_code = 400

    def __init__(self, code: str):
        # Only a prefix of the code is echoed back for audit logs
        super().__init__("Invalid premium code", code=f"{code[:6]}..." if code else "")


class PaymentNotCompleted(PDFToolsError):
    status_code = 400

    def __init__(self, status: Optional[str]):
        super().__init__("Payment not completed", status=status)


class InvalidAmount(PDFToolsError):
    status_code = 400

    def __init__(self, amount: Optional[str], expected: str):
        super().__init__("Invalid payment amount", amount=amount, expected=expected)


class ProcessingFailure(PDFToolsError):
    status_code = 500


class SeverelyCorrupted(ProcessingFailure):
    pass


class NoValidPages(ProcessingFailure):
    pass


class NotFound(PDFToolsError):
    status_code = 404


class AdminAuthRequired(PDFToolsError):
    status_code = 401

    def __init__(self):
        super().__init__("Admin authentication required")
