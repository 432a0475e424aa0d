"""
PDF Tool Suite Server - FastAPI application with modular tool mixins
Freemium gating, payment capture and premium codes in front of the PDF tools
"""

import asyncio
import logging
import os
import platform
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .entitlements import commit, evaluate, require_convert_format
from .errors import AdminAuthRequired, InvalidCode, InvalidInput, PDFToolsError, ProcessingFailure
from .payments import PREMIUM_PRICE, PaymentBridge, extract_captured_amount
from .reclamation import (
    RECLAIM_INTERVAL_SECONDS,
    RESULT_TTL_SECONDS,
    DeferredTaskScheduler,
    reclamation_loop,
)
from .security import (
    MAX_FILES,
    MAX_PDF_SIZE,
    check_admin_token,
    resolve_result_path,
    sanitize_error_message,
    validate_file_count,
    validate_json_parameter,
    validate_pdf_bytes,
)
from .stores import PREMIUM_HOURS, Stores, normalize_code
from .tools import ALL_MIXINS
from .tools.base import ToolRegistry, ToolRequest, UploadedPDF
from .tools.editing import MAX_DIRECT_EDIT_PAGES, validate_for_direct_edit

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_MANUAL_CODES = 50

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".txt": "text/plain",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".csv": "text/csv",
}

PREMIUM_FEATURES = {
    "directEditAdvanced": True,
    "unlimitedTextElements": True,
    "premiumRepair": True,
    "advancedConversion": True,
}


class Settings(BaseModel):
    """Server configuration, read from the environment at startup"""
    host: str = "0.0.0.0"
    port: int = 3001
    output_dir: Path = Path("outputs")
    admin_token: Optional[str] = None
    max_pdf_size: int = MAX_PDF_SIZE
    max_files: int = MAX_FILES
    result_ttl_seconds: float = RESULT_TTL_SECONDS
    reclaim_interval_seconds: float = RECLAIM_INTERVAL_SECONDS
    premium_price: str = PREMIUM_PRICE
    premium_hours: float = PREMIUM_HOURS
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:3001"]
    )
    debug: bool = False


class CaptureRequest(BaseModel):
    orderId: str
    payerId: Optional[str] = None
    paymentDetails: Optional[Dict[str, Any]] = None


class CodeRequest(BaseModel):
    code: str = ""


class ManualCodesRequest(BaseModel):
    count: int = 1


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _format_validation_errors(exc: RequestValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()]


class PDFToolsServer:
    """
    PDF Tool Suite HTTP server.

    Owns the in-memory stores, the tool registry populated from the tool
    mixins, and the FastAPI application exposing them.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or self._load_configuration()
        self.stores = Stores()
        self.payments = PaymentBridge(self.stores, self.settings.premium_price, self.settings.premium_hours)
        self.scheduler = DeferredTaskScheduler()
        self.registry = ToolRegistry()
        self.mixins = []
        self.started_at = time.monotonic()

        self.settings.output_dir.mkdir(parents=True, exist_ok=True)

        logger.info("🎬 PDF Tool Suite Server")
        self._initialize_mixins()

        self.app = FastAPI(title="PDF Tool Suite", version=__version__, lifespan=self._lifespan)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "Accept", "X-User-ID", "X-Admin-Token"],
        )
        self._register_error_handlers()
        self._register_routes()

        logger.info(f"✅ Server initialized with {len(self.mixins)} mixins")
        self._log_registration_summary()

    def _load_configuration(self) -> Settings:
        """Load server configuration from environment and defaults"""
        origins = os.getenv("ALLOWED_ORIGINS")
        values: Dict[str, Any] = {
            "host": os.getenv("HOST", "0.0.0.0"),
            "port": int(os.getenv("PORT", "3001")),
            "output_dir": Path(os.getenv("OUTPUT_DIR", "outputs")),
            "admin_token": os.getenv("ADMIN_TOKEN") or None,
            "max_pdf_size": int(os.getenv("MAX_PDF_SIZE", str(MAX_PDF_SIZE))),
            "max_files": int(os.getenv("MAX_FILES", str(MAX_FILES))),
            "result_ttl_seconds": float(os.getenv("RESULT_TTL_SECONDS", str(RESULT_TTL_SECONDS))),
            "reclaim_interval_seconds": float(os.getenv("RECLAIM_INTERVAL_SECONDS", str(RECLAIM_INTERVAL_SECONDS))),
            "premium_price": os.getenv("PREMIUM_PRICE", PREMIUM_PRICE),
            "premium_hours": float(os.getenv("PREMIUM_HOURS", str(PREMIUM_HOURS))),
            "debug": os.getenv("DEBUG", "false").lower() == "true",
        }
        if origins:
            values["allowed_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        return Settings(**values)

    def _initialize_mixins(self):
        """Initialize all tool mixins and register their tools"""
        for mixin_class in ALL_MIXINS:
            mixin = mixin_class()
            mixin.register_all(self.registry)
            self.mixins.append(mixin)
            logger.info(f"✓ Initialized and registered {mixin_class.__name__}")

    def _log_registration_summary(self):
        logger.info("📋 Registration Summary:")
        logger.info(f"   • {len(self.mixins)} mixins loaded")
        logger.info(f"   • Tools: {', '.join(self.registry.names())}")
        logger.info(f"   • Output directory: {self.settings.output_dir}")

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        reclaimer = asyncio.create_task(
            reclamation_loop(self.stores, self.settings.reclaim_interval_seconds)
        )
        logger.info("🧹 Reclamation loop started")
        try:
            yield
        finally:
            reclaimer.cancel()
            await asyncio.gather(reclaimer, return_exceptions=True)
            await self.scheduler.shutdown()
            logger.info("Server shutdown complete")

    def _require_admin(self, token: Optional[str]) -> None:
        if not check_admin_token(token, self.settings.admin_token):
            raise AdminAuthRequired()

    def _register_error_handlers(self):
        @self.app.exception_handler(PDFToolsError)
        async def handle_tools_error(request: Request, exc: PDFToolsError):
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

        @self.app.exception_handler(RequestValidationError)
        async def handle_validation_error(request: Request, exc: RequestValidationError):
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid request", "details": _format_validation_errors(exc)},
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def handle_http_error(request: Request, exc: StarletteHTTPException):
            if exc.status_code == 404:
                return JSONResponse(status_code=404, content={
                    "error": "Route not found",
                    "path": request.url.path,
                    "method": request.method,
                    "timestamp": _timestamp(),
                })
            return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    def _register_routes(self):
        app = self.app
        settings = self.settings

        @app.get("/api/health")
        async def health() -> Dict[str, Any]:
            return {
                "status": "OK",
                "timestamp": _timestamp(),
                "uptime": time.monotonic() - self.started_at,
                "activeSessions": len(self.stores.sessions),
                "version": __version__,
                "features": {
                    "core": ["merge", "split", "compress", "repair", "convert"],
                    "enhanced": ["direct-edit-support", "advanced-text-editing", "premium-features"],
                },
                "limits": {
                    "maxFileSize": f"{settings.max_pdf_size // (1024 * 1024)}MB",
                    "maxFiles": settings.max_files,
                    "maxDirectEditPages": MAX_DIRECT_EDIT_PAGES,
                },
            }

        @app.get("/api/user-status")
        async def user_status(x_user_id: Optional[str] = Header(None)) -> Dict[str, Any]:
            user_id, session = self.stores.sessions.resolve(x_user_id)
            premium = self.stores.sessions.is_premium(session)
            return {
                "userId": user_id,
                "isPremium": premium,
                "premiumUntil": session.premium_until.isoformat() if session.premium_until else None,
                "usage": dict(session.usage),
                "features": {
                    "directEdit": True,
                    "advancedEdit": premium,
                    "unlimitedText": premium,
                },
            }

        @app.post("/api/validate-pdf")
        async def validate_pdf(file: Optional[UploadFile] = File(None),
                               x_user_id: Optional[str] = Header(None)) -> Dict[str, Any]:
            user_id, _ = self.stores.sessions.resolve(x_user_id)
            logger.info(f"PDF validation request from user: {user_id}")
            if file is None:
                raise InvalidInput("No file uploaded")

            data = validate_pdf_bytes(file.filename or "upload.pdf", await file.read(), settings.max_pdf_size)
            validation = await asyncio.to_thread(validate_for_direct_edit, data)
            return {
                "success": True,
                "validation": validation,
                "userId": user_id,
                "message": "PDF is suitable for direct editing" if validation["canDirectEdit"]
                else "PDF has issues that may affect direct editing",
            }

        @app.post("/api/process-pdf")
        async def process_pdf(
            files: Optional[List[UploadFile]] = File(None),
            tool: Optional[str] = Form(None),
            convertTo: Optional[str] = Form(None),
            splitMethod: Optional[str] = Form(None),
            pageRanges: Optional[str] = Form(None),
            numberOfParts: Optional[str] = Form(None),
            edits: Optional[str] = Form(None),
            x_user_id: Optional[str] = Header(None),
        ) -> Dict[str, Any]:
            start_time = time.time()
            user_id, session = self.stores.sessions.resolve(x_user_id)
            files = files or []
            logger.info(f"=== {str(tool).upper()} PROCESSING ===")
            logger.info(f"User: {user_id}, Files: {len(files)}, Format: {convertTo}")

            try:
                validate_file_count(len(files), settings.max_files)
                if not tool:
                    raise InvalidInput("No tool specified")

                permit = evaluate(session, tool, convertTo)
                require_convert_format(tool, convertTo)

                uploads = [
                    UploadedPDF(
                        filename=upload.filename or "upload.pdf",
                        data=validate_pdf_bytes(upload.filename or "upload.pdf", await upload.read(),
                                                settings.max_pdf_size),
                    )
                    for upload in files
                ]
                request = ToolRequest(
                    files=uploads,
                    is_premium=permit.is_premium,
                    options={
                        "convertTo": convertTo,
                        "splitMethod": splitMethod,
                        "pageRanges": pageRanges,
                        "numberOfParts": numberOfParts,
                        "edits": validate_json_parameter(edits),
                    },
                )
            except PDFToolsError as e:
                e.context.setdefault("userId", user_id)
                raise

            handler = self.registry.get(tool)
            try:
                result = await asyncio.to_thread(handler, request)
            except ProcessingFailure as e:
                logger.error(f"{tool} processing error: {e}")
                raise ProcessingFailure(
                    "Processing failed",
                    details=sanitize_error_message(e.message),
                    tool=tool,
                    timestamp=_timestamp(),
                    **{k: v for k, v in e.context.items() if k not in ("details", "tool", "timestamp")},
                ) from e
            except PDFToolsError as e:
                e.context.setdefault("userId", user_id)
                raise
            except Exception as e:
                logger.error(f"{tool} processing error: {e}")
                raise ProcessingFailure(
                    "Processing failed",
                    details=sanitize_error_message(str(e)),
                    tool=tool,
                    timestamp=_timestamp(),
                ) from e

            output_path = settings.output_dir / result.filename
            try:
                await asyncio.to_thread(output_path.write_bytes, result.data)
            except OSError as e:
                logger.error(f"Failed to save result {result.filename}: {e}")
                raise ProcessingFailure(
                    "Processing failed",
                    details=sanitize_error_message(f"Could not save result: {e}"),
                    tool=tool,
                    timestamp=_timestamp(),
                ) from e

            # Usage is recorded only once the result is deliverable
            try:
                permit = commit(self.stores.sessions, session, tool, convertTo)
            except PDFToolsError as e:
                output_path.unlink(missing_ok=True)
                e.context.setdefault("userId", user_id)
                raise
            self.scheduler.schedule_file_deletion(output_path, settings.result_ttl_seconds)

            processing_time = int((time.time() - start_time) * 1000)
            logger.info(f"PROCESSING COMPLETED: {processing_time}ms")

            response = {
                "success": True,
                "downloadUrl": f"/api/download/{result.filename}",
                "filename": result.filename,
                "fileSize": len(result.data),
                "userId": user_id,
                "remainingUses": permit.remaining_after_success,
                "processingTime": processing_time,
                "quality": "Premium" if permit.is_premium else "Professional",
                "features": {
                    "directEditAvailable": tool == "edit",
                    "advancedFeaturesUsed": permit.is_premium,
                },
            }
            response.update(result.extra)
            return response

        @app.get("/api/download/{filename}")
        async def download(filename: str):
            path = resolve_result_path(settings.output_dir, filename)
            media_type = CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
            return FileResponse(path, media_type=media_type, filename=path.name)

        @app.post("/api/create-paypal-order")
        async def create_paypal_order(x_user_id: Optional[str] = Header(None)) -> Dict[str, Any]:
            user_id, _ = self.stores.sessions.resolve(x_user_id)
            payment = self.payments.create_order(user_id)
            return {"orderId": payment.order_id, "userId": user_id}

        @app.post("/api/capture-paypal-payment")
        async def capture_paypal_payment(body: CaptureRequest,
                                         x_user_id: Optional[str] = Header(None)) -> Dict[str, Any]:
            details = body.paymentDetails or {}
            user_id, session = self.stores.sessions.resolve(x_user_id)
            receipt = self.payments.capture_payment(
                order_id=body.orderId,
                payer_id=body.payerId,
                payment_status=details.get("status"),
                captured_amount=extract_captured_amount(details),
                session=session,
            )
            return {
                "success": True,
                "premiumUntil": receipt.premium_until.isoformat(),
                "premiumCode": receipt.code,
                "message": f"Payment successful! Premium code: {receipt.code}",
                "orderId": receipt.order_id,
                "userId": user_id,
                "features": PREMIUM_FEATURES,
            }

        @app.post("/api/activate-premium-code")
        async def activate_premium_code(body: CodeRequest,
                                        x_user_id: Optional[str] = Header(None)) -> Dict[str, Any]:
            user_id, _ = self.stores.sessions.resolve(x_user_id)
            info = self.stores.codes.redeem(body.code, user_id, self.stores.sessions)
            return {
                "success": True,
                "premiumUntil": info.premium_until.isoformat(),
                "userId": info.user_id,
                "message": "Premium code activated successfully!",
                "features": PREMIUM_FEATURES,
            }

        @app.post("/api/validate-premium-code")
        async def validate_premium_code(body: CodeRequest) -> Dict[str, Any]:
            code = normalize_code(body.code)
            if not self.stores.codes.is_recognized(code):
                raise InvalidCode(code)
            return self.stores.codes.describe(code)

        @app.get("/api/premium-stats")
        async def premium_stats(x_admin_token: Optional[str] = Header(None)) -> Dict[str, Any]:
            self._require_admin(x_admin_token)
            codes = list(self.stores.codes)
            payments = list(self.stores.payments)
            return {
                "totalSessions": len(self.stores.sessions),
                "premiumUsers": self.stores.sessions.premium_count(),
                "generatedCodes": len(codes),
                "usedCodes": sum(1 for code in codes if code.used),
                "pendingPayments": sum(1 for p in payments if p.status == "pending"),
                "completedPayments": sum(1 for p in payments if p.status == "completed"),
                "timestamp": _timestamp(),
            }

        @app.get("/api/system-info")
        async def system_info(x_admin_token: Optional[str] = Header(None)) -> Dict[str, Any]:
            self._require_admin(x_admin_token)
            return {
                "version": __version__,
                "pythonVersion": platform.python_version(),
                "platform": platform.platform(),
                "uptime": time.monotonic() - self.started_at,
                "mixins": [mixin.get_registered_components() for mixin in self.mixins],
                "pendingFileCleanups": len(self.scheduler),
                "configuration": {
                    "maxFileSizeMB": settings.max_pdf_size // (1024 * 1024),
                    "maxFiles": settings.max_files,
                    "resultTtlSeconds": settings.result_ttl_seconds,
                    "reclaimIntervalSeconds": settings.reclaim_interval_seconds,
                    "premiumPrice": settings.premium_price,
                    "premiumHours": settings.premium_hours,
                    "debug": settings.debug,
                },
            }

        @app.post("/api/generate-manual-codes")
        async def generate_manual_codes(body: ManualCodesRequest,
                                        x_admin_token: Optional[str] = Header(None)) -> Dict[str, Any]:
            self._require_admin(x_admin_token)
            if not 1 <= body.count <= MAX_MANUAL_CODES:
                raise InvalidInput(f"Count must be between 1 and {MAX_MANUAL_CODES}")
            codes = self.stores.codes.generate_manual(body.count)
            logger.info(f"Generated {len(codes)} manual premium codes")
            return {
                "success": True,
                "count": len(codes),
                "codes": [code.code for code in codes],
                "generatedAt": _timestamp(),
            }


def create_server(settings: Optional[Settings] = None) -> PDFToolsServer:
    """Factory function to create the PDF tools server instance"""
    return PDFToolsServer(settings)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    return create_server(settings).app


def main():
    """Main entry point for the HTTP server"""
    try:
        server = create_server()
        if server.settings.debug:
            logging.getLogger().setLevel(logging.DEBUG)

        logger.info(f"🎬 PDF Tool Suite Server v{__version__}")
        logger.info(f"Listening on {server.settings.host}:{server.settings.port}")
        uvicorn.run(server.app, host=server.settings.host, port=server.settings.port)

    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        raise


if __name__ == "__main__":
    main()
