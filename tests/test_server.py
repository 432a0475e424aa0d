"""End-to-end tests for the HTTP API"""

import json
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import fitz
import pytest

from conftest import build_pdf
from pdf_toolsuite.stores import utcnow


def upload(*documents):
    return [("files", (f"doc{i}.pdf", data, "application/pdf")) for i, data in enumerate(documents)]


def page_texts(data):
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        return [(page.rect.width, page.rect.height, page.get_text()) for page in doc]
    finally:
        doc.close()


def new_user(client):
    return client.get("/api/user-status").json()["userId"]


def capture_body(amount="2.00", status="COMPLETED"):
    return {
        "orderId": "ORDER_1",
        "payerId": "PAYER1",
        "paymentDetails": {
            "status": status,
            "purchase_units": [{"payments": {"captures": [{"amount": {"value": amount}}]}}],
        },
    }


class TestStatusEndpoints:
    """Test health and user status"""

    def test_health(self, client):
        body = client.get("/api/health").json()

        assert body["status"] == "OK"
        assert body["limits"]["maxFiles"] == 20
        assert body["limits"]["maxFileSize"] == "50MB"

    def test_user_status_mints_session(self, client, server):
        body = client.get("/api/user-status").json()

        assert body["userId"].startswith("user_")
        assert body["isPremium"] is False
        assert body["premiumUntil"] is None
        assert body["usage"]["repair"] == 0
        assert body["userId"] in server.stores.sessions

    def test_user_status_reuses_header(self, client):
        user_id = new_user(client)

        body = client.get("/api/user-status", headers={"X-User-ID": user_id}).json()
        assert body["userId"] == user_id

    def test_unknown_route(self, client):
        response = client.get("/api/nothing-here")

        assert response.status_code == 404
        assert response.json()["error"] == "Route not found"


class TestProcessPdf:
    """Test the processing pipeline"""

    def test_merge_then_download(self, client):
        first, second = build_pdf(2), build_pdf(3, width=400, text="Appendix")
        user_id = new_user(client)
        response = client.post(
            "/api/process-pdf",
            files=upload(first, second),
            data={"tool": "merge"},
            headers={"X-User-ID": user_id},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["userId"] == user_id
        assert body["remainingUses"] is None
        assert body["quality"] == "Professional"

        download = client.get(body["downloadUrl"])
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/pdf"

        expected = fitz.open()
        for data in (first, second):
            source = fitz.open(stream=data, filetype="pdf")
            expected.insert_pdf(source)
            source.close()
        concatenated = expected.tobytes()
        expected.close()
        assert page_texts(download.content) == page_texts(concatenated)
        assert len(page_texts(download.content)) == 5

    def test_result_file_scheduled_for_cleanup(self, client, server, settings):
        client.post("/api/process-pdf", files=upload(build_pdf(1)), data={"tool": "compress"})

        assert len(list(settings.output_dir.iterdir())) == 1
        assert len(server.scheduler) == 1

    def test_repair_quota(self, client, sample_pdf):
        user_id = new_user(client)
        headers = {"X-User-ID": user_id}

        remaining = []
        for _ in range(2):
            response = client.post("/api/process-pdf", files=upload(sample_pdf),
                                   data={"tool": "repair"}, headers=headers)
            assert response.status_code == 200
            assert "repairStats" in response.json()
            remaining.append(response.json()["remainingUses"])
        assert remaining == [1, 0]

        response = client.post("/api/process-pdf", files=upload(sample_pdf),
                               data={"tool": "repair"}, headers=headers)
        assert response.status_code == 403
        body = response.json()
        assert body["used"] == 2
        assert body["limit"] == 2
        assert body["userId"] == user_id

    def test_failed_processing_does_not_consume_quota(self, client):
        user_id = new_user(client)
        garbage = b"%PDF-1.4\n" + b"not really a pdf " * 40

        response = client.post("/api/process-pdf", files=upload(garbage),
                               data={"tool": "repair"}, headers={"X-User-ID": user_id})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Processing failed"
        assert body["tool"] == "repair"
        assert "timestamp" in body
        assert "corrupted" in body["details"]

        status = client.get("/api/user-status", headers={"X-User-ID": user_id}).json()
        assert status["usage"]["repair"] == 0

    def test_failed_save_does_not_consume_quota(self, client, sample_pdf, settings):
        user_id = new_user(client)

        with patch.object(Path, "write_bytes", side_effect=OSError("disk full")):
            response = client.post("/api/process-pdf", files=upload(sample_pdf),
                                   data={"tool": "repair"}, headers={"X-User-ID": user_id})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Processing failed"
        assert body["tool"] == "repair"
        assert "Could not save result: disk full" in body["details"]

        status = client.get("/api/user-status", headers={"X-User-ID": user_id}).json()
        assert status["usage"]["repair"] == 0
        assert list(settings.output_dir.iterdir()) == []

    def test_malformed_edit_number_is_client_error(self, client, sample_pdf):
        user_id = new_user(client)
        headers = {"X-User-ID": user_id}
        client.post("/api/activate-premium-code", json={"code": "DEMO2024"}, headers=headers)
        edits = json.dumps({"watermark": {"text": "DRAFT", "opacity": "half"}})

        response = client.post("/api/process-pdf", files=upload(sample_pdf),
                               data={"tool": "edit", "edits": edits}, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"] == "opacity must be a number"

        status = client.get("/api/user-status", headers=headers).json()
        assert status["usage"]["edit"] == 0

    def test_validation_errors(self, client, sample_pdf):
        assert client.post("/api/process-pdf", data={"tool": "merge"}).json()["error"] == "No files uploaded"

        response = client.post("/api/process-pdf", files=upload(sample_pdf))
        assert response.status_code == 400
        assert response.json()["error"] == "No tool specified"

        response = client.post("/api/process-pdf", files=upload(sample_pdf), data={"tool": "shred"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid tool specified"

        response = client.post("/api/process-pdf", files=upload(b"GIF89a not a pdf"), data={"tool": "merge"})
        assert response.status_code == 400

        response = client.post("/api/process-pdf", files=upload(sample_pdf), data={"tool": "convert"})
        assert response.status_code == 400
        assert response.json()["error"] == "No conversion format specified"

    def test_premium_conversion_gated(self, client, sample_pdf):
        response = client.post("/api/process-pdf", files=upload(sample_pdf),
                               data={"tool": "convert", "convertTo": "powerpoint"})

        assert response.status_code == 403

    def test_edit_with_json_edits(self, client):
        edits = json.dumps({"rotatePages": [{"pageIndex": 0, "degrees": 180}]})

        response = client.post("/api/process-pdf", files=upload(build_pdf(2)),
                               data={"tool": "edit", "edits": edits})

        assert response.status_code == 200
        assert response.json()["changesApplied"] == 1

    def test_invalid_edits_json(self, client, sample_pdf):
        response = client.post("/api/process-pdf", files=upload(sample_pdf),
                               data={"tool": "edit", "edits": "{broken"})

        assert response.status_code == 400


class TestDownload:
    def test_unknown_file(self, client):
        response = client.get("/api/download/missing_123.pdf")

        assert response.status_code == 404
        assert response.json()["error"] == "File not found"

    def test_path_traversal(self, client):
        assert client.get("/api/download/..%2F..%2Fetc%2Fpasswd").status_code == 404
        assert client.get("/api/download/.hidden").status_code == 404


class TestValidatePdf:
    def test_direct_edit_report(self, client, sample_pdf):
        response = client.post("/api/validate-pdf",
                               files={"file": ("a.pdf", sample_pdf, "application/pdf")})

        body = response.json()
        assert body["success"] is True
        assert body["validation"]["canDirectEdit"] is True
        assert body["validation"]["pageCount"] == 3

    def test_missing_file(self, client):
        assert client.post("/api/validate-pdf").status_code == 400


class TestPremiumFlow:
    """Test payments and premium codes"""

    def test_payment_capture(self, client, server):
        user_id = new_user(client)
        headers = {"X-User-ID": user_id}
        order = client.post("/api/create-paypal-order", headers=headers).json()
        assert order["orderId"].startswith("ORDER_")
        assert order["userId"] == user_id

        body = capture_body()
        body["orderId"] = order["orderId"]
        response = client.post("/api/capture-paypal-payment", json=body, headers=headers)

        assert response.status_code == 200
        result = response.json()
        assert result["premiumCode"].startswith("PREMIUM_")
        assert server.stores.payments.get(order["orderId"]).status == "completed"
        assert client.get("/api/user-status", headers=headers).json()["isPremium"] is True

    @pytest.mark.parametrize("amount,status,error", [
        ("1.99", "COMPLETED", "Invalid payment amount"),
        ("2.00", "PENDING", "Payment not completed"),
    ])
    def test_capture_rejected(self, client, amount, status, error):
        response = client.post("/api/capture-paypal-payment", json=capture_body(amount, status))

        assert response.status_code == 400
        assert response.json()["error"] == error

    def test_activate_code_unlocks_quota(self, client, sample_pdf):
        user_id = new_user(client)
        headers = {"X-User-ID": user_id}

        response = client.post("/api/activate-premium-code", json={"code": "premium24h"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["userId"] == user_id

        for _ in range(3):
            response = client.post("/api/process-pdf", files=upload(sample_pdf),
                                   data={"tool": "repair"}, headers=headers)
            assert response.status_code == 200
            assert response.json()["quality"] == "Premium"
            assert response.json()["remainingUses"] is None

    def test_invalid_code(self, client):
        response = client.post("/api/activate-premium-code", json={"code": "NOPE"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid premium code"

    def test_validate_code(self, client):
        body = client.post("/api/validate-premium-code", json={"code": "DEMO2024"}).json()
        assert body["valid"] is True
        assert body["canReuse"] is True

        assert client.post("/api/validate-premium-code", json={"code": "NOPE"}).status_code == 400

    def test_lapsed_premium(self, client, server):
        user_id = new_user(client)
        server.stores.sessions.get(user_id).premium_until = utcnow() - timedelta(minutes=1)

        body = client.get("/api/user-status", headers={"X-User-ID": user_id}).json()
        assert body["isPremium"] is False


class TestAdmin:
    """Test admin-gated endpoints"""

    ADMIN = {"X-Admin-Token": "admin-secret"}

    @pytest.mark.parametrize("path", ["/api/premium-stats", "/api/system-info"])
    def test_requires_token(self, client, path):
        assert client.get(path).status_code == 401
        assert client.get(path, headers={"X-Admin-Token": "wrong"}).status_code == 401
        assert client.get(path, headers=self.ADMIN).status_code == 200

    def test_premium_stats(self, client):
        client.post("/api/activate-premium-code", json={"code": "DEMO2024"})

        body = client.get("/api/premium-stats", headers=self.ADMIN).json()
        assert body["totalSessions"] == 1
        assert body["premiumUsers"] == 1

    def test_system_info(self, client):
        body = client.get("/api/system-info", headers=self.ADMIN).json()

        tools = sorted(tool for mixin in body["mixins"] for tool in mixin["tools"])
        assert tools == ["compress", "convert", "edit", "merge", "repair", "split"]

    def test_generate_manual_codes(self, client):
        response = client.post("/api/generate-manual-codes", json={"count": 3}, headers=self.ADMIN)

        codes = response.json()["codes"]
        assert len(codes) == 3

        activated = client.post("/api/activate-premium-code", json={"code": codes[0]})
        assert activated.status_code == 200

    @pytest.mark.parametrize("count", [0, 51])
    def test_manual_code_count_bounds(self, client, count):
        response = client.post("/api/generate-manual-codes", json={"count": count}, headers=self.ADMIN)
        assert response.status_code == 400

    def test_manual_codes_require_token(self, client):
        assert client.post("/api/generate-manual-codes", json={"count": 1}).status_code == 401

    def test_unset_admin_token_disables_admin(self, tmp_path):
        from fastapi.testclient import TestClient

        from pdf_toolsuite.server import Settings, create_server

        server = create_server(Settings(output_dir=tmp_path / "out"))
        with TestClient(server.app) as client:
            assert client.get("/api/premium-stats", headers={"X-Admin-Token": ""}).status_code == 401
