"""
Tests for funnel/main.py and funnel/utils/logging.py - app factory,
correlation IDs and structured logging.
"""
import json
import logging
from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from funnel.main import CorrelationIdMiddleware, create_app
from funnel.utils.logging import (
    StructuredJsonFormatter,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from conftest import make_settings


# ---------------------------------------------------------------------------
# create_app - application factory
# ---------------------------------------------------------------------------

class TestCreateApp:
    def test_routes_are_mounted(self):
        with patch("funnel.main.get_settings", return_value=make_settings(log_level="WARNING")), \
             patch("funnel.main.configure_structured_logging"):
            app = create_app()

        assert isinstance(app, FastAPI)
        paths = {route.path for route in app.routes}
        assert {
            "/health",
            "/health/ready",
            "/api/v1/webhook/telegram",
            "/api/v1/webhook/whatsapp",
            "/api/v1/webhook/web",
            "/api/v1/webhook/form",
        } <= paths

    def test_liveness_over_http(self):
        with patch("funnel.main.get_settings", return_value=make_settings(log_level="WARNING")), \
             patch("funnel.main.configure_structured_logging"):
            app = create_app()

        # No context manager: the lifespan (and its workers) never starts
        response = TestClient(app).get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# ---------------------------------------------------------------------------
# Correlation IDs
# ---------------------------------------------------------------------------

def _echo_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/echo")
    async def echo():
        return {"cid": get_correlation_id()}

    return app


class TestCorrelationIdMiddleware:
    def test_incoming_header_is_propagated(self):
        response = TestClient(_echo_app()).get("/echo", headers={"X-Correlation-ID": "abc123"})
        assert response.headers["X-Correlation-ID"] == "abc123"
        assert response.json()["cid"] == "abc123"

    def test_generated_when_missing(self):
        response = TestClient(_echo_app()).get("/echo")
        cid = response.headers["X-Correlation-ID"]
        assert len(cid) == 32
        assert response.json()["cid"] == cid


# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------

class TestStructuredJsonFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("funnel.test", logging.INFO, __file__, 1, "Lead %s updated", ("abc",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_single_line_json_with_correlation_id(self):
        cid = generate_correlation_id()
        set_correlation_id(cid)

        entry = json.loads(StructuredJsonFormatter().format(self._record()))

        assert entry["message"] == "Lead abc updated"
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == cid
        assert entry["module"] == "funnel.test"

    def test_known_extra_fields_are_included(self):
        entry = json.loads(StructuredJsonFormatter().format(
            self._record(lead_id="lead-1", channel="telegram", unrelated="x")
        ))
        assert entry["lead_id"] == "lead-1"
        assert entry["channel"] == "telegram"
        assert "unrelated" not in entry
