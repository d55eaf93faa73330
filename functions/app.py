from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from backend.inspecao.app import InspectionApp, ReportBlockedError
from backend.inspecao.exports import ExportRetryError, ReportGateway
from backend.inspecao.settings import IntegrationSettings

logger = logging.getLogger(__name__)

CORS_HEADERS: list[tuple[str, str]] = [
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Headers", "authorization, x-client-info, apikey, content-type"),
    ("Access-Control-Allow-Methods", "GET, POST, OPTIONS"),
]


class BadRequest(ValueError):
    pass


@dataclass
class Request:
    method: str
    target: str
    headers: dict[str, str]
    body: bytes = b""

    def __post_init__(self) -> None:
        parsed = urlparse(self.target)
        self.path = parsed.path.rstrip("/") or "/"
        self.query = parse_qs(parsed.query)

    def json(self) -> dict[str, Any]:
        if not self.body.strip():
            return {}
        try:
            payload = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BadRequest("Corpo da requisição não é um JSON válido") from exc
        if not isinstance(payload, dict):
            raise BadRequest("Corpo da requisição deve ser um objeto JSON")
        return payload


@dataclass
class Response:
    status: HTTPStatus = HTTPStatus.OK
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes | str = ""

    def add_header(self, name: str, value: str) -> None:
        self.headers.append((name, value))

    def json(self) -> Any:
        raw = self.body if isinstance(self.body, str) else self.body.decode("utf-8")
        return json.loads(raw) if raw else None


def json_response(payload: Any, status: HTTPStatus | int = HTTPStatus.OK) -> Response:
    return Response(
        status=HTTPStatus(status),
        headers=[("Content-Type", "application/json; charset=utf-8")],
        body=json.dumps(payload, ensure_ascii=False, default=str),
    )


class InspectionFunctionsApp:
    """JSON endpoints for the webhook queue, the integration targets and report validation."""

    def __init__(self, service: InspectionApp) -> None:
        self.service = service

    # Public API -----------------------------------------------------------------
    def wsgi_app(self, environ: dict[str, Any], start_response: Callable) -> Iterable[bytes]:
        method = environ["REQUEST_METHOD"]
        target = environ.get("PATH_INFO", "/")
        if environ.get("QUERY_STRING"):
            target = f"{target}?{environ['QUERY_STRING']}"
        length = int(environ.get("CONTENT_LENGTH") or 0)
        body = environ["wsgi.input"].read(length) if length else b""
        headers = {key: value for key, value in environ.items() if key.startswith("HTTP_")}
        if "CONTENT_TYPE" in environ:
            headers["Content-Type"] = environ["CONTENT_TYPE"]
        response = self.handle(Request(method=method, target=target, headers=headers, body=body))
        start_response(f"{response.status.value} {response.status.phrase}", response.headers)
        payload = response.body if isinstance(response.body, bytes) else response.body.encode("utf-8")
        return [payload]

    def handle(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            response = Response(status=HTTPStatus.OK, body="ok")
        else:
            response = self._dispatch(request)
        response.headers.extend(CORS_HEADERS)
        return response

    def run(self, host: str = "127.0.0.1", port: int = 8000) -> None:
        from wsgiref.simple_server import make_server

        with make_server(host, port, self.wsgi_app) as httpd:
            logger.info("Serving functions on http://%s:%s", host, port)
            try:
                httpd.serve_forever()
            finally:
                self.service.close()

    # Routing --------------------------------------------------------------------
    def _routes(self) -> dict[str, dict[str, Callable[[Request], Response]]]:
        return {
            "/webhook-config": {"GET": self._webhook_config, "POST": self._test_webhook},
            "/process-webhook-queue": {"POST": self._process_webhook_queue},
            "/retry-export": {"POST": self._retry_export},
            "/handle-new-os": {"POST": self._integration("handle_new_os")},
            "/send-notification": {"POST": self._integration("send_notification")},
            "/update-cost-tracking": {"POST": self._integration("update_cost_tracking")},
            "/modules": {"GET": self._modules},
            "/validate-module": {"POST": self._validate_module},
            "/validate-final-report": {"POST": self._validate_final_report},
            "/prepare-report": {"POST": self._prepare_report},
        }

    def _match_route(self, request: Request) -> Callable[[Request], Response] | HTTPStatus:
        methods = self._routes().get(request.path)
        if methods is None:
            return HTTPStatus.NOT_FOUND
        return methods.get(request.method) or HTTPStatus.METHOD_NOT_ALLOWED

    def _dispatch(self, request: Request) -> Response:
        route = self._match_route(request)
        if route is HTTPStatus.NOT_FOUND:
            return json_response({"success": False, "error": "Rota não encontrada"}, HTTPStatus.NOT_FOUND)
        if route is HTTPStatus.METHOD_NOT_ALLOWED:
            return json_response({"success": False, "error": "Method not allowed"}, HTTPStatus.METHOD_NOT_ALLOWED)
        assert callable(route)
        try:
            return route(request)
        except ExportRetryError as exc:
            payload: dict[str, Any] = {"success": False, "error": str(exc)}
            if exc.details:
                payload["details"] = exc.details
            return json_response(payload, exc.status)
        except ReportBlockedError as exc:
            return json_response(
                {"success": False, "error": str(exc), "validation": exc.validation.to_dict()},
                HTTPStatus.UNPROCESSABLE_ENTITY,
            )
        except LookupError as exc:
            return json_response({"success": False, "error": str(exc)}, HTTPStatus.NOT_FOUND)
        except ValueError as exc:
            return json_response({"success": False, "error": str(exc)}, HTTPStatus.BAD_REQUEST)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            return json_response(
                {"success": False, "error": "Erro interno do servidor"},
                HTTPStatus.INTERNAL_SERVER_ERROR,
            )

    # Handlers -------------------------------------------------------------------
    def _webhook_config(self, request: Request) -> Response:
        return json_response(self.service.webhook_configuration())

    def _test_webhook(self, request: Request) -> Response:
        payload = request.json()
        result = self.service.test_webhook(payload.get("webhook_name"), payload.get("test_data"))
        status = HTTPStatus.BAD_REQUEST if "error" in result else HTTPStatus.OK
        return json_response(result, status)

    def _process_webhook_queue(self, request: Request) -> Response:
        limit = request.json().get("limit")
        if limit is not None and (not isinstance(limit, int) or limit < 1):
            raise BadRequest("limit deve ser um inteiro positivo")
        return json_response(self.service.process_webhook_queue(limit))

    def _retry_export(self, request: Request) -> Response:
        return json_response(self.service.retry_export(request.json().get("export_log_id")))

    def _integration(self, handler_name: str) -> Callable[[Request], Response]:
        def handler(request: Request) -> Response:
            status, body = getattr(self.service.integrations, handler_name)(request.json())
            return json_response(body, status)

        return handler

    def _modules(self, request: Request) -> Response:
        return json_response({"success": True, "modules": self.service.list_modules()})

    def _validate_module(self, request: Request) -> Response:
        payload = request.json()
        inspection_id, module_type = payload.get("inspection_id"), payload.get("module_type")
        if not inspection_id or not module_type:
            raise BadRequest("inspection_id e module_type são obrigatórios")
        return json_response(self.service.validate_module(inspection_id, module_type).to_dict())

    def _validate_final_report(self, request: Request) -> Response:
        inspection_id = request.json().get("inspection_id")
        if not inspection_id:
            raise BadRequest("inspection_id é obrigatório")
        return json_response(self.service.validate_final_report(inspection_id).to_dict())

    def _prepare_report(self, request: Request) -> Response:
        payload = request.json()
        inspection_id = payload.get("inspection_id")
        if not inspection_id:
            raise BadRequest("inspection_id é obrigatório")
        export_log = self.service.prepare_report(
            inspection_id,
            recipient_emails=payload.get("recipient_emails") or [],
            metadata=payload.get("metadata") or {},
        )
        return json_response(
            {
                "success": True,
                "export_log_id": export_log.id,
                "file_name": export_log.file_name,
                "version": export_log.version,
                "missing_fields": export_log.metadata.get("missing_fields", []),
            }
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    database_path: Optional[Path | str] = None,
    *,
    settings: Optional[IntegrationSettings] = None,
    client: Optional[httpx.Client] = None,
    gateway: Optional[ReportGateway] = None,
) -> InspectionFunctionsApp:
    settings = settings or IntegrationSettings()
    path = Path(database_path) if database_path else Path(settings.database_path)
    service = InspectionApp.create(path, settings=settings, client=client, gateway=gateway)
    return InspectionFunctionsApp(service)


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    integration_settings = IntegrationSettings()
    configure_logging(integration_settings.log_level)
    create_app(settings=integration_settings).run()
