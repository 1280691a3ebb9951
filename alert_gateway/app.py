from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Mapping

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import AppConfig, load_config_from_env
from .notifier import FailureNotifier
from .routing import infer_environment, select_team
from .sysdig import SysdigClient, SysdigError
from .templates import TemplateNotFound, TemplateRenderer
from .tokens import TokenError, TokenStore

REQUIRED_FIELDS = ("ibmAccount", "application", "instanceOrNamespace", "codeAP")


def extract_bearer_token(header_value: Any) -> str:
    if not isinstance(header_value, str):
        return ""
    parts = header_value.split(" ", 1)
    if len(parts) != 2:
        return ""
    scheme, token = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer" or not token:
        return ""
    return token


def validate_create_request(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return "body must be an object"

    missing = [
        field for field in REQUIRED_FIELDS if not isinstance(raw.get(field), str) or not raw.get(field).strip()
    ]
    if missing:
        return f"missing fields: {', '.join(missing)}"
    return None


def build_template_vars(request: dict[str, str], team_id: str) -> dict[str, str]:
    return {
        "IBM_ACCOUNT": request["ibmAccount"],
        "APP": request["application"],
        "INSTANCE": request["instanceOrNamespace"],
        "CODE_AP": request["codeAP"],
        "TEAM_ID": team_id,
    }


class AppState:
    def __init__(
        self,
        config: AppConfig,
        client: SysdigClient | None = None,
        notifier: FailureNotifier | None = None,
    ) -> None:
        self.config = config
        self.tokens = TokenStore(config.token_base_dir)
        self.renderer = TemplateRenderer(config.templates_dir)
        self.client = client or SysdigClient(config.sdc_url, timeout=config.sdc_timeout_seconds)
        self.notifier = notifier or FailureNotifier(config)


def create_app(
    env: Mapping[str, str] | None = None,
    client: SysdigClient | None = None,
    notifier: FailureNotifier | None = None,
) -> FastAPI:
    config = load_config_from_env(os.environ if env is None else env)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger = logging.getLogger("alert-gateway")

    state = AppState(config, client, notifier)

    app = FastAPI(title="alert-gateway", version="1.0.0")
    app.state.gateway = state

    def notify_failure_safe(account: str, application: str, team_id: str, error: str) -> None:
        try:
            result = state.notifier.notify_failure(account, application, team_id, error)
            logger.info("failure notification %s", result, extra={"ibmAccount": account})
        except Exception as exc:
            logger.exception("failure notification failed: %s", exc)

    @app.get("/health")
    async def health() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            status_code=200,
            content={
                "ok": True,
                "service": "alert-gateway",
                "teamPolicy": config.team_policy.value,
            },
        )

    @app.post("/v1/alerts/standard")
    async def create_standard_alert(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        if config.gateway_token:
            token = extract_bearer_token(request.headers.get("authorization"))
            if token != config.gateway_token:
                return JSONResponse(status_code=401, content={"error": "unauthorized"})

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "invalid json"})

        error = validate_create_request(body)
        if error:
            return JSONResponse(status_code=400, content={"error": error})

        fields = {field: body[field].strip() for field in REQUIRED_FIELDS}
        account = fields["ibmAccount"]

        # 1) credential record, blocking file reads off the event loop
        try:
            record = await asyncio.to_thread(state.tokens.resolve, account)
        except TokenError as exc:
            logger.warning("token resolution failed", extra={"ibmAccount": account, "code": exc.code})
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": str(exc), "code": exc.code, "ibmAccount": account},
            )

        # 2) team routing
        environment = infer_environment(fields["instanceOrNamespace"], fields["codeAP"])
        team_id = select_team(
            record,
            environment,
            fallback_index=config.default_team_index,
            policy=config.team_policy,
            preferred_index=config.preferred_team_index,
        )
        if team_id is None:
            logger.warning("no usable teamID", extra={"ibmAccount": account, "env": environment.value})
            return JSONResponse(
                status_code=400,
                content={"error": "no teamID available in token file", "code": "no_team", "ibmAccount": account},
            )

        # 3) alert body
        try:
            alert_body = await asyncio.to_thread(
                state.renderer.render, fields["application"], build_template_vars(fields, team_id)
            )
        except TemplateNotFound as exc:
            return JSONResponse(status_code=400, content={"error": str(exc), "code": exc.code})

        # 4) remote alert creation
        try:
            out = await state.client.create_alert(record.instance_id, team_id, record.bearer, alert_body)
        except SysdigError as exc:
            background_tasks.add_task(notify_failure_safe, account, fields["application"], team_id, str(exc))
            return JSONResponse(
                status_code=502,
                content={"error": str(exc), "upstreamStatus": exc.status_code, "upstreamBody": exc.body},
            )

        logger.info(
            "alert created",
            extra={"ibmAccount": account, "env": environment.value, "teamID": team_id},
        )
        return JSONResponse(
            status_code=200,
            content={
                "status": "created",
                "ibmAccount": account,
                "application": fields["application"],
                "instance": fields["instanceOrNamespace"],
                "codeAP": fields["codeAP"],
                "envDetected": environment.value,
                "teamIDUsed": team_id,
                "sysdigResult": out,
            },
        )

    @app.exception_handler(Exception)
    async def on_error(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("request failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    logger.info(
        "alert-gateway started",
        extra={
            "port": config.port,
            "tokenBaseDir": config.token_base_dir,
            "teamPolicy": config.team_policy.value,
            "defaultTeamIndex": config.default_team_index,
        },
    )

    return app


def main() -> None:
    import uvicorn

    config = load_config_from_env(os.environ)
    uvicorn.run(create_app, factory=True, host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
