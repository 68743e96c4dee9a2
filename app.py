"""
FastAPI 应用主入口

启动: uvicorn app:create_app --factory，或 python run.py
"""
import platform
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from promoter import __version__
from promoter.core import Config, PromoterError, load_config, setup_logging
from promoter.core.logging_config import get_logger
from promoter.services import AlertService
from promoter.templates import Template

logger = get_logger()

STATUS_CODES = {
    "bad_data": 400,
    "not_found": 404,
    "internal": 500,
    "upstream_delivery": 502,
}


def error_response(kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_CODES.get(kind, 500),
        content={"status": "error", "errorType": kind, "error": message},
    )


def load_template(config: Config) -> Template:
    return Template.from_globs(
        config.templates,
        external_url=config.server.external_url,
        timezone=config.global_.timezone,
    )


def create_app(
    config: Optional[Config] = None,
    service: Optional[AlertService] = None,
    config_path: Optional[str] = None,
) -> FastAPI:
    """
    创建应用

    Args:
        config: 已加载的配置；不传则从 config_path / CONFIG_FILE / config.yaml 读取
        service: 已构建的分发服务（测试时注入桩）
        config_path: 配置文件路径，/-/reload 时重新读取
    """
    if config is None:
        config = load_config(config_path)
    # 启动时初始化日志，/-/reload 时按新配置更新
    setup_logging(config.logging)
    if service is None:
        service = AlertService(config, load_template(config))
    started_at = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("=" * 60)
        logger.info(f"Promoter {__version__} 服务启动")
        logger.info(f"监听地址: {config.server.host}:{config.server.port}")
        logger.info(f"已配置接收器: {len(service.receiver_names())}")
        logger.info("=" * 60)
        yield
        logger.info("Promoter 服务已关闭")

    app = FastAPI(lifespan=lifespan, redirect_slashes=False)
    app.state.service = service
    app.state.config_path = config_path or config.source_path

    @app.exception_handler(PromoterError)
    async def promoter_error_handler(_request: Request, exc: PromoterError):
        return error_response(exc.kind, str(exc))

    @app.get("/healthz")
    async def healthz():
        return {"ping": "ok"}

    @app.post("/{receiver}/send")
    async def send(receiver: str, request: Request):
        """接收 Alertmanager webhook 并分发到接收器下的全部渠道"""
        request_id = str(uuid.uuid4())[:8]
        body = await request.body()
        logger.debug(f"[{request_id}] 接收器 {receiver} 收到 webhook, {len(body)} 字节")
        try:
            await run_in_threadpool(service.handle_webhook, receiver, body, request_id)
        except PromoterError as e:
            logger.warning(f"[{request_id}] 处理 webhook 失败 ({e.kind}): {e}")
            return error_response(e.kind, str(e))
        return PlainTextResponse("OK")

    def _status():
        return {
            "status": "success",
            "data": {
                "configJSON": service.config.to_dict(redact=True),
                "versionInfo": {
                    "version": __version__,
                    "python": platform.python_version(),
                },
                "uptime": started_at.isoformat(),
            },
        }

    def _receivers():
        return service.receiver_names()

    app.add_api_route("/api/v1/status", _status, methods=["GET"])
    app.add_api_route("/status", _status, methods=["GET"])
    app.add_api_route("/api/v1/receivers", _receivers, methods=["GET"])
    app.add_api_route("/receivers", _receivers, methods=["GET"])

    @app.post("/-/reload")
    async def reload():
        """重新读取配置与模板；失败时保留旧配置"""
        try:
            new_config = await run_in_threadpool(load_config, app.state.config_path)
            template = await run_in_threadpool(load_template, new_config)
            await run_in_threadpool(service.update, new_config, template)
            setup_logging(new_config.logging)
        except (PromoterError, OSError) as e:
            logger.error(f"配置重新加载失败，继续使用旧配置: {e}")
            return error_response("internal", f"failed to reload config: {e}")
        logger.info("配置重新加载完成")
        return PlainTextResponse("OK")

    return app
