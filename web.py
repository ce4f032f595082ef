"""
Main Web Integration - 挂载路由并开启主服务
"""

# 加载 .env 文件中的环境变量（必须在其他导入之前）
from dotenv import load_dotenv
load_dotenv()

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_config
from log import clear_request_id, log
from toolify_proxy.errors import ProxyError
from toolify_proxy.rate_limiter import SlidingWindowRateLimiter
from toolify_proxy.router import router as messages_router
from toolify_proxy.upstream import UpstreamClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：共享一个上游客户端和一个限流器"""
    config = get_config()
    log.info("启动 Toolify Proxy 主服务")

    app.state.upstream_client = UpstreamClient.from_config(config)
    app.state.rate_limiter = SlidingWindowRateLimiter(config.max_requests_per_minute)

    yield

    log.info("开始关闭 Toolify Proxy 主服务")
    try:
        await app.state.upstream_client.aclose()
        log.info("上游客户端已关闭")
    except Exception as e:
        log.error(f"关闭上游客户端时出错: {e}")
    log.info("Toolify Proxy 主服务已停止")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Toolify Proxy",
        description="Structured Messages API gateway in front of a Chat Completions upstream",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        log.error(
            f"Request failed: {exc.message}",
            tag="WEB",
            status=exc.status_code,
            error_type=exc.error_type,
        )
        clear_request_id()
        return JSONResponse(
            status_code=exc.status_code, content=exc.to_response_body(), headers=exc.headers
        )

    app.include_router(messages_router, prefix="", tags=["Messages API"])

    # 保活接口（仅响应 HEAD）
    @app.head("/keepalive")
    async def keepalive() -> Response:
        return Response(status_code=200)

    return app


app = create_app()

__all__ = ["app", "create_app", "main", "run"]


async def main():
    """异步主启动函数"""
    from hypercorn.asyncio import serve
    from hypercorn.config import Config

    settings = get_config()
    host, port = settings.host, settings.port

    log.info("=" * 60)
    log.info("启动 Toolify Proxy")
    log.info("=" * 60)
    log.info(f"   Messages API: http://{host}:{port}/v1/messages")
    log.info(f"   上游: {settings.upstream_base_url}")
    if settings.upstream_model_override:
        log.info(f"   上游模型覆盖: {settings.upstream_model_override}")
    if settings.auto_port:
        log.info("   AUTO_PORT 已启用，由系统分配端口")
    log.info("=" * 60)

    # 配置hypercorn
    config = Config()
    config.bind = [f"{host}:{port}"]
    config.accesslog = "-"
    config.errorlog = "-"
    config.loglevel = "INFO"
    config.use_colors = True

    # 设置连接超时
    config.keep_alive_timeout = 300
    config.read_timeout = 300
    config.write_timeout = 300

    await serve(app, config)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
