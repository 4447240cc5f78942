import logging
from typing import Optional

# FastAPI本体
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# レスポンス型（テキスト / JSON / ストリーミング）
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .config import GatewayConfig, load_config
from .errors import GatewayError, Unauthorized
from .orchestrator import Orchestrator


# ログ設定（encoding='utf-8' はWindowsで文字化けしにくくする意図）
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    encoding="utf-8",
)
logger = logging.getLogger(__name__)

# 認証なしで通すパス
PUBLIC_PATHS = {"/", "/health"}


def create_app(config: Optional[GatewayConfig] = None, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    FastAPIアプリを作る。
    orchestrator はテストで差し替えられるように引数でも受け取る。
    """
    config = config or load_config()
    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    app = FastAPI()
    app.state.config = config
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def check_api_key(request: Request, call_next):
        """API_KEYが設定されているときだけ Bearer を検証する"""
        if request.method == "OPTIONS" or request.url.path in PUBLIC_PATHS:
            return await call_next(request)
        api_key = (config.api_key or "").strip()
        if api_key and request.headers.get("authorization") != f"Bearer {api_key}":
            client = request.client.host if request.client else "unknown"
            logger.warning(f"Blocked unauthorized request from {client}")
            err = Unauthorized("Unauthorized: Invalid API Key")
            return JSONResponse(content=err.to_dict(), status_code=err.status_code)
        return await call_next(request)

    # Cherry Studio などブラウザ系クライアント向けにCORSは全開放（401にもCORSヘッダが付くよう外側に置く）
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(GatewayError)
    async def on_gateway_error(request: Request, exc: GatewayError):
        logger.error(f"API Error: {exc.message}")
        return JSONResponse(content=exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def on_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unexpected error")
        return JSONResponse(content={"error": {"message": str(exc), "type": "proxy_error"}}, status_code=500)

    @app.on_event("startup")
    async def on_startup():
        """起動時にOrchestratorを作り、可能ならバックエンドを立ち上げておく"""
        if app.state.orchestrator is None:
            app.state.orchestrator = Orchestrator(config)
        logger.info(f"Active at http://{config.host}:{config.port} (backend {config.backend_url})")
        await app.state.orchestrator.startup()

    @app.on_event("shutdown")
    async def on_shutdown():
        """終了時に自分で起動したバックエンドを止めてHTTPクライアントを閉じる"""
        if app.state.orchestrator is not None:
            await app.state.orchestrator.shutdown()

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "OpenCode Proxy Gateway is running."

    @app.get("/health")
    async def health():
        return {"status": "ok", "backend": config.backend_url}

    @app.get("/v1/models")
    async def list_models():
        return await app.state.orchestrator.list_models()

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        """
        OpenAI互換のチャットAPI。
        中身はキュー経由でOpenCodeのsessionに流し、結果をOpenAIの形に直して返す。
        """
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {}

        result = await app.state.orchestrator.complete_chat(payload)

        if isinstance(result, dict):
            return JSONResponse(content=result)

        # stream=trueならSSEで返す（OpenAI互換）
        return StreamingResponse(
            result,
            media_type="text/event-stream",  # SSEのMIMEタイプ
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # nginx等のバッファ抑制
            },
        )

    return app


def run() -> None:
    """コマンドラインから起動する（opencode-gateway）"""
    import uvicorn

    config = load_config()
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    run()
