import uvicorn

from .config import STTRouterConfig

if __name__ == "__main__":
    config = STTRouterConfig.from_env()

    uvicorn.run(
        "stt_router.app:app",
        host=config.host,
        port=config.port,
        log_level="debug" if config.verbose else "info",
        reload=False
    )
