import uvicorn

from .core.settings import settings


def main() -> None:
    uvicorn.run(
        "campaign_engine.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
        log_config=None,
    )


if __name__ == "__main__":
    main()
