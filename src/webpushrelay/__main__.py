import uvicorn

from webpushrelay.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "webpushrelay.main:app",
        host=settings.listen_addr,
        port=settings.listen_port,
    )


if __name__ == "__main__":
    main()
