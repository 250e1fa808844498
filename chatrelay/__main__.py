import uvicorn

from chatrelay.config import settings


def main() -> None:
    # log_config=None keeps the JSON handlers installed by setup_logging
    uvicorn.run("chatrelay.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
