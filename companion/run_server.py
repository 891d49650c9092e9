import logging
import pathlib
import sys

import uvicorn

ROOT = pathlib.Path(__file__).resolve().parent.parent
sys.path.append(str(ROOT))
from companion.services.config import load_settings


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    from companion.app.main import create_app

    ssl = {}
    if settings.SSL_CERTFILE and settings.SSL_KEYFILE:
        ssl = {"ssl_certfile": settings.SSL_CERTFILE, "ssl_keyfile": settings.SSL_KEYFILE}
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT, **ssl)


if __name__ == "__main__":
    main()
