import argparse
import asyncio
import logging

import httpx
import uvicorn

from config import settings
from tunnel_broker import TunnelBroker


def configure_logging():
    level = logging.DEBUG if settings.APP_DEBUG else getattr(
        logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def print_countries():
    async with httpx.AsyncClient(
            timeout=settings.CONNECT_TIMEOUT,
            headers={"User-Agent": settings.DEFAULT_USER_AGENT}) as client:
        for code, iso in await TunnelBroker(client).list_countries():
            print(f"{code}: {iso}")


def main():
    parser = argparse.ArgumentParser(description="ttv gateway")
    parser.add_argument("--list-countries", action="store_true",
                        help="List regions offered by the tunnel broker and exit")
    args = parser.parse_args()

    configure_logging()
    if args.list_countries:
        asyncio.run(print_countries())
        return

    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        ssl_certfile=settings.SSL_CERTFILE,
        ssl_keyfile=settings.SSL_KEYFILE,
    )


if __name__ == "__main__":
    main()
