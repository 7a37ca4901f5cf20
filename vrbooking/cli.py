"""vrbooking command line: serve, init-db, seed."""

import argparse
import asyncio
import sys

import structlog
import uvicorn

from .config import Config
from .infra.logging import configure_logging
from .infra.sql import GatedAsyncSession, make_async_engine
from .model import catalog
from .model.db import create_all

logger = structlog.get_logger()

# (name, price in cents, stock, sort order, ems only)
DEFAULT_TICKET_TYPES = [
    ("VR Session 30 min", 3000, 200, 10, False),
    ("VR Session 60 min", 5000, 200, 20, False),
    ("EMS Guest Session", 0, 100, 30, True),
]


async def _init_db(config: Config, seed: bool) -> int:
    engine, SessionAsync, gated = make_async_engine(
        config.database_url, gate_limit=1)
    try:
        await create_all(engine)
        logger.info("schema_ready")
        if not seed:
            return 0
        async with SessionAsync() as session:
            db = GatedAsyncSession(session=session, gated=gated)
            if await catalog.list_ticket_types(db):
                logger.info("seed_skipped", reason="ticket types exist")
                return 0
            for name, price, stock, order, ems_only in DEFAULT_TICKET_TYPES:
                tt = await catalog.create_ticket_type(
                    db, name=name, price_in_cents=price,
                    available_stock=stock, sort_order=order,
                    ems_clients_only=ems_only, public_only=not ems_only,
                )
                logger.info("ticket_type_seeded", ticket_type_id=tt.id,
                            name=tt.name)
        return 0
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    p = argparse.ArgumentParser(prog="vrbooking")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="run the HTTP API")
    s.add_argument("--host", default="127.0.0.1")
    s.add_argument("--port", type=int, default=8000)
    s.add_argument("--workers", type=int, default=1)
    s.add_argument("--reload", action="store_true")

    sub.add_parser("init-db", help="create tables")
    sub.add_parser("seed", help="create tables and default ticket types")

    args = p.parse_args(argv)

    try:
        config = Config.from_env()
    except RuntimeError as e:
        print(f"vrbooking: {e}", file=sys.stderr)
        return 2
    configure_logging(config.log_level, config.log_json)

    if args.cmd == "serve":
        uvicorn.run(
            "vrbooking.server:app_from_env",
            factory=True,
            host=args.host,
            port=args.port,
            workers=args.workers,
            reload=args.reload,
            log_level=config.log_level,
        )
        return 0
    return asyncio.run(_init_db(config, seed=(args.cmd == "seed")))


if __name__ == "__main__":
    sys.exit(main())
