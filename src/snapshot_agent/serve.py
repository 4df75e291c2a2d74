"""Process entrypoint: provision TLS material, then serve the agent over HTTPS.

Run with ``snapshot-agent`` (console script) or ``python -m snapshot_agent.serve``.
Startup failures are fatal; there is no partial-start mode.
"""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from .app.settings import get_settings
from .app.tls import ensure_tls_material
from .main import app

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Snapshot freeze/thaw agent")
    parser.add_argument("--host", default=settings.listen_host)
    parser.add_argument("--port", type=int, default=settings.listen_port)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info("agent event=starting vendor=%s port=%s", settings.db_vendor, args.port)

    cert_path = settings.resolved_cert_path()
    key_path = settings.resolved_key_path()
    try:
        ensure_tls_material(cert_path, key_path)
    except Exception:  # noqa: BLE001
        logger.exception("agent event=start_failed reason=tls_provisioning")
        return 1

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        ssl_certfile=str(cert_path),
        ssl_keyfile=str(key_path),
        log_level=args.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
