# worker.py
import logging
import os
import sys

import uvicorn

from env_utils import env_bool, load_env

load_env()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _startup_banner(host: str, port: int) -> None:
    mode = os.getenv("ALPACA_MODE", "paper").strip().lower()
    print("")
    print("=== Trading Bot Worker ===")
    print(f"Bind: http://{host}:{port}")
    print(f"Alpaca: {mode.upper()}")
    print(f"Bot interval: {os.getenv('BOT_INTERVAL_SEC', '30')}s | auto-resume: "
          f"{'ON' if env_bool('BOT_AUTO_RESUME') else 'OFF'}")
    print("==========================")
    print("")


if __name__ == "__main__":
    host = os.getenv("WORKER_HOST", "127.0.0.1")
    port = int(os.getenv("WORKER_PORT", "9001"))
    log_level = os.getenv("LOG_LEVEL", "info").lower()

    _configure_logging(log_level)
    _startup_banner(host, port)

    # Default: no reload; a reload would spawn a second bot thread.
    reload_enabled = env_bool("WORKER_RELOAD", default=False)

    try:
        uvicorn.run(
            "worker_api:app",
            host=host,
            port=port,
            log_level=log_level,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        sys.exit(0)
