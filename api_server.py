"""Serve the trading agents' HTTP API with uvicorn (one process, one orchestrator)."""
import fcntl
import logging
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent

logger = logging.getLogger("api_server")


def _configure_logging() -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = os.getenv("AGENTS_LOG_FILE", "api_server.log").strip()
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def _acquire_single_instance_lock(path: Path):
    """Hold an exclusive flock for the life of the process; two APIs would mean two orchestrators trading."""
    handle = path.open("w")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        handle.close()
        return None
    handle.write(str(os.getpid()))
    handle.flush()
    return handle


def main() -> None:
    _configure_logging()

    secrets = ROOT / "config" / "secrets.env"
    if secrets.exists():
        load_dotenv(secrets)
        logger.info("Loaded environment variables from %s", secrets)

    lock = _acquire_single_instance_lock(ROOT / ".api_server.lock")
    if lock is None:
        logger.error("Another API instance holds the lock file. Exiting.")
        sys.exit(1)

    host = os.getenv("AGENTS_API_HOST", "127.0.0.1")
    port = int(os.getenv("AGENTS_API_PORT", "3001"))
    logger.info(f"Trading agents API listening on http://{host}:{port}")
    try:
        uvicorn.run("src.api.app:app", host=host, port=port, workers=1, log_level="info")
    except Exception as e:
        logger.error(f"API server crashed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
