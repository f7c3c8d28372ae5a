import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  host = os.getenv("BABELLION_HOST", "0.0.0.0")
  port = os.getenv("BABELLION_PORT", "8002")
  logger.info("Starting application on %s:%s", host, port)
  # Replace the current process so uvicorn receives SIGTERM directly.
  os.execvp("uvicorn", ["uvicorn", "babellion.main:app", "--host", host, "--port", port])


if __name__ == "__main__":
  main()
