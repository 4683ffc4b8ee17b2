import logging


def configure_logging(level: str) -> None:
    """Root logging setup, called once by each entrypoint."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
