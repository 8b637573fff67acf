import logging
import sys

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level="INFO", fmt: str = DEFAULT_FORMAT, logfile=None) -> None:
    """Root logger setup for the CLI and scripts. Library modules never call this."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stderr)]
    if logfile:
        handlers.append(logging.FileHandler(logfile))
    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)
    # yfinance is chatty at INFO
    logging.getLogger("yfinance").setLevel(max(level, logging.WARNING))
