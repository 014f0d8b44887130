import logging

from typing import Optional


logger = logging.getLogger("backwash")
logger.addHandler(logging.NullHandler())

_stream_handler: Optional[logging.Handler] = None


def set_verbose(verbose: bool = True, level: int = logging.DEBUG) -> None:
    """Attach a stream handler so iteration progress is printed.

    Args:
        verbose: If False, remove the handler previously attached here.
        level: Logging level used when ``verbose`` is True.
    """
    global _stream_handler

    if _stream_handler is not None:
        logger.removeHandler(_stream_handler)
        _stream_handler = None

    if verbose:
        _stream_handler = logging.StreamHandler()
        _stream_handler.setFormatter(logging.Formatter("[%(asctime)s - %(levelname)s] %(message)s"))
        logger.addHandler(_stream_handler)
        logger.setLevel(level)
    else:
        logger.setLevel(logging.WARNING)
