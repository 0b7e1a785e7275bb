import logging


def get_logger(name: str) -> logging.Logger:
    """Return a named logger.

    Handlers are never attached here; entry points configure output once
    with ``logging.basicConfig`` so repeated calls cannot duplicate them.
    """
    return logging.getLogger(name)
