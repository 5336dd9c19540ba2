import logging

from kernelgrad.config import get_config

_ROOT = "kernelgrad"


def _setup_root() -> logging.Logger:
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(filename)s:%(lineno)d - [%(levelname)s]: %(message)s")
        )
        root.addHandler(handler)
        root.propagate = False
    root.setLevel(get_config().log_level)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a child of the ``kernelgrad`` logger, e.g. ``kernelgrad.execution``."""
    _setup_root()
    if name.startswith(_ROOT + "."):
        name = name[len(_ROOT) + 1:]
    return logging.getLogger(_ROOT).getChild(name)


def set_level(level: str) -> None:
    _setup_root().setLevel(level)
