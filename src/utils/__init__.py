from .logging import log, setup_logging

__all__ = ["log", "setup_logging"]
