import logging

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach one stream handler to the ``ragcore`` logger (idempotent)."""
    root = logging.getLogger("ragcore")
    root.setLevel(level.upper())
    if not any(getattr(h, "_ragcore", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._ragcore = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
