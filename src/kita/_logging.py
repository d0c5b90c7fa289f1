"""Logging utilities for the kita controller."""

import logging
import sys
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

# NullHandler on the package logger; the CLI installs real handlers
_root = logging.getLogger("kita")
_root.addHandler(logging.NullHandler())

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s - %(message)s"


@dataclass(frozen=True)
class ReconcileContext:
    """The TLS entry a reconcile task is working on."""

    ingress: str
    secret: str
    hosts: tuple[str, ...]

    def as_extra(self) -> dict[str, Any]:
        """Log extra fields: 'host' for a single host, 'hosts' otherwise."""
        extra: dict[str, Any] = {"ingress": self.ingress, "secret": self.secret}
        if len(self.hosts) == 1:
            extra["host"] = self.hosts[0]
        else:
            extra["hosts"] = list(self.hosts)
        return extra


# One per reconcile task; concurrent tasks each see their own
_current_reconcile: ContextVar[ReconcileContext | None] = ContextVar("current_reconcile", default=None)


@contextmanager
def reconcile_context(ingress: str, secret: str, hosts: Iterable[str]) -> Iterator[ReconcileContext]:
    """Attach a TLS entry's identity to log records made inside the block.

    Args:
        ingress: Name of the Ingress owning the entry.
        secret: Name of the entry's TLS Secret.
        hosts: Hosts of the entry.
    """
    context = ReconcileContext(ingress=ingress, secret=secret, hosts=tuple(hosts))
    token = _current_reconcile.set(context)
    try:
        yield context
    finally:
        _current_reconcile.reset(token)


def reconcile_extra() -> dict[str, Any]:
    """Log extra fields of the current reconcile, or an empty dict outside one."""
    context = _current_reconcile.get()
    return context.as_extra() if context is not None else {}


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the kita namespace.

    Args:
        name: The module name (typically __name__).

    Returns:
        A logger instance for the module.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Send kita logs to stderr at the given level.

    Used by the command line entry point only.

    Args:
        level: Level name such as "DEBUG" or "INFO".
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    _root.addHandler(handler)
    _root.setLevel(level.upper())
