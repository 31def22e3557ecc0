from __future__ import annotations


class ConvcacheError(Exception):
    """Base class for errors raised by convcache."""


class StoreUnavailable(ConvcacheError):
    """The local sqlite store could not be opened or written."""
