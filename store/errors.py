from __future__ import annotations


class StoreError(Exception):
    """The alert store could not be read or written."""
