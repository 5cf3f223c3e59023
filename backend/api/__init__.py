"""API route handlers."""
from . import open_finance

__all__ = ["open_finance"]
