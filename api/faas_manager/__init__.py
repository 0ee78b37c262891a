"""Function lifecycle manager: turns uploaded handler code into running workers."""

__version__ = "1.0.0"
