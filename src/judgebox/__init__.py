"""judgebox: sandboxed execution backend for an online judge."""

__version__ = "0.3.0"
