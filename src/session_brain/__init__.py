"""Background analysis daemon for pi session logs."""

__version__ = "0.1.0"
