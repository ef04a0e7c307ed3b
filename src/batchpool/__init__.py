"""Distribute one batch of file-processing jobs over local and remote workers."""

__version__ = "0.1.0"
