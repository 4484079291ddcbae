"""
Quillnote - a personal note service exposed as an MCP server.

Notes are rich-text documents owned by a single caller identity. They carry
media attachments, coloured tags and an append-only version history, can be
soft-deleted to a trash and restored, and can be published through
password-protected, expiring share links.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("quillnote")
except PackageNotFoundError:
    __version__ = "0.3.0"
