"""
notestore - local persistence core for a desktop note-taking application.

The package owns the on-disk representation of notebooks, notes, tags,
attachments and the full-text search index, all stored in a single SQLite
database plus a content-addressed file tree under one data directory.

This version uses synchronous operations; callers that run an event loop
dispatch store calls to a worker pool.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notestore")
except PackageNotFoundError:
    __version__ = "0.5.0"
