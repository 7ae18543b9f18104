"""Automated review, fix, and self-review loop for AI coding agents."""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("review-loop")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"
