"""Toolkit descriptors for the built-in codeloop tools."""

from .command import command_toolkit
from .files import files_toolkit
from .search import search_toolkit
from .web import web_toolkit

DEFAULT_TOOLKIT_FACTORIES = [
    files_toolkit,
    search_toolkit,
    command_toolkit,
    web_toolkit,
]

__all__ = ["DEFAULT_TOOLKIT_FACTORIES"]
