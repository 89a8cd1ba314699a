"""mcps - keep MCP server connections alive behind a local control daemon."""

from .__version__ import __version__

__all__ = ["__version__"]
