"""docrag: index Markdown documentation and answer questions over it."""

__version__ = "0.1.0"
