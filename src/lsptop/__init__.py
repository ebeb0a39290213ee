"""lsp-top: a warm TypeScript language server behind a local socket.

A daemon keeps one language server process per project root and answers
short-lived CLI requests (definition, references, diagnostics, ...) over a
unix socket.
"""

__version__ = "0.2.0"

__all__ = ["__version__"]
