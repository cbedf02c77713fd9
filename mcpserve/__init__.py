"""Server-Sent Events and stdio transports for Model Context Protocol servers."""

__version__ = "0.1.0"
__all__ = ["protocol", "session", "sse", "stdio"]