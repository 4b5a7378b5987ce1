"""Route coding tasks to external CLI agents and supervise their sessions."""

__version__ = "0.1.0"
