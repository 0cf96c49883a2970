"""ModernChat: chat backend with admin-approved accounts and pluggable storage."""

__version__ = "1.0.0"
