"""Client for cowsql clusters: wire protocol, leader discovery and SQL connections."""

__version__ = "0.1.0"