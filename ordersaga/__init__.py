"""Order placement saga with inventory and payments services."""

__version__ = "0.1.0"
