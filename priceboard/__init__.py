"""Price threshold alarms for the storefront price board."""

__version__ = "0.1.0"
