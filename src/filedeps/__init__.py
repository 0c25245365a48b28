"""filedeps - file-level dependency graphs derived from symbol occurrence indexes."""

__version__ = "0.1.0"
