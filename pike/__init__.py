"""Tools for building, running, configuring and packing Picodata plugins."""

__version__ = "2.4.5"