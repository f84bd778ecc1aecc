"""Cache-aside balance lookups backed by Redis and the AzoreScan explorer."""

__version__ = "0.1.0"
